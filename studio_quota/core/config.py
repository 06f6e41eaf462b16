import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional


def _split_csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Admin allow-list (comma-separated)
    ADMIN_EMAILS: str = ""
    ADMIN_USER_IDS: str = ""

    # Upload allowances per plan tier
    FREE_UPLOAD_LIMIT: int = 5
    BASIC_UPLOAD_LIMIT: int = 30
    PRO_UPLOAD_LIMIT: int = 60
    GUEST_UPLOAD_LIMIT: int = 3
    PAID_TIER_BONUS: int = 5
    MAX_LIMIT_OVERRIDE: int = 1000  # stored overrides above this are ignored

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def admin_emails(self) -> List[str]:
        return [email.lower() for email in _split_csv(self.ADMIN_EMAILS)]

    @property
    def admin_user_ids(self) -> List[str]:
        return _split_csv(self.ADMIN_USER_IDS)


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("studio_quota")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not _split_csv(getattr(cfg, "ADMIN_EMAILS", "")) and not _split_csv(getattr(cfg, "ADMIN_USER_IDS", "")):
        log.info("No admin allow-list configured; admin bypass disabled")

    return True
