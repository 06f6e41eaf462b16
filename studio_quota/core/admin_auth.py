"""
Administrator allow-list.

Administrators bypass upload allowances entirely. Membership is a
capability check against an explicit allow-list built from configuration
(ADMIN_EMAILS / ADMIN_USER_IDS) and injected into the engine, so tests can
swap it without touching the environment.
"""
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from studio_quota.core.config import Settings, settings
from studio_quota.models.user import User


@dataclass(frozen=True)
class AdminAllowList:
    """Identifiers granted unlimited uploads."""
    emails: FrozenSet[str] = field(default_factory=frozenset)
    user_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, emails: Iterable[str] = (), user_ids: Iterable[str] = ()) -> "AdminAllowList":
        return cls(
            emails=frozenset(e.strip().lower() for e in emails if e and e.strip()),
            user_ids=frozenset(u.strip() for u in user_ids if u and u.strip()),
        )

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "AdminAllowList":
        cfg = cfg or settings
        return cls.of(cfg.admin_emails, cfg.admin_user_ids)

    def is_admin_email(self, email: Optional[str]) -> bool:
        normalized = User.normalized_email(email)
        return bool(normalized) and normalized in self.emails

    def is_admin(self, user: Optional[User]) -> bool:
        if user is None:
            return False
        return user.user_id in self.user_ids or self.is_admin_email(user.email)


def get_admin_allow_list() -> AdminAllowList:
    """Allow-list from the current settings."""
    return AdminAllowList.from_settings()
