import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from studio_quota/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from studio_quota.api import allowance, guest, health  # noqa: E402
from studio_quota.core.config import settings, validate_config  # noqa: E402
from studio_quota.core.database import create_all_tables  # noqa: E402
from studio_quota.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from studio_quota.core.logging import configure_logging  # noqa: E402
from studio_quota.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from studio_quota.core.validation import validate_env  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("studio_quota")
    logger.info("Starting studio quota service...")
    app.state.startup_time = time.time()
    if settings.ENV != "production":
        # Production schemas are migrated out of band
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("studio_quota").info("Stopping studio quota service...")


app = FastAPI(title="Studio Quota", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(allowance.router)
app.include_router(guest.router)
app.include_router(health.router)
app.include_router(health.root_router)
