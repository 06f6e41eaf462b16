# studio_quota/conftest.py
import os
from datetime import datetime, timezone

import pytest

# Must be set before studio_quota.core.config builds its settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from studio_quota.core.admin_auth import AdminAllowList  # noqa: E402
from studio_quota.core.database import (  # noqa: E402
    create_all_tables,
    dispose_engine,
    get_db_session,
    guest_grants,
    init_engine,
    purchase_grants,
    subscriptions,
    user_profiles,
    users,
)

ADMIN_EMAIL = "admin@studio.test"

# Fixed clock for deterministic monthly resets
NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)
LAST_MONTH = datetime(2026, 9, 20, 8, 30, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def fresh_db():
    """
    Give every test an empty in-memory database.

    A new engine means a new SQLite connection, so no state leaks between tests.
    """
    dispose_engine()
    init_engine(os.environ["TEST_DATABASE_URL"])
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def admins():
    return AdminAllowList.of(emails=[ADMIN_EMAIL])


@pytest.fixture
def make_user():
    """
    Insert a user with profile and (optionally) a subscription.

    last_reset defaults to the current test month so no reset fires.
    """
    def _make(
        user_id="user_1",
        *,
        email=None,
        plan_tier=None,
        status="active",
        base_used=0,
        last_reset=NOW,
        base_limit_override=None,
        limit_override=None,
        with_profile=True,
    ):
        with get_db_session() as session:
            session.execute(users.insert().values(user_id=user_id, email=email, created_at=NOW))
            if with_profile:
                session.execute(
                    user_profiles.insert().values(
                        user_id=user_id,
                        base_used=base_used,
                        base_limit_override=base_limit_override,
                        last_monthly_reset=last_reset,
                    )
                )
            if plan_tier is not None:
                session.execute(
                    subscriptions.insert().values(
                        user_id=user_id,
                        plan_tier=plan_tier,
                        status=status,
                        limit_override=limit_override,
                    )
                )
        return user_id

    return _make


@pytest.fixture
def add_grant():
    """Insert a completed purchase grant directly."""
    counter = {"n": 0}

    def _add(user_id, granted, used=0, *, created_at=None, ref=None, status="completed", amount=0):
        counter["n"] += 1
        with get_db_session() as session:
            result = session.execute(
                purchase_grants.insert().values(
                    user_id=user_id,
                    granted_units=granted,
                    used_units=used,
                    status=status,
                    external_payment_ref=ref or f"pi_test_{counter['n']}",
                    amount=amount,
                    created_at=created_at or NOW,
                )
            )
            return result.inserted_primary_key[0]

    return _add


@pytest.fixture
def add_guest_grant():
    """Insert a guest grant directly."""
    counter = {"n": 0}

    def _add(session_id, granted, used=0, *, created_at=None, ref=None, status="completed"):
        counter["n"] += 1
        with get_db_session() as session:
            result = session.execute(
                guest_grants.insert().values(
                    session_id=session_id,
                    granted_units=granted,
                    used_units=used,
                    status=status,
                    external_payment_ref=ref or f"pi_guest_{counter['n']}",
                    created_at=created_at or NOW,
                )
            )
            return result.inserted_primary_key[0]

    return _add
