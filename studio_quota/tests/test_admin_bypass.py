"""Administrator allow-list and unlimited allowance."""
from datetime import datetime, timezone

from sqlalchemy import select

from studio_quota.core.admin_auth import AdminAllowList
from studio_quota.core.config import Settings
from studio_quota.core.database import get_db_session, user_profiles
from studio_quota.features.allowance.consumption import consume
from studio_quota.features.allowance.service import can_consume, get_allowance
from studio_quota.models.user import User

NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)
LAST_MONTH = datetime(2026, 9, 20, tzinfo=timezone.utc)


def test_allow_list_from_settings():
    cfg = Settings(ADMIN_EMAILS=" Boss@Studio.test, ops@studio.test ,", ADMIN_USER_IDS="user_root")
    admins = AdminAllowList.from_settings(cfg)

    assert admins.is_admin_email("boss@studio.test")
    assert admins.is_admin(User(user_id="user_root", created_at=NOW))
    assert admins.is_admin(User(user_id="x", email="OPS@studio.test", created_at=NOW))
    assert not admins.is_admin(User(user_id="x", email="someone@studio.test", created_at=NOW))
    assert not admins.is_admin(None)


def test_empty_allow_list_grants_nothing():
    admins = AdminAllowList()

    assert not admins.is_admin(User(user_id="x", email="admin@studio.test", created_at=NOW))


def test_admin_gets_unlimited_breakdown(make_user, admins):
    make_user("boss", email="admin@studio.test", plan_tier="free", base_used=5)

    allowance = get_allowance("boss", now=NOW, admins=admins)

    assert allowance.is_admin
    assert allowance.remaining == float("inf")
    assert allowance.base_limit == float("inf")
    assert can_consume("boss", now=NOW, admins=admins)


def test_admin_consume_touches_nothing(make_user, add_grant, admins):
    make_user("boss", email="admin@studio.test", base_used=5, last_reset=LAST_MONTH)
    add_grant("boss", granted=1)

    result = consume("boss", now=NOW, admins=admins)

    assert result.bucket == "unlimited"
    with get_db_session() as session:
        row = session.execute(select(user_profiles).where(user_profiles.c.user_id == "boss")).first()
    # Admins skip the monthly reset as well
    assert row.base_used == 5
    assert row.last_monthly_reset.month == LAST_MONTH.month


def test_same_user_without_allow_list_is_limited(make_user):
    make_user("boss", email="admin@studio.test", plan_tier="free", base_used=5)

    allowance = get_allowance("boss", now=NOW, admins=AdminAllowList())

    assert not allowance.is_admin
    assert allowance.remaining == 0
