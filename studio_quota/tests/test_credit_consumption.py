"""Credit consumption: credits before base, oldest grant first, atomic debits."""
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from studio_quota.core.database import get_db_session, purchase_grants, user_profiles
from studio_quota.core.errors import NotFoundError, QuotaExceededError
from studio_quota.features.allowance.consumption import consume, consume_credit, record_upload
from studio_quota.features.allowance.service import can_consume

NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)


def _used(grant_id):
    with get_db_session() as session:
        return session.execute(
            select(purchase_grants.c.used_units).where(purchase_grants.c.id == grant_id)
        ).scalar()


def _base_used(user_id):
    with get_db_session() as session:
        return session.execute(
            select(user_profiles.c.base_used).where(user_profiles.c.user_id == user_id)
        ).scalar()


def test_oldest_grant_is_exhausted_first(make_user, add_grant, admins):
    make_user("u1", plan_tier="free")
    g1 = add_grant("u1", granted=2, created_at=datetime(2026, 10, 1, tzinfo=timezone.utc))
    g2 = add_grant("u1", granted=3, created_at=datetime(2026, 10, 5, tzinfo=timezone.utc))

    results = [consume("u1", now=NOW, admins=admins) for _ in range(5)]

    assert [r.grant_id for r in results] == [g1, g1, g2, g2, g2]
    assert all(r.bucket == "credit" for r in results)
    assert _used(g1) == 2
    assert _used(g2) == 3
    assert _base_used("u1") == 0


def test_base_is_used_once_credits_run_out(make_user, add_grant, admins):
    make_user("u1", plan_tier="free")
    add_grant("u1", granted=1)

    first = consume("u1", now=NOW, admins=admins)
    second = consume("u1", now=NOW, admins=admins)

    assert first.bucket == "credit"
    assert second.bucket == "base"
    assert second.grant_id is None
    assert _base_used("u1") == 1


def test_exhausted_free_user_cannot_consume(make_user, admins):
    make_user("u1", plan_tier="free", base_used=5)

    assert not can_consume("u1", now=NOW, admins=admins)
    with pytest.raises(QuotaExceededError) as exc_info:
        consume("u1", now=NOW, admins=admins)

    assert exc_info.value.status_code == 403
    assert _base_used("u1") == 5


def test_used_never_exceeds_granted(make_user, add_grant, admins):
    make_user("u1", plan_tier="free", base_used=5)
    grant_id = add_grant("u1", granted=2)

    consume("u1", now=NOW, admins=admins)
    consume("u1", now=NOW, admins=admins)
    with pytest.raises(QuotaExceededError):
        consume("u1", now=NOW, admins=admins)

    assert _used(grant_id) == 2


def test_consume_credit_skips_full_grants(make_user, add_grant):
    make_user("u1")
    add_grant("u1", granted=2, used=2, created_at=datetime(2026, 10, 1, tzinfo=timezone.utc))
    open_grant = add_grant("u1", granted=2, created_at=datetime(2026, 10, 2, tzinfo=timezone.utc))

    with get_db_session() as session:
        assert consume_credit(session, "u1", NOW) == open_grant


def test_paid_bonus_allows_one_upload_past_base(make_user, admins):
    make_user("u1", plan_tier="basic", base_used=30)

    result = consume("u1", now=NOW, admins=admins)

    assert result.bucket == "base"
    assert _base_used("u1") == 31
    assert not can_consume("u1", now=NOW, admins=admins)


def test_unknown_user_cannot_consume(admins):
    with pytest.raises(NotFoundError):
        consume("ghost", now=NOW, admins=admins)


def test_record_upload_returns_refreshed_allowance(make_user, admins):
    make_user("u1", plan_tier="free", base_used=1)

    recorded = record_upload("u1", now=NOW, admins=admins)

    assert recorded.bucket == "base"
    assert recorded.allowance.base_used == 2
    assert recorded.allowance.remaining == 3
