"""Degraded mode: missing relations fall back, other store errors propagate."""
import logging
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError, ProgrammingError

from studio_quota.core.database import (
    get_db_session,
    get_engine,
    is_missing_relation_error,
    purchase_grants,
    user_profiles,
)
from studio_quota.core.errors import NotFoundError, StoreUnavailableError
from studio_quota.features.allowance.consumption import consume
from studio_quota.features.allowance.service import can_consume, get_allowance
from studio_quota.models.allowance import ConsumeResult

NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)


def _base_used(user_id):
    with get_db_session() as session:
        return session.execute(
            select(user_profiles.c.base_used).where(user_profiles.c.user_id == user_id)
        ).scalar()


class _PgError(Exception):
    def __init__(self, message, pgcode):
        super().__init__(message)
        self.pgcode = pgcode


def test_missing_relation_detection():
    assert is_missing_relation_error(ProgrammingError("SELECT", {}, _PgError("boom", "42P01")))
    assert is_missing_relation_error(ProgrammingError("SELECT", {}, _PgError("boom", "42703")))
    assert is_missing_relation_error(OperationalError("SELECT", {}, Exception("no such table: purchase_grants")))
    assert is_missing_relation_error(
        ProgrammingError("SELECT", {}, Exception('relation "purchase_grants" does not exist'))
    )
    assert not is_missing_relation_error(OperationalError("SELECT", {}, Exception("database is locked")))
    assert not is_missing_relation_error(
        OperationalError("CONNECT", {}, Exception('role "quota" does not exist'))
    )
    assert not is_missing_relation_error(ValueError("no such table"))


def test_missing_grants_table_returns_fallback(make_user, admins, caplog):
    make_user("u1", plan_tier="pro", base_used=40)
    purchase_grants.drop(get_engine())

    with caplog.at_level(logging.WARNING, logger="studio_quota"):
        allowance = get_allowance("u1", now=NOW, admins=admins)

    assert allowance.degraded
    assert allowance.base_limit == 5
    assert allowance.base_used == 0
    assert allowance.credits_granted == 0
    assert allowance.remaining == 5
    assert any(r.getMessage() == "allowance.degraded" for r in caplog.records)


def test_other_store_errors_raise_store_unavailable(make_user, admins):
    make_user("u1")
    failure = OperationalError("SELECT", {}, Exception("disk I/O error"))

    with patch("studio_quota.features.allowance.service.load_grants", side_effect=failure):
        with pytest.raises(StoreUnavailableError) as exc_info:
            get_allowance("u1", now=NOW, admins=admins)

    assert exc_info.value.status_code == 503
    assert exc_info.value.code == "store_unavailable"


def test_consume_falls_back_to_base_when_grants_table_is_missing(make_user, admins, caplog):
    make_user("u1", base_used=2)
    purchase_grants.drop(get_engine())

    assert can_consume("u1", now=NOW, admins=admins)
    with caplog.at_level(logging.WARNING, logger="studio_quota"):
        result = consume("u1", now=NOW, admins=admins)

    assert result.bucket == "base"
    assert result.degraded
    assert _base_used("u1") == 3
    assert any(r.getMessage() == "allowance.degraded" for r in caplog.records)


def test_degraded_consume_without_profile_table_lets_upload_through(make_user, admins, caplog):
    make_user("u1")
    engine = get_engine()
    purchase_grants.drop(engine)
    user_profiles.drop(engine)

    with caplog.at_level(logging.WARNING, logger="studio_quota"):
        result = consume("u1", now=NOW, admins=admins)

    assert result == ConsumeResult(bucket="base", degraded=True)
    assert any(r.getMessage() == "allowance.degraded.unrecorded" for r in caplog.records)


def test_degraded_consume_still_rejects_unknown_users(admins):
    purchase_grants.drop(get_engine())

    with pytest.raises(NotFoundError):
        consume("ghost", now=NOW, admins=admins)
