"""
Monthly reset of upload usage.

Resets are driven by calendar month/year (UTC), not elapsed time, so a user
is reset at most once per distinct month regardless of the day they return.

NOTE: a reset zeroes used_units on *all* of the user's purchase grants, so
one-time credits are refilled every month (granted_units are kept). This
mirrors production behaviour and is covered by tests; do not change it
without a product decision.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from studio_quota.core.database import (
    get_db_session,
    purchase_grants,
    store_operation,
    user_profiles,
)
from studio_quota.core.errors import NotFoundError
from studio_quota.features.users.service import as_utc, load_or_create_profile, load_user
from studio_quota.models.allowance import ResetSummary
from studio_quota.models.grant import GrantStatus
from studio_quota.models.profile import UserProfile


logger = logging.getLogger("studio_quota")


def normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return as_utc(now)


def month_key(value: datetime) -> Tuple[int, int]:
    value = as_utc(value)
    return value.year, value.month


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """[start of now's month, start of the following month) in UTC."""
    now = as_utc(now)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        following = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        following = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, following


def reset_due(last_reset: Optional[datetime], now: datetime) -> bool:
    """True when last_reset falls in a different calendar month than now."""
    if last_reset is None:
        return False
    return month_key(last_reset) != month_key(now)


def apply_monthly_reset(session: Session, profile: UserProfile, now: datetime) -> bool:
    """
    Run the reset state machine for one user inside the caller's transaction.

    - never reset: stamp last_monthly_reset, keep counters
    - reset due: zero base_used and every grant's used_units
    - otherwise: no-op

    Returns True only when counters were zeroed. Every write is conditional
    on the state that was observed, so overlapping requests or a retried
    reset cannot reset the same month twice.
    """
    table = user_profiles
    if profile.last_monthly_reset is None:
        session.execute(
            update(table)
            .where(table.c.user_id == profile.user_id)
            .where(table.c.last_monthly_reset.is_(None))
            .values(last_monthly_reset=now, updated_at=now)
        )
        return False

    if not reset_due(profile.last_monthly_reset, now):
        return False

    start, following = month_bounds(now)
    result = session.execute(
        update(table)
        .where(table.c.user_id == profile.user_id)
        .where(or_(table.c.last_monthly_reset < start, table.c.last_monthly_reset >= following))
        .values(base_used=0, last_monthly_reset=now, updated_at=now)
    )
    if not result.rowcount:
        # Another request already reset this month
        return False

    grants = session.execute(
        update(purchase_grants)
        .where(purchase_grants.c.user_id == profile.user_id)
        .values(used_units=0, updated_at=now)
    )
    logger.info(
        "allowance.monthly_reset",
        extra={
            "user_id": profile.user_id,
            "previous_base_used": profile.base_used,
            "grants_reset": grants.rowcount or 0,
        },
    )
    return True


def reset_user_quota(user_id: str, *, now: Optional[datetime] = None) -> ResetSummary:
    """
    Unconditionally zero a user's usage (admin/testing utility).

    Clears base_used and used_units on every grant; last_monthly_reset is
    left alone so the monthly cycle is unaffected.
    """
    now = normalize_now(now)
    with store_operation("reset_user_quota", user_id=user_id):
        with get_db_session() as session:
            if load_user(session, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")
            load_or_create_profile(session, user_id)
            profiles = session.execute(
                update(user_profiles)
                .where(user_profiles.c.user_id == user_id)
                .values(base_used=0, updated_at=now)
            )
            grants = session.execute(
                update(purchase_grants)
                .where(purchase_grants.c.user_id == user_id)
                .values(used_units=0, updated_at=now)
            )
            summary = ResetSummary(
                profiles_reset=profiles.rowcount or 0,
                grants_reset=grants.rowcount or 0,
                reset_at=now,
            )

    logger.info(
        "quota.reset",
        extra={"user_id": user_id, "grants_reset": summary.grants_reset},
    )
    return summary


def reset_all_allowances(*, now: Optional[datetime] = None) -> ResetSummary:
    """Start a new cycle for every user in a single transaction."""
    now = normalize_now(now)
    with store_operation("reset_all_allowances"):
        with get_db_session() as session:
            profiles = session.execute(
                update(user_profiles).values(base_used=0, last_monthly_reset=now, updated_at=now)
            )
            grants = session.execute(
                update(purchase_grants)
                .where(purchase_grants.c.status == GrantStatus.COMPLETED.value)
                .values(used_units=0, updated_at=now)
            )
            summary = ResetSummary(
                profiles_reset=profiles.rowcount or 0,
                grants_reset=grants.rowcount or 0,
                reset_at=now,
            )

    logger.info(
        "quota.reset_all",
        extra={"profiles_reset": summary.profiles_reset, "grants_reset": summary.grants_reset},
    )
    return summary
