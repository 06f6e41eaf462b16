"""
Credit consumption for authenticated users.

Purchased credits are spent before the recurring base allowance: the oldest
completed grant with room is debited first, and only when no grant has room
does base_used move. Every debit is a single conditional UPDATE
(used = used + 1 WHERE used < granted), never a read-modify-write.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from studio_quota.core.admin_auth import AdminAllowList, get_admin_allow_list
from studio_quota.core.database import (
    get_db_session,
    purchase_grants,
    store_operation,
    user_profiles,
)
from studio_quota.core.errors import NotFoundError, QuotaExceededError, SchemaDegradedError
from studio_quota.core.logging import log_event
from studio_quota.features.allowance.reset import normalize_now
from studio_quota.features.allowance.service import compute_allowance, get_allowance
from studio_quota.models.allowance import ConsumeResult, RecordedUpload
from studio_quota.models.grant import GrantStatus


logger = logging.getLogger("studio_quota")


def consume_credit(session: Session, user_id: str, now: datetime) -> Optional[int]:
    """Debit one unit from the oldest grant with room; returns its id or None."""
    table = purchase_grants
    while True:
        row = session.execute(
            select(table.c.id)
            .where(table.c.user_id == user_id)
            .where(table.c.status == GrantStatus.COMPLETED.value)
            .where(table.c.used_units < table.c.granted_units)
            .order_by(table.c.created_at.asc(), table.c.id.asc())
            .limit(1)
        ).first()
        if row is None:
            return None

        result = session.execute(
            update(table)
            .where(table.c.id == row.id)
            .where(table.c.used_units < table.c.granted_units)
            .values(used_units=table.c.used_units + 1, updated_at=now)
        )
        if result.rowcount:
            return row.id
        # Filled by a concurrent request since the select; try the next one


def consume_base(session: Session, user_id: str, now: datetime) -> bool:
    result = session.execute(
        update(user_profiles)
        .where(user_profiles.c.user_id == user_id)
        .values(base_used=user_profiles.c.base_used + 1, updated_at=now)
    )
    return bool(result.rowcount)


def consume_degraded(user_id: str, now: datetime) -> ConsumeResult:
    """
    Spend one upload while the schema is incomplete.

    Mirrors the fallback breakdown get_allowance() reports: purchased
    credits are unavailable, so the upload lands on an existing base_used.
    Without a profile row, or without the profile relation, the upload is
    let through unrecorded.
    """
    log_event(
        "warning",
        "allowance.degraded",
        user_id=user_id,
        event_type="consume",
        error_code="schema_degraded",
    )
    recorded = False
    try:
        with store_operation("consume_degraded", user_id=user_id):
            with get_db_session() as session:
                recorded = consume_base(session, user_id, now)
    except SchemaDegradedError:
        recorded = False
    if not recorded:
        log_event(
            "warning",
            "allowance.degraded.unrecorded",
            user_id=user_id,
            event_type="consume",
            error_code="schema_degraded",
        )
    return ConsumeResult(bucket="base", degraded=True)


def consume(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    admins: Optional[AdminAllowList] = None,
) -> ConsumeResult:
    """
    Spend one upload for the user.

    A missing relation degrades to consume_degraded() instead of failing.

    Raises:
        QuotaExceededError: nothing remaining
        NotFoundError: unknown user
        StoreUnavailableError: store failure (nothing is written)
    """
    now = normalize_now(now)
    admins = admins if admins is not None else get_admin_allow_list()

    try:
        with store_operation("consume", user_id=user_id):
            with get_db_session() as session:
                allowance = compute_allowance(session, user_id, now=now, admins=admins)
                if allowance is None:
                    raise NotFoundError(f"User {user_id} not found")
                if allowance.is_admin:
                    return ConsumeResult(bucket="unlimited")
                if allowance.remaining <= 0:
                    logger.info(
                        "allowance.exhausted",
                        extra={"user_id": user_id, "error_code": "quota_exceeded"},
                    )
                    raise QuotaExceededError("Upload allowance exhausted")

                grant_id = consume_credit(session, user_id, now)
                if grant_id is not None:
                    result = ConsumeResult(bucket="credit", grant_id=grant_id)
                else:
                    consume_base(session, user_id, now)
                    result = ConsumeResult(bucket="base")
    except SchemaDegradedError:
        return consume_degraded(user_id, now)

    logger.info(
        "allowance.consumed",
        extra={
            "user_id": user_id,
            "bucket": result.bucket,
            "grant_id": result.grant_id,
            "remaining": allowance.remaining - 1,
        },
    )
    return result


def record_upload(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    admins: Optional[AdminAllowList] = None,
) -> RecordedUpload:
    """consume() followed by the refreshed allowance breakdown."""
    result = consume(user_id, now=now, admins=admins)
    allowance = get_allowance(user_id, now=now, admins=admins)
    return RecordedUpload(bucket=result.bucket, allowance=allowance)
