"""
studio_quota/features/guests/service.py

Guest (unauthenticated) upload allowance, keyed by session id.

Guests have no base allowance layer: either the fixed default
(GUEST_UPLOAD_LIMIT, nothing stored) or the sum of the session's completed
purchase grants. Guest grants never reset monthly.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional
from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from studio_quota.core.config import Settings, settings
from studio_quota.core.database import (
    get_db_session,
    guest_grants,
    insert_ignore,
    store_operation,
)
from studio_quota.core.errors import QuotaExceededError, SchemaDegradedError, ValidationError
from studio_quota.core.logging import log_event
from studio_quota.features.allowance.reset import normalize_now
from studio_quota.features.purchases.service import (
    DEFAULT_CURRENCY,
    DEFAULT_PURCHASE_TYPE,
    validate_grant,
)
from studio_quota.features.users.service import as_utc
from studio_quota.models.allowance import GuestAllowance, GuestUploadStats
from studio_quota.models.grant import GrantStatus, GuestGrant
from studio_quota.models.user import User


logger = logging.getLogger("studio_quota")

MAX_SESSION_ID_LENGTH = 255


def validate_session_id(session_id) -> str:
    if not isinstance(session_id, str) or not session_id.strip():
        raise ValidationError("session_id is required")
    session_id = session_id.strip()
    if len(session_id) > MAX_SESSION_ID_LENGTH:
        raise ValidationError("session_id is too long")
    return session_id


def guest_grant_from_row(row) -> GuestGrant:
    return GuestGrant(
        id=row.id,
        session_id=row.session_id,
        granted_units=row.granted_units,
        used_units=row.used_units,
        status=row.status,
        external_payment_ref=row.external_payment_ref,
        amount=row.amount,
        currency=row.currency,
        purchase_type=row.purchase_type,
        email=row.email,
        transferred_to=row.transferred_to,
        transferred_at=as_utc(row.transferred_at),
        created_at=as_utc(row.created_at),
    )


def load_guest_grants(session: Session, session_id: str, *, completed_only: bool = True) -> List[GuestGrant]:
    """Session grants, oldest first."""
    query = select(guest_grants).where(guest_grants.c.session_id == session_id)
    if completed_only:
        query = query.where(guest_grants.c.status == GrantStatus.COMPLETED.value)
    rows = session.execute(
        query.order_by(guest_grants.c.created_at.asc(), guest_grants.c.id.asc())
    ).all()
    return [guest_grant_from_row(row) for row in rows]


def default_guest_allowance(*, degraded: bool = False, cfg: Optional[Settings] = None) -> GuestAllowance:
    cfg = cfg or settings
    return GuestAllowance(
        remaining=cfg.GUEST_UPLOAD_LIMIT,
        limit=cfg.GUEST_UPLOAD_LIMIT,
        source="default",
        degraded=degraded,
    )


def guest_allowance_from(grants: Iterable[GuestGrant], *, cfg: Optional[Settings] = None) -> GuestAllowance:
    completed = [g for g in grants if g.status is GrantStatus.COMPLETED]
    if not completed:
        return default_guest_allowance(cfg=cfg)
    granted = sum(g.granted_units for g in completed)
    used = sum(min(g.used_units, g.granted_units) for g in completed)
    return GuestAllowance(remaining=max(0, granted - used), limit=granted, source="purchase")


def _log_guest_degraded(session_id: str, operation: str) -> None:
    log_event(
        "warning",
        "guest.degraded",
        session_id=session_id,
        event_type=operation,
        error_code="schema_degraded",
    )


def guest_allowance_or_default(session_id: str, operation: str) -> GuestAllowance:
    """Session allowance; the stateless default when guest grants are unreadable."""
    try:
        with store_operation(operation, session_id=session_id):
            with get_db_session() as session:
                grants = load_guest_grants(session, session_id)
    except SchemaDegradedError:
        _log_guest_degraded(session_id, operation)
        return default_guest_allowance(degraded=True)
    return guest_allowance_from(grants)


def get_guest_allowance(session_id: str) -> GuestAllowance:
    session_id = validate_session_id(session_id)
    return guest_allowance_or_default(session_id, "get_guest_allowance")


def consume_guest_credit(session: Session, session_id: str, now: datetime) -> Optional[int]:
    table = guest_grants
    while True:
        row = session.execute(
            select(table.c.id)
            .where(table.c.session_id == session_id)
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
            .where(table.c.status == GrantStatus.COMPLETED.value)
            .where(table.c.used_units < table.c.granted_units)
            .values(used_units=table.c.used_units + 1, updated_at=now)
        )
        if result.rowcount:
            return row.id


def consume_guest(session_id: str, *, now: Optional[datetime] = None) -> Optional[int]:
    """
    Spend one guest upload.

    Returns the debited grant id, or None when the session is still on the
    default allowance (the default is not tracked in the store). An
    unreadable guest relation is treated as the default.

    Raises:
        QuotaExceededError: the session's purchased credits are used up
    """
    session_id = validate_session_id(session_id)
    now = normalize_now(now)

    try:
        with store_operation("consume_guest", session_id=session_id):
            with get_db_session() as session:
                allowance = guest_allowance_from(load_guest_grants(session, session_id))
                if allowance.remaining <= 0:
                    raise QuotaExceededError("Guest upload allowance exhausted")
                if allowance.source == "default":
                    grant_id = None
                else:
                    grant_id = consume_guest_credit(session, session_id, now)
                    if grant_id is None:
                        # Lost the last unit to a concurrent request
                        raise QuotaExceededError("Guest upload allowance exhausted")
    except SchemaDegradedError:
        _log_guest_degraded(session_id, "consume_guest")
        allowance = default_guest_allowance(degraded=True)
        grant_id = None

    logger.info(
        "guest.consumed",
        extra={
            "session_id": session_id,
            "grant_id": grant_id,
            "bucket": allowance.source,
            "remaining": allowance.remaining - 1,
        },
    )
    return grant_id


def load_guest_grant_by_ref(session: Session, session_id: str, external_payment_ref: str) -> Optional[GuestGrant]:
    row = session.execute(
        select(guest_grants)
        .where(guest_grants.c.session_id == session_id)
        .where(guest_grants.c.external_payment_ref == external_payment_ref)
    ).first()
    return guest_grant_from_row(row) if row else None


def grant_guest_purchase(
    session_id: str,
    *,
    external_payment_ref: str,
    granted_units: int,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    purchase_type: Optional[str] = None,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GuestGrant:
    """
    Record a guest purchase, idempotent on (session_id, external_payment_ref).

    A repeat with the same reference updates granted_units in place unless
    the grant has already been transferred to a user, in which case the
    existing record is returned unchanged.
    """
    session_id = validate_session_id(session_id)
    ref = validate_grant(external_payment_ref, granted_units)
    now = normalize_now(now)
    table = guest_grants

    with store_operation("grant_guest_purchase", session_id=session_id):
        with get_db_session() as session:
            created = insert_ignore(
                session,
                table,
                {
                    "session_id": session_id,
                    "granted_units": granted_units,
                    "used_units": 0,
                    "status": GrantStatus.COMPLETED.value,
                    "external_payment_ref": ref,
                    "amount": amount if amount is not None else 0,
                    "currency": (currency or DEFAULT_CURRENCY).lower(),
                    "purchase_type": purchase_type or DEFAULT_PURCHASE_TYPE,
                    "email": User.normalized_email(email),
                    "created_at": now,
                    "updated_at": now,
                },
                index_elements=["session_id", "external_payment_ref"],
            ) > 0
            if not created:
                session.execute(
                    update(table)
                    .where(table.c.session_id == session_id)
                    .where(table.c.external_payment_ref == ref)
                    .where(table.c.status == GrantStatus.COMPLETED.value)
                    .values(
                        granted_units=granted_units,
                        used_units=case(
                            (table.c.used_units > granted_units, granted_units),
                            else_=table.c.used_units,
                        ),
                        amount=amount if amount is not None else table.c.amount,
                        currency=currency.lower() if currency else table.c.currency,
                        updated_at=now,
                    )
                )
            grant = load_guest_grant_by_ref(session, session_id, ref)

    logger.info(
        "guest.grant.created" if created else "guest.grant.updated",
        extra={"session_id": session_id, "grant_id": grant.id, "granted_units": grant.granted_units},
    )
    return grant


def get_guest_upload_stats(session_id: str) -> GuestUploadStats:
    session_id = validate_session_id(session_id)
    allowance = guest_allowance_or_default(session_id, "get_guest_upload_stats")
    return GuestUploadStats(
        remaining=allowance.remaining,
        limit=allowance.limit,
        used=allowance.limit - allowance.remaining,
        has_purchase=allowance.source == "purchase",
        source=allowance.source,
    )
