"""
studio_quota/features/purchases/service.py

One-time purchased credit grants for authenticated users.

Handles:
- Grant validation (rejected before any write)
- Idempotent grant creation keyed by the external payment reference
- Grant loading in consumption order (oldest first)
"""

import logging
import re
from datetime import datetime
from typing import List, Optional
from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from studio_quota.core.database import (
    get_db_session,
    insert_ignore,
    purchase_grants,
    store_operation,
)
from studio_quota.core.errors import InvalidGrantError, NotFoundError
from studio_quota.features.allowance.reset import normalize_now
from studio_quota.features.users.service import as_utc, load_user
from studio_quota.models.grant import GrantStatus, PurchaseGrant


logger = logging.getLogger("studio_quota")

# Stripe-style identifiers: pi_..., cs_test_..., ch_...
PAYMENT_REF_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-:.]{2,254}$")
DEFAULT_CURRENCY = "usd"
DEFAULT_PURCHASE_TYPE = "single_upload"


def validate_grant(external_payment_ref, granted_units) -> str:
    """Return the normalised payment reference or raise InvalidGrantError."""
    if isinstance(granted_units, bool) or not isinstance(granted_units, int):
        raise InvalidGrantError("granted_units must be an integer")
    if granted_units <= 0:
        raise InvalidGrantError("granted_units must be positive")
    if not isinstance(external_payment_ref, str):
        raise InvalidGrantError("external_payment_ref must be a string")
    ref = external_payment_ref.strip()
    if not PAYMENT_REF_RE.match(ref):
        raise InvalidGrantError("external_payment_ref is malformed")
    return ref


def grant_from_row(row) -> PurchaseGrant:
    return PurchaseGrant(
        id=row.id,
        user_id=row.user_id,
        granted_units=row.granted_units,
        used_units=row.used_units,
        status=row.status,
        external_payment_ref=row.external_payment_ref,
        external_session_ref=row.external_session_ref,
        amount=row.amount,
        currency=row.currency,
        purchase_type=row.purchase_type,
        created_at=as_utc(row.created_at),
    )


def load_grants(session: Session, user_id: str, *, completed_only: bool = True) -> List[PurchaseGrant]:
    """User grants, oldest first (consumption order)."""
    query = select(purchase_grants).where(purchase_grants.c.user_id == user_id)
    if completed_only:
        query = query.where(purchase_grants.c.status == GrantStatus.COMPLETED.value)
    rows = session.execute(
        query.order_by(purchase_grants.c.created_at.asc(), purchase_grants.c.id.asc())
    ).all()
    return [grant_from_row(row) for row in rows]


def load_grant_by_ref(session: Session, external_payment_ref: str) -> Optional[PurchaseGrant]:
    row = session.execute(
        select(purchase_grants).where(purchase_grants.c.external_payment_ref == external_payment_ref)
    ).first()
    return grant_from_row(row) if row else None


def insert_grant(
    session: Session,
    *,
    user_id: str,
    external_payment_ref: str,
    granted_units: int,
    used_units: int = 0,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    purchase_type: Optional[str] = None,
    external_session_ref: Optional[str] = None,
    now: datetime,
) -> bool:
    """Insert a completed grant; False when the payment reference already exists."""
    inserted = insert_ignore(
        session,
        purchase_grants,
        {
            "user_id": user_id,
            "granted_units": granted_units,
            "used_units": min(used_units, granted_units),
            "status": GrantStatus.COMPLETED.value,
            "external_payment_ref": external_payment_ref,
            "external_session_ref": external_session_ref,
            "amount": amount if amount is not None else 0,
            "currency": (currency or DEFAULT_CURRENCY).lower(),
            "purchase_type": purchase_type or DEFAULT_PURCHASE_TYPE,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["external_payment_ref"],
    )
    return inserted > 0


def _refresh_grant(
    session: Session,
    existing: PurchaseGrant,
    *,
    granted_units: int,
    amount: Optional[int],
    currency: Optional[str],
    purchase_type: Optional[str],
    external_session_ref: Optional[str],
    now: datetime,
) -> None:
    """Repeated grant for the same payment: update units in place."""
    table = purchase_grants
    session.execute(
        update(table)
        .where(table.c.id == existing.id)
        .values(
            granted_units=granted_units,
            # keep used_units <= granted_units when the grant shrinks
            used_units=case(
                (table.c.used_units > granted_units, granted_units),
                else_=table.c.used_units,
            ),
            status=GrantStatus.COMPLETED.value,
            amount=amount if amount is not None else existing.amount,
            currency=(currency or existing.currency).lower(),
            purchase_type=purchase_type or existing.purchase_type,
            external_session_ref=external_session_ref or existing.external_session_ref,
            updated_at=now,
        )
    )


def grant_purchase(
    user_id: str,
    *,
    external_payment_ref: str,
    granted_units: int,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    purchase_type: Optional[str] = None,
    external_session_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PurchaseGrant:
    """
    Record a paid one-time purchase for a user (idempotent on payment ref).

    A repeated call with the same reference updates the existing grant's
    granted_units instead of creating a duplicate.

    Raises:
        InvalidGrantError: non-positive units, malformed reference, or a
            reference already granted to a different user
        NotFoundError: unknown user
    """
    ref = validate_grant(external_payment_ref, granted_units)
    now = normalize_now(now)

    with store_operation("grant_purchase", user_id=user_id):
        with get_db_session() as session:
            if load_user(session, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")

            created = insert_grant(
                session,
                user_id=user_id,
                external_payment_ref=ref,
                granted_units=granted_units,
                amount=amount,
                currency=currency,
                purchase_type=purchase_type,
                external_session_ref=external_session_ref,
                now=now,
            )
            if not created:
                existing = load_grant_by_ref(session, ref)
                if existing.user_id != user_id:
                    raise InvalidGrantError("external_payment_ref already granted to another account")
                _refresh_grant(
                    session,
                    existing,
                    granted_units=granted_units,
                    amount=amount,
                    currency=currency,
                    purchase_type=purchase_type,
                    external_session_ref=external_session_ref,
                    now=now,
                )

            grant = load_grant_by_ref(session, ref)

    logger.info(
        "grant.created" if created else "grant.updated",
        extra={"user_id": user_id, "grant_id": grant.id, "granted_units": grant.granted_units},
    )
    return grant


def list_purchase_grants(user_id: str, *, completed_only: bool = False) -> List[PurchaseGrant]:
    """All grants for a user, oldest first."""
    with store_operation("list_purchase_grants", user_id=user_id):
        with get_db_session() as session:
            return load_grants(session, user_id, completed_only=completed_only)
