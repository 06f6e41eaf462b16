"""
Guest-to-user credit transfer.

Moves a guest session's most recent completed grant onto a user account,
typically at sign-up. The user grant insert and the guest grant status flip
run in one transaction, so a failure leaves the guest grant consumable and
no user grant behind.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update

from studio_quota.core.database import get_db_session, guest_grants, store_operation
from studio_quota.core.errors import InvalidGrantError, NotFoundError
from studio_quota.features.allowance.reset import normalize_now
from studio_quota.features.guests.service import guest_grant_from_row, validate_session_id
from studio_quota.features.purchases.service import insert_grant, load_grant_by_ref
from studio_quota.features.users.service import load_user
from studio_quota.models.grant import GrantStatus, PurchaseGrant


logger = logging.getLogger("studio_quota")


def transfer_guest_grant(
    session_id: str,
    user_id: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[PurchaseGrant]:
    """
    Transfer the session's latest completed guest grant to user_id.

    Returns the user's grant, or None when the session has nothing left to
    transfer (including a repeat call after a successful transfer).

    Raises:
        NotFoundError: unknown user
        InvalidGrantError: the payment reference already belongs to another user
    """
    session_id = validate_session_id(session_id)
    now = normalize_now(now)
    table = guest_grants

    with store_operation("transfer_guest_grant", session_id=session_id, user_id=user_id):
        with get_db_session() as session:
            if load_user(session, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")

            row = session.execute(
                select(table)
                .where(table.c.session_id == session_id)
                .where(table.c.status == GrantStatus.COMPLETED.value)
                .order_by(table.c.created_at.desc(), table.c.id.desc())
                .limit(1)
            ).first()
            if row is None:
                logger.info(
                    "guest.transfer.noop",
                    extra={"session_id": session_id, "user_id": user_id},
                )
                return None
            guest = guest_grant_from_row(row)

            created = insert_grant(
                session,
                user_id=user_id,
                external_payment_ref=guest.external_payment_ref,
                granted_units=guest.granted_units,
                used_units=guest.used_units,
                amount=guest.amount,
                currency=guest.currency,
                purchase_type=guest.purchase_type,
                external_session_ref=session_id,
                now=now,
            )
            grant = load_grant_by_ref(session, guest.external_payment_ref)
            if not created and grant.user_id != user_id:
                raise InvalidGrantError("external_payment_ref already granted to another account")

            session.execute(
                update(table)
                .where(table.c.id == guest.id)
                .where(table.c.status == GrantStatus.COMPLETED.value)
                .values(
                    status=GrantStatus.TRANSFERRED.value,
                    transferred_to=user_id,
                    transferred_at=now,
                    updated_at=now,
                )
            )

    logger.info(
        "guest.transfer",
        extra={
            "session_id": session_id,
            "user_id": user_id,
            "grant_id": grant.id,
            "guest_grant_id": guest.id,
            "granted_units": grant.granted_units,
        },
    )
    return grant
