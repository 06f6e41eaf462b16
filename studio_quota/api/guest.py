"""
Guest upload allowance API.

Guests are identified by an opaque session id; transfer is called by the
sign-up flow once the guest has an account.
"""
from fastapi import APIRouter

from studio_quota.features.guests.service import (
    consume_guest,
    get_guest_allowance,
    get_guest_upload_stats,
)
from studio_quota.features.guests.transfer import transfer_guest_grant

router = APIRouter(prefix="/api/guest", tags=["guest"])


@router.get("/{session_id}/allowance")
def read_guest_allowance(session_id: str):
    allowance = get_guest_allowance(session_id)
    return {**allowance.model_dump(), "can_upload": allowance.can_upload}


@router.get("/{session_id}/stats")
def read_guest_stats(session_id: str):
    return get_guest_upload_stats(session_id).model_dump()


@router.post("/{session_id}/consume")
def consume_guest_upload(session_id: str):
    grant_id = consume_guest(session_id)
    allowance = get_guest_allowance(session_id)
    return {
        "grant_id": grant_id,
        "allowance": {**allowance.model_dump(), "can_upload": allowance.can_upload},
    }


@router.post("/{session_id}/transfer/{user_id}")
def transfer_to_user(session_id: str, user_id: str):
    grant = transfer_guest_grant(session_id, user_id)
    if grant is None:
        return {"transferred": False, "grant": None}
    return {"transferred": True, "grant": grant.model_dump(mode="json")}
