"""
Upload allowance API for authenticated users.

Identity comes from the path; authentication is handled upstream.
"""
import math
from typing import Any, Dict

from fastapi import APIRouter

from studio_quota.features.allowance.consumption import record_upload
from studio_quota.features.allowance.service import get_allowance, get_upload_stats
from studio_quota.models.allowance import AllowanceBreakdown, UploadStats

router = APIRouter(prefix="/api/allowance", tags=["allowance"])


def _finite(value):
    """JSON has no Infinity; unlimited figures are sent as null."""
    if isinstance(value, float) and math.isinf(value):
        return None
    return value


def allowance_payload(allowance: AllowanceBreakdown) -> Dict[str, Any]:
    payload = {key: _finite(value) for key, value in allowance.model_dump().items()}
    payload["display_limit"] = _finite(allowance.display_limit)
    payload["unlimited"] = allowance.is_admin
    payload["can_upload"] = allowance.is_admin or allowance.remaining > 0
    return payload


def stats_payload(stats: UploadStats) -> Dict[str, Any]:
    payload = stats.model_dump(mode="json")
    for key in ("upload_limit", "remaining"):
        payload[key] = _finite(getattr(stats, key))
    payload["base"]["limit"] = _finite(stats.base.limit)
    payload["base"]["remaining"] = _finite(stats.base.remaining)
    return payload


@router.get("/{user_id}")
def read_allowance(user_id: str):
    return allowance_payload(get_allowance(user_id))


@router.post("/{user_id}/consume")
def consume_upload(user_id: str):
    recorded = record_upload(user_id)
    return {"bucket": recorded.bucket, "allowance": allowance_payload(recorded.allowance)}


@router.get("/{user_id}/stats")
def read_upload_stats(user_id: str):
    return stats_payload(get_upload_stats(user_id))
