"""
studio_quota/models/allowance.py

Computed allowance views. Derived fresh on every query, never persisted.
"""

from datetime import datetime
from typing import List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict

# Administrators get float("inf") limits; everyone else gets ints
Units = Union[int, float]


class AllowanceBreakdown(BaseModel):
    """
    Full allowance breakdown for an authenticated user.

    remaining includes purchased credits and, for paid tiers, the free-tier
    bonus. The bonus is not part of total_limit/total_used, so remaining can
    exceed total_limit - total_used.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_tier: str
    subscription_status: str
    base_limit: Units
    base_used: int
    credits_granted: int = 0
    credits_used: int = 0
    credits_available: int = 0
    total_limit: Units
    total_used: int
    remaining: Units
    is_admin: bool = False
    degraded: bool = False

    @property
    def display_limit(self) -> Units:
        """Limit shown to the user: the base allowance only, credits excluded."""
        return self.base_limit

    @property
    def base_remaining(self) -> Units:
        return max(0, self.base_limit - self.base_used)


class ConsumeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    bucket: Literal["credit", "base", "unlimited"]
    grant_id: Optional[int] = None
    degraded: bool = False


class RecordedUpload(BaseModel):
    model_config = ConfigDict(frozen=True)

    bucket: str
    allowance: AllowanceBreakdown


class GrantSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    granted_units: int
    used_units: int
    remaining_units: int
    amount: int
    currency: str
    purchase_type: str
    status: str
    created_at: datetime


class BaseSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: Units
    used: int
    remaining: Units


class CreditSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    granted: int
    used: int
    available: int


class UploadStats(BaseModel):
    """Display-oriented view of an AllowanceBreakdown plus the grant listing."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_tier: str
    subscription_status: str
    upload_count: int
    upload_limit: Units
    remaining: Units
    base: BaseSummary
    credits: CreditSummary
    purchases: List[GrantSummary] = []


class GuestAllowance(BaseModel):
    model_config = ConfigDict(frozen=True)

    remaining: int
    limit: int
    source: Literal["default", "purchase"]
    degraded: bool = False

    @property
    def can_upload(self) -> bool:
        return self.remaining > 0


class GuestUploadStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    remaining: int
    limit: int
    used: int
    has_purchase: bool
    source: str


class ResetSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    profiles_reset: int
    grants_reset: int
    reset_at: datetime
