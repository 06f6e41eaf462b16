"""
studio_quota/models/grant.py

One-time purchased credit grants, owned either by a user or by a guest session.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class GrantStatus(str, Enum):
    COMPLETED = "completed"
    TRANSFERRED = "transferred"


class PurchaseGrant(BaseModel):
    """
    PurchaseGrant is a one-time allotment of extra uploads for a user.

    Constraint: 0 <= used_units <= granted_units.
    Only COMPLETED grants count toward the allowance.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    granted_units: int = Field(gt=0)
    used_units: int = Field(default=0, ge=0)
    status: GrantStatus = GrantStatus.COMPLETED
    external_payment_ref: str
    external_session_ref: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    purchase_type: str = "single_upload"
    created_at: datetime

    @property
    def remaining_units(self) -> int:
        return max(0, self.granted_units - self.used_units)


class GuestGrant(BaseModel):
    """GuestGrant mirrors PurchaseGrant, keyed by guest session instead of user."""
    model_config = ConfigDict(frozen=True)

    id: int
    session_id: str
    granted_units: int = Field(gt=0)
    used_units: int = Field(default=0, ge=0)
    status: GrantStatus = GrantStatus.COMPLETED
    external_payment_ref: str
    amount: int = 0
    currency: str = "usd"
    purchase_type: str = "single_upload"
    email: Optional[str] = None
    transferred_to: Optional[str] = None
    transferred_at: Optional[datetime] = None
    created_at: datetime

    @property
    def remaining_units(self) -> int:
        return max(0, self.granted_units - self.used_units)

