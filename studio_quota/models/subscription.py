"""
studio_quota/models/subscription.py

Subscription model. Written by billing webhooks, read-only for the quota engine.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class PlanTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_tier: PlanTier = PlanTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    limit_override: Optional[int] = None
