"""
studio_quota/models/profile.py

UserProfile model: base allowance usage for the current calendar month.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class UserProfile(BaseModel):
    """
    UserProfile tracks how much of the recurring base allowance is spent.

    - base_used counts actions debited against the base allowance this cycle
    - base_limit_override is only set when a paid plan's limit differs from policy
    - last_monthly_reset is None until the first allowance lookup stamps it
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    base_used: int = Field(default=0, ge=0)
    base_limit_override: Optional[int] = None
    last_monthly_reset: Optional[datetime] = None
