"""Plan policy: (plan tier, subscription status) -> monthly base upload allowance."""
from __future__ import annotations

from typing import Optional, Union

from studio_quota.core.config import Settings, settings
from studio_quota.models.subscription import PlanTier, SubscriptionStatus


def _coerce_tier(plan_tier: Union[PlanTier, str, None]) -> Optional[PlanTier]:
    if plan_tier is None:
        return None
    try:
        return PlanTier(plan_tier)
    except ValueError:
        return None


def _coerce_status(status: Union[SubscriptionStatus, str, None]) -> Optional[SubscriptionStatus]:
    if status is None:
        return None
    try:
        return SubscriptionStatus(status)
    except ValueError:
        return None


def tier_limit(plan_tier: Union[PlanTier, str, None], status: Union[SubscriptionStatus, str, None], *, cfg: Optional[Settings] = None) -> int:
    """Policy-derived allowance, ignoring any stored override."""
    cfg = cfg or settings
    if _coerce_status(status) is SubscriptionStatus.PAST_DUE:
        # No new actions until the payment is resolved, whatever the tier
        return 0
    tier = _coerce_tier(plan_tier)
    if tier is PlanTier.BASIC:
        return cfg.BASIC_UPLOAD_LIMIT
    if tier is PlanTier.PRO:
        return cfg.PRO_UPLOAD_LIMIT
    return cfg.FREE_UPLOAD_LIMIT


def is_sane_override(value: Optional[int], *, cfg: Optional[Settings] = None) -> bool:
    cfg = cfg or settings
    return value is not None and 0 < value <= cfg.MAX_LIMIT_OVERRIDE


def base_plan_limit(
    plan_tier: Union[PlanTier, str, None],
    status: Union[SubscriptionStatus, str, None],
    *,
    profile_override: Optional[int] = None,
    subscription_override: Optional[int] = None,
    cfg: Optional[Settings] = None,
) -> int:
    """
    Resolve the base allowance for a user.

    Order:
    1. past_due -> 0, overrides included
    2. basic / pro -> fixed tier allowance
    3. anything else (free, inactive, no subscription) -> free allowance

    For other non-free tiers a sane stored override (profile first, then
    subscription) replaces the tier allowance. Free tier always uses the
    policy value so stale overrides cannot inflate it.
    """
    cfg = cfg or settings
    limit = tier_limit(plan_tier, status, cfg=cfg)

    tier = _coerce_tier(plan_tier)
    if tier is None or tier is PlanTier.FREE:
        return limit
    if _coerce_status(status) is SubscriptionStatus.PAST_DUE:
        # Overrides never reopen a past-due account
        return 0

    if is_sane_override(profile_override, cfg=cfg):
        return int(profile_override)
    if is_sane_override(subscription_override, cfg=cfg):
        return int(subscription_override)
    return limit
