"""
studio_quota/features/allowance/service.py

Allowance calculator for authenticated users.

get_allowance() is the single read path: admin bypass, monthly reset,
plan policy, then credits. The arithmetic lives in calculate_breakdown()
so it can be checked without a store.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from studio_quota.core.admin_auth import AdminAllowList, get_admin_allow_list
from studio_quota.core.config import Settings, settings
from studio_quota.core.database import get_db_session, store_operation
from studio_quota.core.errors import SchemaDegradedError
from studio_quota.core.logging import log_event
from studio_quota.features.allowance.reset import apply_monthly_reset, normalize_now
from studio_quota.features.plans.policy import base_plan_limit
from studio_quota.features.purchases.service import load_grants
from studio_quota.features.users.service import (
    load_or_create_profile,
    load_profile,
    load_subscription,
    load_user,
)
from studio_quota.models.allowance import (
    AllowanceBreakdown,
    BaseSummary,
    CreditSummary,
    GrantSummary,
    UploadStats,
)
from studio_quota.models.grant import PurchaseGrant
from studio_quota.models.subscription import PlanTier, SubscriptionStatus


logger = logging.getLogger("studio_quota")

ADMIN_PLAN_TIER = "admin"
UNLIMITED = float("inf")


def build_fallback_allowance(user_id: str, *, degraded: bool = False, cfg: Optional[Settings] = None) -> AllowanceBreakdown:
    """Conservative free-tier breakdown with no usage and no credits."""
    cfg = cfg or settings
    limit = cfg.FREE_UPLOAD_LIMIT
    return AllowanceBreakdown(
        user_id=user_id,
        plan_tier=PlanTier.FREE.value,
        subscription_status=SubscriptionStatus.INACTIVE.value,
        base_limit=limit,
        base_used=0,
        total_limit=limit,
        total_used=0,
        remaining=limit,
        degraded=degraded,
    )


def build_admin_allowance(user_id: str) -> AllowanceBreakdown:
    return AllowanceBreakdown(
        user_id=user_id,
        plan_tier=ADMIN_PLAN_TIER,
        subscription_status=SubscriptionStatus.ACTIVE.value,
        base_limit=UNLIMITED,
        base_used=0,
        total_limit=UNLIMITED,
        total_used=0,
        remaining=UNLIMITED,
        is_admin=True,
    )


def calculate_breakdown(
    user_id: str,
    *,
    plan_tier: str,
    subscription_status: str,
    base_limit: int,
    base_used: int,
    grants: Iterable[PurchaseGrant],
    cfg: Optional[Settings] = None,
) -> AllowanceBreakdown:
    """
    Combine base allowance and completed credits into a breakdown.

    remaining = max(0, total_limit - total_used), plus PAID_TIER_BONUS for
    paid tiers that have not overrun their base allowance. The bonus is only
    visible in remaining, never in total_limit or total_used.
    """
    cfg = cfg or settings
    grants = list(grants)
    credits_granted = sum(g.granted_units for g in grants)
    credits_used = sum(min(g.used_units, g.granted_units) for g in grants)
    credits_available = max(0, credits_granted - credits_used)

    total_limit = base_limit + credits_granted
    total_used = base_used + credits_used
    remaining = max(0, total_limit - total_used)

    # Applies to past-due paid tiers too, whose base_limit is 0
    if plan_tier != PlanTier.FREE.value and base_used <= base_limit:
        remaining += cfg.PAID_TIER_BONUS

    return AllowanceBreakdown(
        user_id=user_id,
        plan_tier=plan_tier,
        subscription_status=subscription_status,
        base_limit=base_limit,
        base_used=base_used,
        credits_granted=credits_granted,
        credits_used=credits_used,
        credits_available=credits_available,
        total_limit=total_limit,
        total_used=total_used,
        remaining=remaining,
    )


def compute_allowance(
    session: Session,
    user_id: str,
    *,
    now: datetime,
    admins: AdminAllowList,
    cfg: Optional[Settings] = None,
) -> Optional[AllowanceBreakdown]:
    """Allowance inside an open transaction; None for an unknown user."""
    user = load_user(session, user_id)
    if user is None:
        return None

    if admins.is_admin(user):
        logger.info("allowance.admin_bypass", extra={"user_id": user_id})
        return build_admin_allowance(user_id)

    profile = load_or_create_profile(session, user_id)
    if apply_monthly_reset(session, profile, now):
        profile = load_profile(session, user_id)

    subscription = load_subscription(session, user_id)
    if subscription is not None:
        plan_tier = subscription.plan_tier
        status = subscription.status
        subscription_override = subscription.limit_override
    else:
        plan_tier = PlanTier.FREE.value
        status = SubscriptionStatus.INACTIVE.value
        subscription_override = None

    base_limit = base_plan_limit(
        plan_tier,
        status,
        profile_override=profile.base_limit_override,
        subscription_override=subscription_override,
        cfg=cfg,
    )
    return calculate_breakdown(
        user_id,
        plan_tier=plan_tier,
        subscription_status=status,
        base_limit=base_limit,
        base_used=profile.base_used,
        grants=load_grants(session, user_id),
        cfg=cfg,
    )


def get_allowance(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    admins: Optional[AdminAllowList] = None,
) -> AllowanceBreakdown:
    """
    Current allowance for a user.

    A schema missing one of the allowance tables degrades to the free-tier
    fallback (logged, flagged degraded=True). Any other store failure raises
    StoreUnavailableError.
    """
    now = normalize_now(now)
    admins = admins if admins is not None else get_admin_allow_list()

    try:
        with store_operation("get_allowance", user_id=user_id):
            with get_db_session() as session:
                breakdown = compute_allowance(session, user_id, now=now, admins=admins)
    except SchemaDegradedError as exc:
        log_event(
            "warning",
            "allowance.degraded",
            user_id=user_id,
            event_type="allowance.degraded",
            error_code=exc.code,
            extra={"reason": exc.__cause__},
        )
        return build_fallback_allowance(user_id, degraded=True)

    if breakdown is None:
        logger.info("allowance.unknown_user", extra={"user_id": user_id})
        return build_fallback_allowance(user_id)
    return breakdown


def can_consume(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    admins: Optional[AdminAllowList] = None,
) -> bool:
    allowance = get_allowance(user_id, now=now, admins=admins)
    return allowance.is_admin or allowance.remaining > 0


def _grant_summary(grant: PurchaseGrant) -> GrantSummary:
    return GrantSummary(
        id=grant.id,
        granted_units=grant.granted_units,
        used_units=grant.used_units,
        remaining_units=grant.remaining_units,
        amount=grant.amount,
        currency=grant.currency,
        purchase_type=grant.purchase_type,
        status=grant.status.value,
        created_at=grant.created_at,
    )


def upload_stats_from(allowance: AllowanceBreakdown, grants: Iterable[PurchaseGrant] = ()) -> UploadStats:
    newest_first = sorted(grants, key=lambda g: (g.created_at, g.id), reverse=True)
    return UploadStats(
        user_id=allowance.user_id,
        plan_tier=allowance.plan_tier,
        subscription_status=allowance.subscription_status,
        upload_count=allowance.total_used,
        upload_limit=allowance.display_limit,
        remaining=allowance.remaining,
        base=BaseSummary(
            limit=allowance.base_limit,
            used=allowance.base_used,
            remaining=allowance.base_remaining,
        ),
        credits=CreditSummary(
            granted=allowance.credits_granted,
            used=allowance.credits_used,
            available=allowance.credits_available,
        ),
        purchases=[_grant_summary(g) for g in newest_first],
    )


def get_upload_stats(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    admins: Optional[AdminAllowList] = None,
) -> UploadStats:
    """Display view of the allowance plus every grant (newest first)."""
    allowance = get_allowance(user_id, now=now, admins=admins)
    if allowance.degraded:
        return upload_stats_from(allowance)

    with store_operation("get_upload_stats", user_id=user_id):
        with get_db_session() as session:
            grants = load_grants(session, user_id, completed_only=False)
    return upload_stats_from(allowance, grants)
