"""Plan policy: tier/status -> base allowance, override handling."""
import pytest

from studio_quota.core.config import Settings
from studio_quota.features.plans.policy import base_plan_limit, is_sane_override, tier_limit


@pytest.mark.parametrize(
    "tier,status,expected",
    [
        ("free", "active", 5),
        ("basic", "active", 30),
        ("pro", "active", 60),
        ("basic", "canceled", 30),
        (None, None, 5),
        ("enterprise", "active", 5),
        ("pro", "past_due", 0),
        ("free", "past_due", 0),
    ],
)
def test_tier_limit(tier, status, expected):
    assert tier_limit(tier, status) == expected


def test_past_due_beats_overrides():
    assert base_plan_limit("pro", "past_due", profile_override=200, subscription_override=150) == 0


def test_free_tier_ignores_stored_overrides():
    assert base_plan_limit("free", "active", profile_override=100) == 5
    assert base_plan_limit("free", "active", subscription_override=100) == 5


def test_profile_override_wins_over_subscription_override():
    assert base_plan_limit("basic", "active", profile_override=40, subscription_override=50) == 40


def test_subscription_override_used_when_profile_override_missing():
    assert base_plan_limit("pro", "active", subscription_override=75) == 75


def test_insane_overrides_fall_back_to_tier_limit():
    assert base_plan_limit("basic", "active", profile_override=0, subscription_override=5000) == 30
    assert base_plan_limit("pro", "active", profile_override=-3) == 60


def test_limits_come_from_settings():
    cfg = Settings(FREE_UPLOAD_LIMIT=7, BASIC_UPLOAD_LIMIT=11, PRO_UPLOAD_LIMIT=13, MAX_LIMIT_OVERRIDE=20)
    assert tier_limit("free", "active", cfg=cfg) == 7
    assert tier_limit("basic", "active", cfg=cfg) == 11
    assert tier_limit("pro", "active", cfg=cfg) == 13
    assert not is_sane_override(21, cfg=cfg)
    assert base_plan_limit("pro", "active", profile_override=20, cfg=cfg) == 20
