"""
Tests for the static tier policy table.
"""
import pytest

from mealplanner_billing.features.entitlements.policy import (
    FEATURE_ANALYTICS,
    FEATURE_API_ACCESS,
    FEATURE_READ_ONLY,
    METRICS,
    RESTRICTED_POLICY,
    TIER_POLICIES,
    is_known_metric,
    minimum_tier_for_export,
    minimum_tier_for_feature,
    resolve_policy,
)
from mealplanner_billing.models.subscription import SubscriptionStatus, Tier


def test_starter_limits():
    policy = TIER_POLICIES[Tier.STARTER]
    assert policy.limits == {"customers": 9, "meal_plans": 50, "generations": 100, "recipes": 1000}
    assert policy.export_formats == ("pdf",)
    assert not any(v for k, v in policy.feature_flags.items())


def test_professional_limits_and_features():
    policy = TIER_POLICIES[Tier.PROFESSIONAL]
    assert policy.limits["customers"] == 20
    assert policy.limits["recipes"] == 2500
    assert policy.feature_flags[FEATURE_ANALYTICS] is True
    assert policy.feature_flags[FEATURE_API_ACCESS] is False
    assert policy.export_formats == ("pdf", "csv")


def test_enterprise_is_unbounded_except_recipes():
    policy = TIER_POLICIES[Tier.ENTERPRISE]
    assert policy.limits["customers"] is None
    assert policy.limits["meal_plans"] is None
    assert policy.limits["generations"] is None
    assert policy.limits["recipes"] == 4000
    assert policy.feature_flags[FEATURE_API_ACCESS] is True
    assert "excel" in policy.export_formats


def test_every_tier_defines_every_metric():
    for policy in list(TIER_POLICIES.values()) + [RESTRICTED_POLICY]:
        assert set(policy.limits) == set(METRICS)


def test_policy_table_is_read_only():
    with pytest.raises(TypeError):
        TIER_POLICIES[Tier.STARTER].limits["customers"] = 1000


@pytest.mark.parametrize("status", [SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING])
def test_entitled_statuses_get_tier_policy(status):
    assert resolve_policy(Tier.PROFESSIONAL, status) is TIER_POLICIES[Tier.PROFESSIONAL]


@pytest.mark.parametrize(
    "status",
    [SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID, SubscriptionStatus.CANCELED, None],
)
def test_lapsed_statuses_are_restricted(status):
    policy = resolve_policy(Tier.ENTERPRISE, status)
    assert policy is RESTRICTED_POLICY
    assert policy.restricted is True
    assert policy.feature_flags[FEATURE_READ_ONLY] is True
    assert all(limit == 0 for limit in policy.limits.values())
    assert policy.export_formats == ("pdf",)


def test_no_tier_is_restricted():
    assert resolve_policy(None, SubscriptionStatus.ACTIVE) is RESTRICTED_POLICY


def test_minimum_tiers():
    assert minimum_tier_for_feature(FEATURE_ANALYTICS) == Tier.PROFESSIONAL
    assert minimum_tier_for_feature(FEATURE_API_ACCESS) == Tier.ENTERPRISE
    assert minimum_tier_for_export("pdf") == Tier.STARTER
    assert minimum_tier_for_export("csv") == Tier.PROFESSIONAL
    assert minimum_tier_for_export("excel") == Tier.ENTERPRISE


def test_known_metrics():
    assert is_known_metric("meal_plans")
    assert not is_known_metric("sms")
