"""
mealplanner_billing/features/entitlements/policy.py

Static tier policy table.

Maps (tier, subscription status) to limits, feature flags and export
formats. Pure data plus one pure function; no I/O.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from mealplanner_billing.models.subscription import ENTITLED_STATUSES, SubscriptionStatus, Tier


# Metered actions
METRIC_CUSTOMERS = "customers"
METRIC_MEAL_PLANS = "meal_plans"
METRIC_GENERATIONS = "generations"
METRIC_RECIPES = "recipes"

METRICS = (METRIC_CUSTOMERS, METRIC_MEAL_PLANS, METRIC_GENERATIONS, METRIC_RECIPES)

# Boolean capabilities
FEATURE_ANALYTICS = "analytics"
FEATURE_API_ACCESS = "api_access"
FEATURE_BULK_OPERATIONS = "bulk_operations"
FEATURE_CUSTOM_BRANDING = "custom_branding"
FEATURE_READ_ONLY = "read_only"

FEATURES = (FEATURE_ANALYTICS, FEATURE_API_ACCESS, FEATURE_BULK_OPERATIONS, FEATURE_CUSTOM_BRANDING)

EXPORT_FORMATS = ("pdf", "csv", "excel")

UNLIMITED = None


@dataclass(frozen=True)
class TierPolicy:
    name: str
    limits: Mapping[str, Optional[int]]
    feature_flags: Mapping[str, bool]
    export_formats: Tuple[str, ...] = field(default_factory=tuple)
    restricted: bool = False


def _policy(name, limits, features, exports, restricted=False) -> TierPolicy:
    flags = {feature: feature in features for feature in FEATURES}
    flags[FEATURE_READ_ONLY] = restricted
    return TierPolicy(
        name=name,
        limits=MappingProxyType(dict(limits)),
        feature_flags=MappingProxyType(flags),
        export_formats=tuple(exports),
        restricted=restricted,
    )


TIER_POLICIES = MappingProxyType({
    Tier.STARTER: _policy(
        "starter",
        {
            METRIC_CUSTOMERS: 9,
            METRIC_MEAL_PLANS: 50,
            METRIC_GENERATIONS: 100,
            METRIC_RECIPES: 1000,
        },
        features=(),
        exports=("pdf",),
    ),
    Tier.PROFESSIONAL: _policy(
        "professional",
        {
            METRIC_CUSTOMERS: 20,
            METRIC_MEAL_PLANS: 200,
            METRIC_GENERATIONS: 500,
            METRIC_RECIPES: 2500,
        },
        features=(FEATURE_ANALYTICS, FEATURE_BULK_OPERATIONS, FEATURE_CUSTOM_BRANDING),
        exports=("pdf", "csv"),
    ),
    Tier.ENTERPRISE: _policy(
        "enterprise",
        {
            METRIC_CUSTOMERS: UNLIMITED,
            METRIC_MEAL_PLANS: UNLIMITED,
            METRIC_GENERATIONS: UNLIMITED,
            METRIC_RECIPES: 4000,
        },
        features=FEATURES,
        exports=("pdf", "csv", "excel"),
    ),
})

# Lapsed, unpaid or absent subscriptions: read-only, nothing metered allowed
RESTRICTED_POLICY = _policy(
    "restricted",
    {metric: 0 for metric in METRICS},
    features=(),
    exports=("pdf",),
    restricted=True,
)


def resolve_policy(
    tier: Optional[Tier],
    status: Optional[SubscriptionStatus],
    policies: Mapping[Tier, TierPolicy] = TIER_POLICIES,
) -> TierPolicy:
    """
    Pick the policy that applies to a subscription state.

    Only active and trialing subscriptions get their tier's policy; anything
    else (including no subscription at all) gets RESTRICTED_POLICY.
    """
    if tier is None or status not in ENTITLED_STATUSES:
        return RESTRICTED_POLICY
    return policies[tier]


def is_known_metric(metric: str) -> bool:
    return metric in METRICS


def minimum_tier_for_feature(feature: str) -> Optional[Tier]:
    """Lowest tier whose policy enables feature, if any."""
    for tier in (Tier.STARTER, Tier.PROFESSIONAL, Tier.ENTERPRISE):
        if TIER_POLICIES[tier].feature_flags.get(feature):
            return tier
    return None


def minimum_tier_for_export(fmt: str) -> Optional[Tier]:
    for tier in (Tier.STARTER, Tier.PROFESSIONAL, Tier.ENTERPRISE):
        if fmt in TIER_POLICIES[tier].export_formats:
            return tier
    return None
