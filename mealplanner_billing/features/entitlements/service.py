"""
mealplanner_billing/features/entitlements/service.py

Entitlement resolver.

Handles:
- Cache-first lookup of the customer's EntitlementSnapshot
- Fresh computation from subscription state + tier policy on miss or expiry
- Invalidation (delete, never refresh) after subscription writes
- Feature and export-format access checks for application routes
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from mealplanner_billing.core.errors import ValidationError
from mealplanner_billing.core.metrics import entitlement_cache_total
from mealplanner_billing.features.entitlements.policy import (
    EXPORT_FORMATS,
    FEATURES,
    TIER_POLICIES,
    TierPolicy,
    minimum_tier_for_export,
    minimum_tier_for_feature,
    resolve_policy,
)
from mealplanner_billing.models.entitlement import EntitlementSnapshot, FeatureAccess
from mealplanner_billing.models.subscription import Subscription, Tier


logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_snapshot(
    customer_id: str,
    subscription: Optional[Subscription],
    now: datetime,
    ttl_seconds: int,
    policies: Mapping[Tier, TierPolicy] = TIER_POLICIES,
) -> EntitlementSnapshot:
    """Pure derivation of a snapshot from subscription state."""
    tier = subscription.tier if subscription else None
    status = subscription.status if subscription else None
    policy = resolve_policy(tier, status, policies)
    return EntitlementSnapshot(
        customer_id=customer_id,
        tier=tier,
        status=status,
        restricted=policy.restricted,
        limits=dict(policy.limits),
        feature_flags=dict(policy.feature_flags),
        export_formats=policy.export_formats,
        current_period_start=subscription.current_period_start if subscription else None,
        current_period_end=subscription.current_period_end if subscription else None,
        subscription_version=subscription.version if subscription else None,
        computed_at=now,
        ttl_seconds=ttl_seconds,
    )


class EntitlementResolver:
    """
    Cache-backed entitlement lookups.

    The subscription repository is the source of truth; the cache only saves
    a read. Entries live at most ttl_seconds, so a lost invalidation heals on
    its own.
    """

    def __init__(
        self,
        subscriptions,
        cache,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        policies: Mapping[Tier, TierPolicy] = TIER_POLICIES,
        time_fn: Callable[[], datetime] = _utcnow,
    ):
        self.subscriptions = subscriptions
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.policies = policies
        self.time_fn = time_fn

    def get_entitlements(self, customer_id: str, now: Optional[datetime] = None) -> EntitlementSnapshot:
        now = now or self.time_fn()
        cached = self.cache.get(customer_id)
        if cached is not None and not cached.is_expired(now):
            entitlement_cache_total.inc({"result": "hit"})
            return cached

        entitlement_cache_total.inc({"result": "miss"})
        # Taken before the read: an invalidation after this point voids our write
        generation = self.cache.generation(customer_id)
        subscription = self.subscriptions.get(customer_id)
        snapshot = build_snapshot(customer_id, subscription, now, self.ttl_seconds, self.policies)
        if generation is not None:
            self.cache.set(snapshot, generation=generation)
        logger.debug(
            "[entitlements] computed snapshot",
            extra={
                "customer_id": customer_id,
                "tier": snapshot.tier.value if snapshot.tier else None,
                "restricted": snapshot.restricted,
            },
        )
        return snapshot

    def invalidate(self, customer_id: str) -> None:
        self.cache.delete(customer_id)

    def check_feature_access(self, customer_id: str, feature: str) -> FeatureAccess:
        if feature not in FEATURES:
            raise ValidationError(f"Unknown feature: {feature}")
        snapshot = self.get_entitlements(customer_id)
        if snapshot.feature_flags.get(feature):
            return FeatureAccess(allowed=True, current_tier=snapshot.tier)
        if snapshot.restricted:
            return FeatureAccess(
                allowed=False,
                reason="Subscription is not active",
                upgrade_required=False,
                current_tier=snapshot.tier,
            )
        required = minimum_tier_for_feature(feature)
        return FeatureAccess(
            allowed=False,
            reason=f"{feature} requires the {required.value} tier" if required else f"{feature} is not available",
            upgrade_required=required is not None,
            current_tier=snapshot.tier,
        )

    def check_export_format(self, customer_id: str, fmt: str) -> FeatureAccess:
        fmt = fmt.lower()
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unknown export format: {fmt}")
        snapshot = self.get_entitlements(customer_id)
        if fmt in snapshot.export_formats:
            return FeatureAccess(allowed=True, current_tier=snapshot.tier)
        if snapshot.restricted:
            return FeatureAccess(
                allowed=False,
                reason="Subscription is not active",
                upgrade_required=False,
                current_tier=snapshot.tier,
            )
        required = minimum_tier_for_export(fmt)
        return FeatureAccess(
            allowed=False,
            reason=f"{fmt} export requires the {required.value} tier",
            upgrade_required=True,
            current_tier=snapshot.tier,
        )
