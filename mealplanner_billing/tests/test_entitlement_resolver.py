"""
Tests for EntitlementResolver: cache-first reads, invalidation, access checks.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import redis

from mealplanner_billing.core.errors import ValidationError
from mealplanner_billing.core.metrics import entitlement_cache_total
from mealplanner_billing.features.entitlements.cache import InMemoryEntitlementCache, RedisEntitlementCache
from mealplanner_billing.features.entitlements.service import EntitlementResolver
from mealplanner_billing.features.subscriptions.repository import InMemorySubscriptionRepository
from mealplanner_billing.models.subscription import Subscription, SubscriptionStatus, Tier

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    return InMemorySubscriptionRepository()


@pytest.fixture
def resolver(repo):
    return EntitlementResolver(repo, InMemoryEntitlementCache(time_fn=lambda: NOW), ttl_seconds=300, time_fn=lambda: NOW)


def _create(repo, tier=Tier.STARTER, status=SubscriptionStatus.ACTIVE, customer_id="cust_1"):
    return repo.create(Subscription(customer_id=customer_id, tier=tier, status=status))


def test_unknown_customer_is_restricted(resolver):
    snapshot = resolver.get_entitlements("nobody")
    assert snapshot.restricted is True
    assert snapshot.tier is None
    assert snapshot.limits["meal_plans"] == 0
    assert snapshot.export_formats == ("pdf",)


def test_active_subscription_gets_tier_policy(repo, resolver):
    _create(repo, tier=Tier.PROFESSIONAL)
    snapshot = resolver.get_entitlements("cust_1")
    assert snapshot.restricted is False
    assert snapshot.tier == Tier.PROFESSIONAL
    assert snapshot.limits["customers"] == 20
    assert snapshot.subscription_version == 1
    assert snapshot.expires_at == NOW + timedelta(seconds=300)


def test_second_read_is_served_from_cache(repo, resolver):
    _create(repo)
    first = resolver.get_entitlements("cust_1")

    # Bypass the reconciler: without invalidation the cached snapshot wins
    current = repo.get("cust_1")
    repo.compare_and_set(current.model_copy(update={"tier": Tier.ENTERPRISE}), current.version)

    assert resolver.get_entitlements("cust_1") == first
    assert entitlement_cache_total.value({"result": "hit"}) == 1
    assert entitlement_cache_total.value({"result": "miss"}) == 1


def test_invalidate_forces_recompute(repo, resolver):
    _create(repo)
    resolver.get_entitlements("cust_1")

    current = repo.get("cust_1")
    repo.compare_and_set(current.model_copy(update={"tier": Tier.ENTERPRISE}), current.version)
    resolver.invalidate("cust_1")

    snapshot = resolver.get_entitlements("cust_1")
    assert snapshot.tier == Tier.ENTERPRISE
    assert snapshot.limits["customers"] is None


def test_expired_snapshot_is_recomputed(repo):
    clock = {"now": NOW}
    resolver = EntitlementResolver(
        repo,
        InMemoryEntitlementCache(time_fn=lambda: clock["now"]),
        ttl_seconds=60,
        time_fn=lambda: clock["now"],
    )
    _create(repo)
    resolver.get_entitlements("cust_1")

    current = repo.get("cust_1")
    repo.compare_and_set(current.model_copy(update={"status": SubscriptionStatus.PAST_DUE}), current.version)
    clock["now"] = NOW + timedelta(seconds=61)

    assert resolver.get_entitlements("cust_1").restricted is True


@pytest.mark.parametrize("status", [SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID, SubscriptionStatus.CANCELED])
def test_lapsed_subscription_is_restricted_but_keeps_tier(repo, resolver, status):
    _create(repo, tier=Tier.ENTERPRISE, status=status)
    snapshot = resolver.get_entitlements("cust_1")
    assert snapshot.restricted is True
    assert snapshot.tier == Tier.ENTERPRISE
    assert snapshot.feature_flags["read_only"] is True
    assert all(limit == 0 for limit in snapshot.limits.values())


def test_cache_outage_falls_back_to_repository(repo):
    client = MagicMock()
    client.get.side_effect = redis.ConnectionError("down")
    client.setex.side_effect = redis.ConnectionError("down")
    resolver = EntitlementResolver(repo, RedisEntitlementCache(client))
    _create(repo, tier=Tier.PROFESSIONAL)

    assert resolver.get_entitlements("cust_1").tier == Tier.PROFESSIONAL


def test_feature_access(repo, resolver):
    _create(repo, tier=Tier.STARTER)

    denied = resolver.check_feature_access("cust_1", "analytics")
    assert denied.allowed is False
    assert denied.upgrade_required is True
    assert denied.reason == "analytics requires the professional tier"
    assert denied.current_tier == Tier.STARTER


def test_feature_access_allowed(repo, resolver):
    _create(repo, tier=Tier.ENTERPRISE)
    assert resolver.check_feature_access("cust_1", "api_access").allowed is True


def test_feature_access_when_restricted(repo, resolver):
    _create(repo, tier=Tier.ENTERPRISE, status=SubscriptionStatus.PAST_DUE)
    access = resolver.check_feature_access("cust_1", "api_access")
    assert access.allowed is False
    assert access.upgrade_required is False
    assert access.reason == "Subscription is not active"


def test_unknown_feature_is_rejected(resolver):
    with pytest.raises(ValidationError):
        resolver.check_feature_access("cust_1", "teleportation")


def test_export_formats(repo, resolver):
    _create(repo, tier=Tier.PROFESSIONAL)
    assert resolver.check_export_format("cust_1", "CSV").allowed is True

    excel = resolver.check_export_format("cust_1", "excel")
    assert excel.allowed is False
    assert excel.reason == "excel export requires the enterprise tier"

    with pytest.raises(ValidationError):
        resolver.check_export_format("cust_1", "docx")


def test_restricted_keeps_pdf_export(resolver):
    assert resolver.check_export_format("nobody", "pdf").allowed is True
    assert resolver.check_export_format("nobody", "csv").upgrade_required is False


class _UpgradeDuringRead:
    """Repository wrapper that lets the reconciler land a write right after a read loads its row."""

    def __init__(self, repo, on_read):
        self.repo = repo
        self.on_read = on_read

    def get(self, customer_id):
        row = self.repo.get(customer_id)
        on_read, self.on_read = self.on_read, None
        if on_read:
            on_read()
        return row


def test_read_racing_an_invalidation_does_not_refill_stale_snapshot(repo):
    _create(repo)
    cache = InMemoryEntitlementCache(time_fn=lambda: NOW)

    def upgrade():
        current = repo.get("cust_1")
        repo.compare_and_set(current.model_copy(update={"tier": Tier.ENTERPRISE}), current.version)
        resolver.invalidate("cust_1")

    resolver = EntitlementResolver(_UpgradeDuringRead(repo, upgrade), cache, time_fn=lambda: NOW)

    racing = resolver.get_entitlements("cust_1")
    assert racing.tier == Tier.STARTER
    assert cache.get("cust_1") is None

    assert resolver.get_entitlements("cust_1").tier == Tier.ENTERPRISE
    assert cache.get("cust_1").tier == Tier.ENTERPRISE
