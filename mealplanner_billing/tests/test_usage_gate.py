"""
Tests for the usage gate: ceilings, billing periods, failure policy and the
metered() route dependency.
"""
import threading
from dataclasses import replace
from datetime import datetime, timezone
from types import MappingProxyType
from unittest.mock import MagicMock

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from mealplanner_billing.core.errors import (
    AppError,
    StoreUnavailableError,
    ValidationError,
    app_error_handler,
)
from mealplanner_billing.features.entitlements.cache import InMemoryEntitlementCache
from mealplanner_billing.features.entitlements.policy import TIER_POLICIES
from mealplanner_billing.features.entitlements.service import EntitlementResolver
from mealplanner_billing.features.subscriptions.repository import InMemorySubscriptionRepository
from mealplanner_billing.features.usage.counters import InMemoryUsageCounterStore
from mealplanner_billing.features.usage.service import UsageGate, billing_period, calendar_month, metered
from mealplanner_billing.models.subscription import Subscription, SubscriptionStatus, Tier
from mealplanner_billing.models.usage import DecisionReason

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)
SUB_START = datetime(2026, 10, 10, tzinfo=timezone.utc)
SUB_END = datetime(2026, 11, 10, tzinfo=timezone.utc)


def _policies_with_generation_limit(limit):
    starter = TIER_POLICIES[Tier.STARTER]
    limits = dict(starter.limits)
    limits["generations"] = limit
    policies = dict(TIER_POLICIES)
    policies[Tier.STARTER] = replace(starter, limits=MappingProxyType(limits))
    return MappingProxyType(policies)


def _gate(tier=Tier.STARTER, status=SubscriptionStatus.ACTIVE, policies=TIER_POLICIES, counters=None,
          failure_policy="closed", with_subscription=True):
    repo = InMemorySubscriptionRepository()
    if with_subscription:
        repo.create(Subscription(
            customer_id="cust_1",
            tier=tier,
            status=status,
            current_period_start=SUB_START,
            current_period_end=SUB_END,
        ))
    resolver = EntitlementResolver(repo, InMemoryEntitlementCache(), policies=policies)
    counters = counters or InMemoryUsageCounterStore()
    return UsageGate(resolver, counters, failure_policy=failure_policy, time_fn=lambda: NOW), counters


def test_allows_until_ceiling_then_denies():
    gate, counters = _gate(policies=_policies_with_generation_limit(5))
    for _ in range(4):
        counters.increment("cust_1", "generations", SUB_START, SUB_END, 5)

    first = gate.check_and_increment("cust_1", "generations")
    assert first.allowed is True
    assert first.current_usage == 5
    assert first.limit == 5
    assert first.reason == DecisionReason.OK

    second = gate.check_and_increment("cust_1", "generations")
    assert second.allowed is False
    assert second.current_usage == 5
    assert second.reason == DecisionReason.QUOTA_EXCEEDED
    assert counters.get_count("cust_1", "generations", SUB_START) == 5


def test_sixth_action_past_a_ceiling_of_five_is_denied():
    gate, _ = _gate(policies=_policies_with_generation_limit(5))
    decisions = [gate.check_and_increment("cust_1", "generations") for _ in range(6)]

    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert (decisions[-1].current_usage, decisions[-1].limit) == (5, 5)


def test_concurrent_checks_admit_exactly_the_remaining_quota():
    gate, counters = _gate(policies=_policies_with_generation_limit(5))
    for _ in range(4):
        counters.increment("cust_1", "generations", SUB_START, SUB_END, 5)

    barrier = threading.Barrier(10)
    decisions = []
    lock = threading.Lock()

    def check():
        barrier.wait()
        decision = gate.check_and_increment("cust_1", "generations")
        with lock:
            decisions.append(decision)

    threads = [threading.Thread(target=check) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for d in decisions if d.allowed) == 1
    assert counters.get_count("cust_1", "generations", SUB_START) == 5


def test_unlimited_metric_always_allowed():
    gate, counters = _gate(tier=Tier.ENTERPRISE)
    for _ in range(3):
        decision = gate.check_and_increment("cust_1", "meal_plans")
        assert decision.allowed is True
        assert decision.limit is None
        assert decision.reason == DecisionReason.UNLIMITED
    assert counters.get_count("cust_1", "meal_plans", SUB_START) == 3


def test_restricted_customer_is_denied():
    gate, _ = _gate(status=SubscriptionStatus.PAST_DUE)
    decision = gate.check_and_increment("cust_1", "meal_plans")
    assert decision.allowed is False
    assert decision.limit == 0
    assert decision.current_usage == 0


def test_unknown_metric_is_rejected():
    gate, _ = _gate()
    with pytest.raises(ValidationError):
        gate.check_and_increment("cust_1", "sms")


def test_counts_against_subscription_period():
    gate, _ = _gate()
    decision = gate.check_and_increment("cust_1", "recipes")
    assert (decision.period_start, decision.period_end) == (SUB_START, SUB_END)


def test_falls_back_to_calendar_month_without_subscription():
    gate, _ = _gate(with_subscription=False)
    decision = gate.check_and_increment("cust_1", "recipes")
    assert decision.allowed is False
    assert decision.period_start == datetime(2026, 10, 1, tzinfo=timezone.utc)
    assert decision.period_end == datetime(2026, 11, 1, tzinfo=timezone.utc)


def test_calendar_month_rolls_over_year():
    start, end = calendar_month(datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc))
    assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
    assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)


def test_billing_period_keeps_lapsed_period_until_renewal():
    gate, _ = _gate()
    snapshot = gate.resolver.get_entitlements("cust_1", now=NOW)
    later = datetime(2026, 12, 5, tzinfo=timezone.utc)
    assert billing_period(snapshot, later) == (SUB_START, SUB_END)


def test_quota_is_not_refilled_across_an_unrenewed_boundary():
    gate, counters = _gate()
    repo = gate.resolver.subscriptions
    before_boundary = datetime(2026, 11, 9, 23, 0, tzinfo=timezone.utc)
    after_boundary = datetime(2026, 11, 10, 0, 1, tzinfo=timezone.utc)

    def admitted(now):
        return sum(gate.check_and_increment("cust_1", "meal_plans", now=now).allowed for _ in range(60))

    assert admitted(before_boundary) == 50
    # Renewal not reconciled yet: still the old period's ceiling
    assert admitted(after_boundary) == 0

    renewed_end = datetime(2026, 12, 10, tzinfo=timezone.utc)
    current = repo.get("cust_1")
    repo.compare_and_set(
        current.model_copy(update={"current_period_start": SUB_END, "current_period_end": renewed_end}),
        current.version,
    )
    gate.resolver.invalidate("cust_1")

    assert admitted(after_boundary) == 50
    assert [(c.period_start, c.count) for c in counters.list_counters("cust_1", "meal_plans")] == [
        (SUB_END, 50),
        (SUB_START, 50),
    ]


def _broken_counters():
    counters = MagicMock()
    counters.increment.side_effect = StoreUnavailableError("usage increment failed: store unavailable")
    return counters


def test_store_outage_fails_closed_by_default():
    gate, _ = _gate(counters=_broken_counters())
    decision = gate.check_and_increment("cust_1", "meal_plans")
    assert decision.allowed is False
    assert decision.reason == DecisionReason.STORE_UNAVAILABLE
    assert decision.current_usage is None


def test_store_outage_fails_open_when_configured():
    gate, _ = _gate(counters=_broken_counters(), failure_policy="open")
    decision = gate.check_and_increment("cust_1", "meal_plans")
    assert decision.allowed is True
    assert decision.reason == DecisionReason.STORE_UNAVAILABLE


def test_invalid_failure_policy():
    with pytest.raises(ValueError):
        _gate(failure_policy="sometimes")


def test_get_usage_reports_every_metric():
    gate, _ = _gate(tier=Tier.PROFESSIONAL)
    gate.check_and_increment("cust_1", "meal_plans")
    gate.check_and_increment("cust_1", "meal_plans")

    usage = gate.get_usage("cust_1")
    assert usage["period_start"] == SUB_START
    assert usage["metrics"]["meal_plans"] == {"current_usage": 2, "limit": 200}
    assert usage["metrics"]["customers"] == {"current_usage": 0, "limit": 20}
    assert set(usage["metrics"]) == {"customers", "meal_plans", "generations", "recipes"}


def _metered_app(gate):
    app = FastAPI()
    app.state.container = MagicMock(usage_gate=gate)
    app.add_exception_handler(AppError, app_error_handler)

    @app.post("/meal-plans/{customer_id}", dependencies=[Depends(metered("meal_plans"))])
    def create_meal_plan(customer_id: str):
        return {"created": True}

    @app.post("/generate", dependencies=[Depends(metered("generations"))])
    def generate():
        return {"generated": True}

    return app


def test_metered_dependency_raises_quota_exceeded():
    gate, counters = _gate()
    for _ in range(50):
        counters.increment("cust_1", "meal_plans", SUB_START, SUB_END, 50)
    client = TestClient(_metered_app(gate))

    resp = client.post("/meal-plans/cust_1")

    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "quota_exceeded"
    assert error["metric"] == "meal_plans"
    assert error["current_usage"] == 50
    assert error["limit"] == 50


def test_metered_dependency_reads_customer_header():
    gate, counters = _gate()
    client = TestClient(_metered_app(gate))

    assert client.post("/generate", headers={"X-Customer-Id": "cust_1"}).status_code == 200
    assert counters.get_count("cust_1", "generations", SUB_START) == 1
    assert client.post("/generate").status_code == 400


def test_metered_dependency_fail_closed_is_503():
    gate, _ = _gate(counters=_broken_counters())
    client = TestClient(_metered_app(gate))
    resp = client.post("/meal-plans/cust_1")
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "store_unavailable"


def test_metered_rejects_unknown_metric_at_import_time():
    with pytest.raises(ValueError):
        metered("sms")
