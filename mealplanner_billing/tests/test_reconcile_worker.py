"""
Tests for the RQ reconcile job and the pending-event sweeper.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from redis.exceptions import LockError

from mealplanner_billing.container import build_container
from mealplanner_billing.features.entitlements.cache import InMemoryEntitlementCache
from mealplanner_billing.models.payment_event import EventStatus
from mealplanner_billing.models.subscription import Tier
from mealplanner_billing.tests.mocks import invoice_event, payment_event, subscription_event
from mealplanner_billing.workers import reconcile_worker
from mealplanner_billing.workers.reconcile_worker import reconcile_customer_job, sweep_once

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)


def _container():
    return build_container(use_sql=False, dispatch_mode="inline", cache=InMemoryEntitlementCache())


def test_job_reconciles_under_customer_lock():
    container = _container()
    container.events.insert_if_absent(payment_event(subscription_event("evt_1", "cust_1", 1000, tier="enterprise")))
    redis_conn = MagicMock()

    with patch.object(reconcile_worker, "get_container", return_value=container), \
            patch.object(reconcile_worker, "get_redis_conn", return_value=redis_conn):
        result = reconcile_customer_job("cust_1")

    assert result == {"customer_id": "cust_1", "results": {"evt_1": "applied"}}
    assert redis_conn.lock.call_args[0][0] == "reconcile-lock:cust_1"
    redis_conn.lock.return_value.__enter__.assert_called_once()
    assert container.subscriptions.get("cust_1").tier == Tier.ENTERPRISE


def test_job_leaves_events_pending_when_lock_is_busy():
    container = _container()
    container.events.insert_if_absent(payment_event(subscription_event("evt_1", "cust_1", 1000)))
    redis_conn = MagicMock()
    redis_conn.lock.return_value.__enter__.side_effect = LockError("busy")

    with patch.object(reconcile_worker, "get_container", return_value=container), \
            patch.object(reconcile_worker, "get_redis_conn", return_value=redis_conn):
        assert reconcile_customer_job("cust_1") is None

    assert container.events.get("evt_1").status == EventStatus.PENDING


def test_sweep_dispatches_customers_with_old_pending_events():
    container = _container()
    old = NOW - timedelta(minutes=10)
    # Deferred: no subscription yet
    container.events.insert_if_absent(payment_event(invoice_event("evt_a", "cust_a", 2000), received_at=old))
    container.events.insert_if_absent(payment_event(subscription_event("evt_b", "cust_b", 1000), received_at=old))
    container.events.insert_if_absent(payment_event(subscription_event("evt_c", "cust_c", 1000), received_at=NOW))

    dispatched = sweep_once(container, older_than_seconds=60, now=NOW)

    assert dispatched == 2
    assert container.events.get("evt_b").status == EventStatus.PROCESSED
    assert container.events.get("evt_a").status == EventStatus.PENDING
    assert container.events.get("evt_a").attempts == 1
    assert container.events.get("evt_c").status == EventStatus.PENDING


def test_sweep_with_nothing_pending():
    assert sweep_once(_container(), now=NOW) == 0


def test_sweep_counts_only_successful_dispatches():
    container = _container()
    container.events.insert_if_absent(
        payment_event(subscription_event("evt_b", "cust_b", 1000), received_at=NOW - timedelta(hours=1))
    )
    container.dispatcher = MagicMock()
    container.dispatcher.dispatch.return_value = False

    assert sweep_once(container, now=NOW) == 0
    container.dispatcher.dispatch.assert_called_once_with("cust_b")
