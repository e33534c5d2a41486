"""
mealplanner_billing/features/billing/reconciler.py

Event reconciler.

Applies stored pending events to subscription state, one customer at a time:
- per-customer keyed lock (no two in-flight reconciliations for a customer)
- events drained in occurred_at order
- stale / already-applied detection against the stored row
- optimistic write with bounded retry on version conflicts
- bounded exponential backoff on transient store failures
- cache invalidation (delete) after every applied write

Exhausted retries and rejected events end as `failed`, never dropped.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Mapping, Optional

from mealplanner_billing.core.errors import StoreUnavailableError, VersionConflictError
from mealplanner_billing.core.logging import log_event
from mealplanner_billing.core.metrics import reconcile_events_total
from mealplanner_billing.core.retry import compute_backoff
from mealplanner_billing.features.billing.transitions import TransitionKind, apply_event, stale_outcome
from mealplanner_billing.models.payment_event import EventOutcome, PaymentEvent


logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BASE_SECONDS = 0.05
DEFAULT_MAX_DEFERRALS = 50
DRAIN_BATCH_SIZE = 100


class ReconcileResult(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    ALREADY_APPLIED = "already_applied"
    NO_OP = "no_op"
    DEFERRED = "deferred"
    FAILED = "failed"
    ERROR = "error"  # transient failure; event left pending for the sweeper


@dataclass
class ReconcileSummary:
    customer_id: str
    results: Dict[str, str] = field(default_factory=dict)  # event_id -> ReconcileResult value

    def count(self, result: ReconcileResult) -> int:
        return sum(1 for r in self.results.values() if r == result.value)

    @property
    def pending_left(self) -> int:
        return self.count(ReconcileResult.DEFERRED) + self.count(ReconcileResult.ERROR)


class KeyedLocks:
    """
    Registry of per-key locks.

    Entries are reference counted and dropped when the last holder leaves,
    so the registry does not grow with the number of customers ever seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class EventReconciler:

    def __init__(
        self,
        events,
        subscriptions,
        resolver,
        price_tiers: Optional[Mapping[str, str]] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        max_deferrals: int = DEFAULT_MAX_DEFERRALS,
        locks: Optional[KeyedLocks] = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        time_fn: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.events = events
        self.subscriptions = subscriptions
        self.resolver = resolver
        self.price_tiers = dict(price_tiers or {})
        self.max_retries = max(1, max_retries)
        self.retry_base_seconds = retry_base_seconds
        self.max_deferrals = max(1, max_deferrals)
        self.locks = locks or KeyedLocks()
        self.sleep_fn = sleep_fn
        self.time_fn = time_fn

    def reconcile_customer(self, customer_id: str) -> ReconcileSummary:
        """
        Drain all pending events for one customer.

        Another pass runs whenever a pass made progress while some events were
        deferred: a later event may have created the subscription the deferred
        ones were waiting for.
        """
        summary = ReconcileSummary(customer_id=customer_id)
        with self.locks.hold(customer_id):
            skipped = set()
            while True:
                pending = [
                    e for e in self.events.list_pending(customer_id, limit=DRAIN_BATCH_SIZE)
                    if e.event_id not in skipped
                ]
                if not pending:
                    break
                progress = False
                stuck = []
                for event in pending:
                    result = self._reconcile_with_retries(event)
                    summary.results[event.event_id] = result.value
                    if result in (ReconcileResult.DEFERRED, ReconcileResult.ERROR):
                        stuck.append(event.event_id)
                    else:
                        progress = True
                if not progress:
                    break
                if not stuck and len(pending) < DRAIN_BATCH_SIZE:
                    break
                # Transient errors wait for the sweeper; deferrals get one more look per pass
                skipped.update(
                    eid for eid in stuck if summary.results[eid] == ReconcileResult.ERROR.value
                )
        return summary

    def reconcile_event(self, event: PaymentEvent) -> ReconcileResult:
        """Reconcile a single event under its customer's lock."""
        with self.locks.hold(event.customer_id):
            return self._reconcile_with_retries(event)

    def _reconcile_with_retries(self, event: PaymentEvent) -> ReconcileResult:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._reconcile_once(event)
            except VersionConflictError as e:
                if attempt >= self.max_retries:
                    result = self._fail(event, f"version conflict retries exhausted: {e.message}")
                else:
                    logger.info(
                        "[reconcile] version conflict, reloading",
                        extra={"customer_id": event.customer_id, "event_id": event.event_id, "attempt": attempt},
                    )
                    continue
            except StoreUnavailableError as e:
                if attempt >= self.max_retries:
                    result = self._store_exhausted(event, e)
                else:
                    self.sleep_fn(compute_backoff(attempt, self.retry_base_seconds))
                    continue
            reconcile_events_total.inc({"outcome": result.value})
            return result

    def _reconcile_once(self, event: PaymentEvent) -> ReconcileResult:
        current = self.subscriptions.get(event.customer_id)

        stale = stale_outcome(current, event)
        if stale is not None:
            if stale == EventOutcome.STALE:
                log_event(
                    "warning",
                    "reconcile.stale_event",
                    customer_id=event.customer_id,
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                    extra={
                        "occurred_at": event.occurred_at.isoformat(),
                        "last_applied_event_at": current.last_applied_event_at.isoformat(),
                    },
                )
            else:
                # Written earlier but never marked; the cache may still be stale too
                self.resolver.invalidate(event.customer_id)
            self.events.mark_processed(event.event_id, stale, now=self.time_fn())
            return ReconcileResult(stale.value)

        transition = apply_event(current, event, self.price_tiers)

        if transition.kind == TransitionKind.WRITE:
            if transition.create:
                self.subscriptions.create(transition.subscription)
            else:
                self.subscriptions.compare_and_set(transition.subscription, current.version)
            self.resolver.invalidate(event.customer_id)
            self.events.mark_processed(event.event_id, EventOutcome.APPLIED, now=self.time_fn())
            log_event(
                "info",
                "reconcile.applied",
                customer_id=event.customer_id,
                event_id=event.event_id,
                event_type=event.event_type.value,
                extra={
                    "tier": transition.subscription.tier.value,
                    "status": transition.subscription.status.value,
                    "created_row": transition.create,
                },
            )
            return ReconcileResult.APPLIED

        if transition.kind == TransitionKind.NO_OP:
            self.events.mark_processed(event.event_id, EventOutcome.NO_OP, now=self.time_fn())
            return ReconcileResult.NO_OP

        if transition.kind == TransitionKind.DEFER:
            if event.attempts + 1 >= self.max_deferrals:
                return self._fail(event, f"deferred {event.attempts + 1} times: {transition.reason}")
            self.events.record_attempt(event.event_id, transition.reason)
            logger.info(
                "[reconcile] event deferred",
                extra={"customer_id": event.customer_id, "event_id": event.event_id, "reason": transition.reason},
            )
            return ReconcileResult.DEFERRED

        return self._fail(event, transition.reason or "rejected")

    def _fail(self, event: PaymentEvent, reason: str) -> ReconcileResult:
        self.events.mark_failed(event.event_id, reason, now=self.time_fn())
        log_event(
            "error",
            "reconcile.failed",
            customer_id=event.customer_id,
            event_id=event.event_id,
            event_type=event.event_type.value,
            error_code="reconcile_failed",
            extra={"reason": reason},
        )
        return ReconcileResult.FAILED

    def _store_exhausted(self, event: PaymentEvent, error: StoreUnavailableError) -> ReconcileResult:
        try:
            return self._fail(event, f"store unavailable after {self.max_retries} attempts: {error.message}")
        except StoreUnavailableError:
            # Cannot even record the failure; the event stays pending for the sweeper
            log_event(
                "error",
                "reconcile.store_unavailable",
                customer_id=event.customer_id,
                event_id=event.event_id,
                event_type=event.event_type.value,
                error_code="store_unavailable",
            )
            return ReconcileResult.ERROR
