"""
mealplanner_billing/features/events/store.py

Durable log of inbound payment events, keyed by provider event id.

In-memory implementation; the SQL twin lives in store_sql.py and keeps the
same interface. Status transitions are one-way: pending -> processed | failed.
The only way back is an explicit operator requeue (failed -> pending).
"""

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from mealplanner_billing.models.payment_event import EventOutcome, EventStatus, PaymentEvent


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _empty_counts() -> Dict[str, int]:
    return {status.value: 0 for status in EventStatus}


class InMemoryEventStore:
    """
    Thread-safe in-memory event store.

    Used when DATABASE_URL is not configured and throughout unit tests.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._events: Dict[str, PaymentEvent] = {}
        self._seq: Dict[str, int] = {}
        self._next_seq = 0

    def insert_if_absent(self, event: PaymentEvent) -> bool:
        """
        Store the event unless its event_id is already known.

        Returns:
            True if inserted, False on duplicate
        """
        with self._lock:
            if event.event_id in self._events:
                return False
            self._events[event.event_id] = event
            self._seq[event.event_id] = self._next_seq
            self._next_seq += 1
            return True

    def get(self, event_id: str) -> Optional[PaymentEvent]:
        with self._lock:
            return self._events.get(event_id)

    def _ordering_key(self, event: PaymentEvent):
        return (event.occurred_at, event.received_at, self._seq[event.event_id])

    def list_pending(self, customer_id: str, limit: int = 100) -> List[PaymentEvent]:
        """Pending events for one customer, oldest provider timestamp first."""
        with self._lock:
            pending = [
                e for e in self._events.values()
                if e.customer_id == customer_id and e.status == EventStatus.PENDING
            ]
            pending.sort(key=self._ordering_key)
            return pending[:limit]

    def list_by_status(
        self,
        status: EventStatus,
        limit: int = 100,
        older_than: Optional[datetime] = None,
    ) -> List[PaymentEvent]:
        with self._lock:
            matched = [
                e for e in self._events.values()
                if e.status == status and (older_than is None or e.received_at <= older_than)
            ]
            matched.sort(key=self._ordering_key)
            return matched[:limit]

    def pending_customers(self, older_than: Optional[datetime] = None, limit: int = 100) -> List[str]:
        """Distinct customers that still have pending events (sweeper input)."""
        with self._lock:
            earliest: Dict[str, datetime] = {}
            for e in self._events.values():
                if e.status != EventStatus.PENDING or not e.customer_id:
                    continue
                if older_than is not None and e.received_at > older_than:
                    continue
                current = earliest.get(e.customer_id)
                if current is None or e.occurred_at < current:
                    earliest[e.customer_id] = e.occurred_at
            ordered = sorted(earliest.items(), key=lambda item: (item[1], item[0]))
            return [customer_id for customer_id, _ in ordered[:limit]]

    def _transition(self, event_id: str, expected: EventStatus, **changes) -> bool:
        with self._lock:
            event = self._events.get(event_id)
            if event is None or event.status != expected:
                return False
            self._events[event_id] = event.model_copy(update=changes)
            return True

    def mark_processed(self, event_id: str, outcome: EventOutcome, now: Optional[datetime] = None) -> bool:
        """pending -> processed. Returns False if the event already left pending."""
        return self._transition(
            event_id,
            EventStatus.PENDING,
            status=EventStatus.PROCESSED,
            outcome=outcome,
            processed_at=now or _now(),
        )

    def mark_failed(self, event_id: str, error: str, now: Optional[datetime] = None) -> bool:
        """pending -> failed. Returns False if the event already left pending."""
        with self._lock:
            event = self._events.get(event_id)
            if event is None or event.status != EventStatus.PENDING:
                return False
            self._events[event_id] = event.model_copy(update={
                "status": EventStatus.FAILED,
                "last_error": error,
                "attempts": event.attempts + 1,
                "processed_at": now or _now(),
            })
            return True

    def record_attempt(self, event_id: str, error: Optional[str] = None) -> bool:
        """Count an attempt that left the event pending (deferral, transient failure)."""
        with self._lock:
            event = self._events.get(event_id)
            if event is None or event.status != EventStatus.PENDING:
                return False
            self._events[event_id] = event.model_copy(update={
                "attempts": event.attempts + 1,
                "last_error": error,
            })
            return True

    def requeue(self, event_id: str) -> bool:
        """failed -> pending with a fresh attempt budget. Processed events are never reopened."""
        return self._transition(
            event_id,
            EventStatus.FAILED,
            status=EventStatus.PENDING,
            attempts=0,
            last_error=None,
            processed_at=None,
        )

    def count_by_status(self) -> Dict[str, int]:
        with self._lock:
            counts = _empty_counts()
            for e in self._events.values():
                counts[e.status.value] += 1
            return counts

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with self._lock:
            self._events.clear()
            self._seq.clear()
            self._next_seq = 0
