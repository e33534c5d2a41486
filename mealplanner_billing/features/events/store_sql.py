"""
mealplanner_billing/features/events/store_sql.py

SQL-backed event store (PostgreSQL in production, SQLite in tests).

Maintains the same interface as InMemoryEventStore. Deduplication relies on
the unique constraint on event_id, so concurrent deliveries of the same event
resolve to exactly one row.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional
from sqlalchemy import select, insert, update, and_, func
from sqlalchemy.exc import IntegrityError

from mealplanner_billing.core.database import get_db_session, payment_events, store_errors, as_utc
from mealplanner_billing.models.payment_event import EventOutcome, EventStatus, EventType, PaymentEvent


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_event(row) -> PaymentEvent:
    return PaymentEvent(
        event_id=row.event_id,
        event_type=EventType(row.event_type),
        provider_event_type=row.provider_event_type,
        customer_id=row.customer_id,
        occurred_at=as_utc(row.occurred_at),
        received_at=as_utc(row.received_at),
        payload=dict(row.payload) if row.payload else {},
        payload_hash=row.payload_hash,
        status=EventStatus(row.status),
        outcome=EventOutcome(row.outcome) if row.outcome else None,
        attempts=row.attempts or 0,
        last_error=row.last_error,
        processed_at=as_utc(row.processed_at),
    )


class SqlEventStore:
    """SQLAlchemy Core event store."""

    def insert_if_absent(self, event: PaymentEvent) -> bool:
        """
        Insert the event row.

        Returns:
            True if inserted, False if event_id already exists
        """
        try:
            with store_errors("event insert"), get_db_session() as session:
                session.execute(
                    insert(payment_events).values(
                        event_id=event.event_id,
                        event_type=event.event_type.value,
                        provider_event_type=event.provider_event_type,
                        customer_id=event.customer_id,
                        occurred_at=as_utc(event.occurred_at),
                        received_at=as_utc(event.received_at),
                        payload=event.payload,
                        payload_hash=event.payload_hash,
                        status=event.status.value,
                        outcome=event.outcome.value if event.outcome else None,
                        attempts=event.attempts,
                        last_error=event.last_error,
                        processed_at=as_utc(event.processed_at),
                    )
                )
            return True
        except IntegrityError:
            # Duplicate event_id
            return False

    def get(self, event_id: str) -> Optional[PaymentEvent]:
        with store_errors("event get"), get_db_session() as session:
            row = session.execute(
                select(payment_events).where(payment_events.c.event_id == event_id)
            ).first()
            return _row_to_event(row) if row else None

    def list_pending(self, customer_id: str, limit: int = 100) -> List[PaymentEvent]:
        with store_errors("event list_pending"), get_db_session() as session:
            rows = session.execute(
                select(payment_events)
                .where(and_(
                    payment_events.c.customer_id == customer_id,
                    payment_events.c.status == EventStatus.PENDING.value,
                ))
                .order_by(
                    payment_events.c.occurred_at,
                    payment_events.c.received_at,
                    payment_events.c.id,
                )
                .limit(limit)
            ).all()
            return [_row_to_event(r) for r in rows]

    def list_by_status(
        self,
        status: EventStatus,
        limit: int = 100,
        older_than: Optional[datetime] = None,
    ) -> List[PaymentEvent]:
        filters = [payment_events.c.status == status.value]
        if older_than is not None:
            filters.append(payment_events.c.received_at <= as_utc(older_than))
        with store_errors("event list_by_status"), get_db_session() as session:
            rows = session.execute(
                select(payment_events)
                .where(and_(*filters))
                .order_by(payment_events.c.occurred_at, payment_events.c.id)
                .limit(limit)
            ).all()
            return [_row_to_event(r) for r in rows]

    def pending_customers(self, older_than: Optional[datetime] = None, limit: int = 100) -> List[str]:
        filters = [
            payment_events.c.status == EventStatus.PENDING.value,
            payment_events.c.customer_id.isnot(None),
        ]
        if older_than is not None:
            filters.append(payment_events.c.received_at <= as_utc(older_than))
        earliest = func.min(payment_events.c.occurred_at)
        with store_errors("event pending_customers"), get_db_session() as session:
            rows = session.execute(
                select(payment_events.c.customer_id, earliest.label("earliest"))
                .where(and_(*filters))
                .group_by(payment_events.c.customer_id)
                .order_by(earliest, payment_events.c.customer_id)
                .limit(limit)
            ).all()
            return [r.customer_id for r in rows]

    def _conditional_update(self, event_id: str, expected: EventStatus, operation: str, **values) -> bool:
        with store_errors(operation), get_db_session() as session:
            result = session.execute(
                update(payment_events)
                .where(and_(
                    payment_events.c.event_id == event_id,
                    payment_events.c.status == expected.value,
                ))
                .values(**values)
            )
            return result.rowcount == 1

    def mark_processed(self, event_id: str, outcome: EventOutcome, now: Optional[datetime] = None) -> bool:
        return self._conditional_update(
            event_id,
            EventStatus.PENDING,
            "event mark_processed",
            status=EventStatus.PROCESSED.value,
            outcome=outcome.value,
            processed_at=as_utc(now or _now()),
        )

    def mark_failed(self, event_id: str, error: str, now: Optional[datetime] = None) -> bool:
        return self._conditional_update(
            event_id,
            EventStatus.PENDING,
            "event mark_failed",
            status=EventStatus.FAILED.value,
            last_error=error,
            attempts=payment_events.c.attempts + 1,
            processed_at=as_utc(now or _now()),
        )

    def record_attempt(self, event_id: str, error: Optional[str] = None) -> bool:
        return self._conditional_update(
            event_id,
            EventStatus.PENDING,
            "event record_attempt",
            attempts=payment_events.c.attempts + 1,
            last_error=error,
        )

    def requeue(self, event_id: str) -> bool:
        return self._conditional_update(
            event_id,
            EventStatus.FAILED,
            "event requeue",
            status=EventStatus.PENDING.value,
            attempts=0,
            last_error=None,
            processed_at=None,
        )

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in EventStatus}
        with store_errors("event count_by_status"), get_db_session() as session:
            rows = session.execute(
                select(payment_events.c.status, func.count(payment_events.c.id))
                .group_by(payment_events.c.status)
            ).all()
            for status, count in rows:
                counts[status] = count
        return counts

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with get_db_session() as session:
            session.execute(payment_events.delete())
