"""
mealplanner_billing/features/usage/counters_sql.py

SQL-backed usage counter store.

The ceiling is enforced by the database: one conditional UPDATE increments
only while count + 1 <= ceiling, so concurrent requests cannot overshoot.
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple
from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError

from mealplanner_billing.core.database import get_db_session, usage_counters, store_errors, as_utc
from mealplanner_billing.models.usage import UsageCounter


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _key_filter(customer_id: str, metric: str, period_start: datetime):
    return and_(
        usage_counters.c.customer_id == customer_id,
        usage_counters.c.metric == metric,
        usage_counters.c.period_start == as_utc(period_start),
    )


class SqlUsageCounterStore:

    def _ensure_row(self, customer_id: str, metric: str, period_start: datetime, period_end: datetime) -> None:
        with get_db_session() as session:
            exists = session.execute(
                select(usage_counters.c.id).where(_key_filter(customer_id, metric, period_start))
            ).first()
        if exists:
            return
        # Separate transaction: a unique violation aborts the whole transaction on PostgreSQL
        try:
            now = _now()
            with get_db_session() as session:
                session.execute(
                    insert(usage_counters).values(
                        customer_id=customer_id,
                        metric=metric,
                        period_start=as_utc(period_start),
                        period_end=as_utc(period_end),
                        count=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            # Another request created the period row first
            pass

    def increment(
        self,
        customer_id: str,
        metric: str,
        period_start: datetime,
        period_end: datetime,
        ceiling: Optional[int],
    ) -> Tuple[bool, int]:
        with store_errors("usage increment"):
            self._ensure_row(customer_id, metric, period_start, period_end)
            stmt = (
                update(usage_counters)
                .where(_key_filter(customer_id, metric, period_start))
                .values(count=usage_counters.c.count + 1, updated_at=_now())
            )
            if ceiling is not None:
                stmt = stmt.where(usage_counters.c.count + 1 <= ceiling)
            with get_db_session() as session:
                row = session.execute(stmt.returning(usage_counters.c.count)).first()
                if row is not None:
                    return True, row[0]
                current = session.execute(
                    select(usage_counters.c.count).where(_key_filter(customer_id, metric, period_start))
                ).scalar()
                return False, current or 0

    def get_count(self, customer_id: str, metric: str, period_start: datetime) -> int:
        with store_errors("usage get_count"), get_db_session() as session:
            value = session.execute(
                select(usage_counters.c.count).where(_key_filter(customer_id, metric, period_start))
            ).scalar()
            return value or 0

    def list_counters(self, customer_id: str, metric: Optional[str] = None) -> List[UsageCounter]:
        query = select(usage_counters).where(usage_counters.c.customer_id == customer_id)
        if metric is not None:
            query = query.where(usage_counters.c.metric == metric)
        query = query.order_by(usage_counters.c.period_start.desc(), usage_counters.c.metric.desc())
        with store_errors("usage list_counters"), get_db_session() as session:
            return [
                UsageCounter(
                    customer_id=r.customer_id,
                    metric=r.metric,
                    period_start=as_utc(r.period_start),
                    period_end=as_utc(r.period_end),
                    count=r.count,
                )
                for r in session.execute(query).all()
            ]

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with get_db_session() as session:
            session.execute(usage_counters.delete())
