"""
mealplanner_billing/features/usage/counters.py

Per-customer, per-metric, per-period usage counters (in-memory).

increment() is check-and-increment in one step: it never lets a counter pass
its ceiling, however many callers race on it.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from mealplanner_billing.models.usage import UsageCounter


class InMemoryUsageCounterStore:

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str, datetime], UsageCounter] = {}

    def increment(
        self,
        customer_id: str,
        metric: str,
        period_start: datetime,
        period_end: datetime,
        ceiling: Optional[int],
    ) -> Tuple[bool, int]:
        """
        Increment the counter if it stays within ceiling.

        Args:
            ceiling: Maximum count allowed in the period; None = unbounded

        Returns:
            (allowed, count) where count is the value after the call
        """
        key = (customer_id, metric, period_start)
        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                counter = UsageCounter(
                    customer_id=customer_id,
                    metric=metric,
                    period_start=period_start,
                    period_end=period_end,
                    count=0,
                )
            if ceiling is not None and counter.count + 1 > ceiling:
                self._counters[key] = counter
                return False, counter.count
            counter = counter.model_copy(update={"count": counter.count + 1})
            self._counters[key] = counter
            return True, counter.count

    def get_count(self, customer_id: str, metric: str, period_start: datetime) -> int:
        with self._lock:
            counter = self._counters.get((customer_id, metric, period_start))
            return counter.count if counter else 0

    def list_counters(self, customer_id: str, metric: Optional[str] = None) -> List[UsageCounter]:
        """All period rows for a customer, newest period first."""
        with self._lock:
            rows = [
                c for (cid, m, _), c in self._counters.items()
                if cid == customer_id and (metric is None or m == metric)
            ]
        rows.sort(key=lambda c: (c.period_start, c.metric), reverse=True)
        return rows

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with self._lock:
            self._counters.clear()
