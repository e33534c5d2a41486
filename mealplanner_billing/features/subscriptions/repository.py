"""
mealplanner_billing/features/subscriptions/repository.py

Subscription state repository (in-memory).

Writes are optimistic: every update names the version it read, and a stale
version is rejected with VersionConflictError instead of overwriting.
"""

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from mealplanner_billing.core.errors import VersionConflictError
from mealplanner_billing.models.subscription import Subscription, SubscriptionStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySubscriptionRepository:

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[str, Subscription] = {}

    def get(self, customer_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._rows.get(customer_id)

    def create(self, subscription: Subscription) -> Subscription:
        """Insert a new row at version 1. Fails if the customer already has one."""
        with self._lock:
            if subscription.customer_id in self._rows:
                raise VersionConflictError(subscription.customer_id, expected_version=None)
            now = _now()
            stored = subscription.model_copy(update={
                "version": 1,
                "created_at": now,
                "updated_at": now,
            })
            self._rows[subscription.customer_id] = stored
            return stored

    def compare_and_set(self, subscription: Subscription, expected_version: int) -> Subscription:
        """Replace the row only if its version still equals expected_version."""
        with self._lock:
            current = self._rows.get(subscription.customer_id)
            if current is None or current.version != expected_version:
                raise VersionConflictError(subscription.customer_id, expected_version=expected_version)
            stored = subscription.model_copy(update={
                "version": expected_version + 1,
                "created_at": current.created_at,
                "updated_at": _now(),
            })
            self._rows[subscription.customer_id] = stored
            return stored

    def list_all(self, status: Optional[SubscriptionStatus] = None, limit: int = 100) -> List[Subscription]:
        with self._lock:
            rows = [s for s in self._rows.values() if status is None or s.status == status]
        rows.sort(key=lambda s: s.customer_id)
        return rows[:limit]

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with self._lock:
            self._rows.clear()
