"""
mealplanner_billing/features/entitlements/cache.py

Entitlement snapshot cache.

The cache is a read accelerator, not a source of truth: every entry carries
its own expiry, writers invalidate by deleting, and any cache failure is
treated as a miss.

Each delete also bumps a per-customer generation. A reader takes the
generation before loading subscription state and passes it to set(); the
write is skipped if an invalidation happened in between, so a snapshot
computed from the old row can never outlive the invalidation.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import redis
from pydantic import ValidationError as PydanticValidationError

from mealplanner_billing.core.metrics import entitlement_cache_total
from mealplanner_billing.models.entitlement import EntitlementSnapshot


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryEntitlementCache:
    """Process-local cache. TTL is enforced on read against time_fn."""

    def __init__(self, time_fn: Callable[[], datetime] = _utcnow):
        self.time_fn = time_fn
        self._lock = threading.Lock()
        self._entries: Dict[str, EntitlementSnapshot] = {}
        self._generations: Dict[str, int] = {}

    def get(self, customer_id: str) -> Optional[EntitlementSnapshot]:
        with self._lock:
            snapshot = self._entries.get(customer_id)
            if snapshot is None:
                return None
            if snapshot.is_expired(self.time_fn()):
                del self._entries[customer_id]
                entitlement_cache_total.inc({"result": "expired"})
                return None
            return snapshot

    def generation(self, customer_id: str) -> Optional[int]:
        with self._lock:
            return self._generations.get(customer_id, 0)

    def set(self, snapshot: EntitlementSnapshot, generation: Optional[int] = None) -> bool:
        with self._lock:
            if generation is not None and self._generations.get(snapshot.customer_id, 0) != generation:
                return False
            self._entries[snapshot.customer_id] = snapshot
            return True

    def delete(self, customer_id: str) -> None:
        with self._lock:
            self._generations[customer_id] = self._generations.get(customer_id, 0) + 1
            self._entries.pop(customer_id, None)

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with self._lock:
            self._entries.clear()
            self._generations.clear()


class RedisEntitlementCache:
    """
    Shared cache for multi-process deployments.

    Entries are JSON snapshots stored with SETEX, so Redis expires them even if
    nobody invalidates them.
    """

    def __init__(self, client: redis.Redis, key_prefix: str = "entitlements:", time_fn: Callable[[], datetime] = _utcnow):
        self.client = client
        self.key_prefix = key_prefix
        self.time_fn = time_fn

    def _key(self, customer_id: str) -> str:
        return f"{self.key_prefix}{customer_id}"

    def _generation_key(self, customer_id: str) -> str:
        return f"{self.key_prefix}gen:{customer_id}"

    def generation(self, customer_id: str) -> Optional[int]:
        """Current invalidation generation, or None when Redis is unreachable (skip caching)."""
        try:
            return int(self.client.get(self._generation_key(customer_id)) or 0)
        except redis.RedisError as e:
            logger.warning(
                "[entitlements] cache generation read failed",
                extra={"customer_id": customer_id, "error_code": "cache_unavailable", "error": str(e)},
            )
            entitlement_cache_total.inc({"result": "error"})
            return None

    def get(self, customer_id: str) -> Optional[EntitlementSnapshot]:
        try:
            raw = self.client.get(self._key(customer_id))
        except redis.RedisError as e:
            logger.warning(
                "[entitlements] cache read failed, treating as miss",
                extra={"customer_id": customer_id, "error_code": "cache_unavailable", "error": str(e)},
            )
            entitlement_cache_total.inc({"result": "error"})
            return None
        if raw is None:
            return None
        try:
            snapshot = EntitlementSnapshot.model_validate_json(raw)
        except PydanticValidationError:
            logger.warning(
                "[entitlements] discarding unreadable cache entry",
                extra={"customer_id": customer_id, "error_code": "cache_corrupt"},
            )
            self.delete(customer_id)
            return None
        if snapshot.is_expired(self.time_fn()):
            return None
        return snapshot

    def set(self, snapshot: EntitlementSnapshot, generation: Optional[int] = None) -> bool:
        key = self._key(snapshot.customer_id)
        ttl = max(1, snapshot.ttl_seconds)
        try:
            if generation is None:
                self.client.setex(key, ttl, snapshot.model_dump_json())
                return True
            # WATCH the generation so a concurrent delete aborts the write
            with self.client.pipeline() as pipe:
                gen_key = self._generation_key(snapshot.customer_id)
                pipe.watch(gen_key)
                if int(pipe.get(gen_key) or 0) != generation:
                    return False
                pipe.multi()
                pipe.setex(key, ttl, snapshot.model_dump_json())
                pipe.execute()
            return True
        except redis.WatchError:
            return False
        except redis.RedisError as e:
            logger.warning(
                "[entitlements] cache write failed",
                extra={"customer_id": snapshot.customer_id, "error_code": "cache_unavailable", "error": str(e)},
            )
            entitlement_cache_total.inc({"result": "error"})
            return False

    def delete(self, customer_id: str) -> None:
        try:
            # Bump first: a reader that checks the generation after this cannot write
            self.client.incr(self._generation_key(customer_id))
            self.client.delete(self._key(customer_id))
        except redis.RedisError as e:
            # The entry still expires on its own TTL
            logger.error(
                "[entitlements] cache invalidation failed",
                extra={"customer_id": customer_id, "error_code": "cache_unavailable", "error": str(e)},
            )
            entitlement_cache_total.inc({"result": "error"})
