"""
Redis connection and RQ queue helpers.

Shared by the entitlement cache (redis backend) and the RQ reconcile
dispatcher. Connections are created lazily so that importing this module
never needs a running Redis.
"""
import os
from typing import Optional

from redis import Redis
from rq import Queue

from mealplanner_billing.core.config import settings

_redis_conn: Optional[Redis] = None


def get_redis_url() -> str:
    return os.environ.get("REDIS_URL") or settings.REDIS_URL


def get_redis_conn() -> Redis:
    """Get (or create) the process-wide Redis connection."""
    global _redis_conn
    if _redis_conn is None:
        _redis_conn = Redis.from_url(get_redis_url())
    return _redis_conn


def get_queue(name: Optional[str] = None, connection: Optional[Redis] = None) -> Queue:
    return Queue(name or settings.RECONCILE_QUEUE_NAME, connection=connection or get_redis_conn())


def reset_redis_conn() -> None:
    """FOR TESTING ONLY."""
    global _redis_conn
    _redis_conn = None
