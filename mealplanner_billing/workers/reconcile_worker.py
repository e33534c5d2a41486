"""Reconciliation worker.

Two entry points:
- reconcile_customer_job: RQ job enqueued by RqDispatcher. Run workers with
    rq worker reconcile --url $REDIS_URL
- sweeper CLI: re-dispatches customers whose events are still pending
  (lost enqueues, deferred events, transient failures)

Usage:
    python -m mealplanner_billing.workers.reconcile_worker --once
    python -m mealplanner_billing.workers.reconcile_worker --loop

Environment flags:
- SWEEP_OLDER_THAN_SECONDS (default 60)
- RECONCILE_DISPATCH (inline | thread | rq); the sweeper reconciles inline
  unless it is rq
- RECONCILE_LOCK_TIMEOUT_SECONDS (default 60)
"""
from __future__ import annotations

import argparse
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.exceptions import LockError

from mealplanner_billing.container import Container, build_container, get_container
from mealplanner_billing.core.config import settings
from mealplanner_billing.core.logging import configure_logging, log_event
from mealplanner_billing.core.queue_client import get_redis_conn


logger = logging.getLogger(__name__)

DEFAULT_LOOP_SECONDS = int(os.getenv("SWEEP_LOOP_SECONDS", "30") or 30)
LOCK_PREFIX = "reconcile-lock:"


def reconcile_customer_job(customer_id: str) -> Optional[dict]:
    """
    RQ job: reconcile one customer under a Redis lock.

    The lock keeps at most one reconciliation per customer across worker
    processes. A job that cannot get the lock leaves the events pending; the
    current holder or the sweeper will drain them.
    """
    container = get_container()
    lock = get_redis_conn().lock(
        f"{LOCK_PREFIX}{customer_id}",
        timeout=settings.RECONCILE_LOCK_TIMEOUT_SECONDS,
        blocking_timeout=settings.RECONCILE_LOCK_TIMEOUT_SECONDS,
    )
    try:
        with lock:
            summary = container.reconciler.reconcile_customer(customer_id)
    except LockError:
        log_event("warning", "reconcile.lock_unavailable", customer_id=customer_id, error_code="lock_timeout")
        return None
    return {"customer_id": customer_id, "results": summary.results}


def sweep_once(
    container: Container,
    older_than_seconds: int = 60,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> int:
    """
    Dispatch every customer with events pending longer than older_than_seconds.

    Returns:
        Number of customers dispatched
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=older_than_seconds)
    customers = container.events.pending_customers(older_than=cutoff, limit=limit)
    dispatched = 0
    for customer_id in customers:
        if container.dispatcher.dispatch(customer_id):
            dispatched += 1
    if customers:
        logger.info(
            "[sweeper] pending customers dispatched",
            extra={"found": len(customers), "dispatched": dispatched},
        )
    return dispatched


def _build_sweeper_container() -> Container:
    mode = "rq" if settings.RECONCILE_DISPATCH == "rq" else "inline"
    return build_container(dispatch_mode=mode)


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconciliation sweeper")
    parser.add_argument("--once", action="store_true", help="Sweep pending events once and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--limit", type=int, default=100, help="Customers per sweep")
    parser.add_argument(
        "--older-than",
        type=int,
        default=settings.SWEEP_OLDER_THAN_SECONDS,
        help="Only sweep events received at least this many seconds ago",
    )
    parser.add_argument(
        "--sleep",
        type=int,
        default=DEFAULT_LOOP_SECONDS,
        help="Seconds to sleep between sweeps (when --loop)",
    )
    args = parser.parse_args()

    configure_logging(settings.ENV)
    container = _build_sweeper_container()

    if args.once:
        dispatched = sweep_once(container, older_than_seconds=args.older_than, limit=args.limit)
        print(f"[sweeper] Dispatched: {dispatched}")
        return

    # Default to loop mode when not explicitly once
    print(
        f"[sweeper] Starting loop (sleep={args.sleep}s, batch={args.limit}). CTRL+C to stop."
    )
    try:
        while True:
            sweep_once(container, older_than_seconds=args.older_than, limit=args.limit)
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[sweeper] Stopped")


if __name__ == "__main__":
    main()
