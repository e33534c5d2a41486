"""
mealplanner_billing/features/billing/dispatch.py

Hand-off from ingestion to reconciliation.

Three interchangeable dispatchers:
- InlineDispatcher: reconcile synchronously (tests, CLI)
- ThreadedDispatcher: in-process worker threads; a customer always hashes to
  the same worker, so one worker stream per customer
- RqDispatcher: enqueue an RQ job; the job takes a Redis lock per customer

dispatch() returns False when the hand-off failed. Events stay pending in the
event store either way, and the sweeper re-dispatches anything left behind.
"""

import logging
import queue
import threading
import zlib
from typing import List, Optional, Protocol, Set

import redis

from mealplanner_billing.core.errors import StoreUnavailableError
from mealplanner_billing.core.metrics import reconcile_dispatch_queue_depth


logger = logging.getLogger(__name__)

RECONCILE_JOB_PATH = "mealplanner_billing.workers.reconcile_worker.reconcile_customer_job"

_STOP = object()


class ReconcileDispatcher(Protocol):

    def dispatch(self, customer_id: str) -> bool:
        ...

    def start(self) -> None:
        ...

    def stop(self, timeout: Optional[float] = None) -> None:
        ...


class InlineDispatcher:

    def __init__(self, reconciler):
        self.reconciler = reconciler

    def dispatch(self, customer_id: str) -> bool:
        try:
            self.reconciler.reconcile_customer(customer_id)
            return True
        except StoreUnavailableError as e:
            logger.error(
                "[dispatch] inline reconcile failed, leaving events pending",
                extra={"customer_id": customer_id, "error_code": e.code},
            )
            return False

    def start(self) -> None:
        pass

    def stop(self, timeout: Optional[float] = None) -> None:
        pass


def partition_for(customer_id: str, partitions: int) -> int:
    """Stable partition index (crc32, not hash(): must not vary per process)."""
    return zlib.crc32(customer_id.encode("utf-8")) % partitions


class ThreadedDispatcher:
    """
    Fixed pool of worker threads, each with its own queue.

    A customer queued but not yet started is not queued twice; a dispatch that
    arrives while the customer is being reconciled queues one more run.
    """

    def __init__(self, reconciler, workers: int = 4):
        self.reconciler = reconciler
        self.workers = max(1, workers)
        self._queues: List[queue.Queue] = [queue.Queue() for _ in range(self.workers)]
        self._queued: List[Set[str]] = [set() for _ in range(self.workers)]
        self._queued_lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._running = False

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._threads = [
            threading.Thread(target=self._run, args=(i,), name=f"reconcile-worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for t in self._threads:
            t.start()
        logger.info("[dispatch] reconcile workers started", extra={"workers": self.workers})

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if not self._running:
            return
        self._running = False
        for q in self._queues:
            q.put(_STOP)
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        logger.info("[dispatch] reconcile workers stopped")

    def dispatch(self, customer_id: str) -> bool:
        index = partition_for(customer_id, self.workers)
        with self._queued_lock:
            if customer_id in self._queued[index]:
                return True
            self._queued[index].add(customer_id)
        self._queues[index].put(customer_id)
        self._update_depth()
        return True

    def depth(self) -> int:
        return sum(q.qsize() for q in self._queues)

    def join(self) -> None:
        """Block until every queued customer has been processed (tests)."""
        for q in self._queues:
            q.join()

    def _update_depth(self) -> None:
        reconcile_dispatch_queue_depth.set(self.depth())

    def _run(self, index: int) -> None:
        q = self._queues[index]
        while True:
            item = q.get()
            try:
                if item is _STOP:
                    return
                with self._queued_lock:
                    self._queued[index].discard(item)
                self._update_depth()
                self.reconciler.reconcile_customer(item)
            except Exception:
                # Keep the worker alive; the sweeper retries whatever is still pending
                logger.exception("[dispatch] reconcile run failed", extra={"customer_id": item})
            finally:
                q.task_done()


class RqDispatcher:
    """Enqueue reconcile jobs on an RQ queue (multi-process deployments)."""

    def __init__(self, rq_queue, job_timeout: str = "5m", result_ttl: int = 3600):
        self.queue = rq_queue
        self.job_timeout = job_timeout
        self.result_ttl = result_ttl

    def dispatch(self, customer_id: str) -> bool:
        try:
            self.queue.enqueue(
                RECONCILE_JOB_PATH,
                customer_id,
                job_timeout=self.job_timeout,
                result_ttl=self.result_ttl,
            )
            return True
        except redis.RedisError as e:
            logger.error(
                "[dispatch] enqueue failed, sweeper will retry",
                extra={"customer_id": customer_id, "error_code": "enqueue_failed", "error": str(e)},
            )
            return False

    def start(self) -> None:
        pass

    def stop(self, timeout: Optional[float] = None) -> None:
        pass
