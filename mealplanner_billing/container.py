"""
Service wiring.

Builds the stores and services from settings:
- SQL stores when a database URL is configured, in-memory stores otherwise
- memory or Redis entitlement cache
- inline, threaded or RQ reconcile dispatch

The API reads the container from app.state; background workers use the
process-wide instance from get_container().
"""

import logging
from dataclasses import dataclass
from typing import Optional

from mealplanner_billing.core.config import Settings, price_tier_map, settings
from mealplanner_billing.core.database import get_database_url
from mealplanner_billing.features.billing.dispatch import InlineDispatcher, RqDispatcher, ThreadedDispatcher
from mealplanner_billing.features.billing.ingestion import WebhookIngestionService
from mealplanner_billing.features.billing.operations import BillingOperations
from mealplanner_billing.features.billing.reconciler import EventReconciler
from mealplanner_billing.features.billing.stripe_provider import StripeEventSource
from mealplanner_billing.features.entitlements.cache import InMemoryEntitlementCache, RedisEntitlementCache
from mealplanner_billing.features.entitlements.service import EntitlementResolver
from mealplanner_billing.features.events.store import InMemoryEventStore
from mealplanner_billing.features.subscriptions.repository import InMemorySubscriptionRepository
from mealplanner_billing.features.usage.counters import InMemoryUsageCounterStore
from mealplanner_billing.features.usage.service import UsageGate


logger = logging.getLogger(__name__)


@dataclass
class Container:
    backend: str  # "memory" | "sql"
    events: object
    subscriptions: object
    counters: object
    cache: object
    resolver: EntitlementResolver
    usage_gate: UsageGate
    source: object
    reconciler: EventReconciler
    dispatcher: object
    ingestion: WebhookIngestionService
    operations: BillingOperations


def _build_stores(use_sql: bool):
    if use_sql:
        from mealplanner_billing.features.events.store_sql import SqlEventStore
        from mealplanner_billing.features.subscriptions.repository_sql import SqlSubscriptionRepository
        from mealplanner_billing.features.usage.counters_sql import SqlUsageCounterStore
        return SqlEventStore(), SqlSubscriptionRepository(), SqlUsageCounterStore()
    return InMemoryEventStore(), InMemorySubscriptionRepository(), InMemoryUsageCounterStore()


def _build_cache(backend: str):
    if backend == "redis":
        from mealplanner_billing.core.queue_client import get_redis_conn
        return RedisEntitlementCache(get_redis_conn())
    return InMemoryEntitlementCache()


def _build_dispatcher(mode: str, reconciler: EventReconciler, cfg: Settings):
    if mode == "inline":
        return InlineDispatcher(reconciler)
    if mode == "rq":
        from mealplanner_billing.core.queue_client import get_queue
        return RqDispatcher(get_queue(cfg.RECONCILE_QUEUE_NAME))
    return ThreadedDispatcher(reconciler, workers=cfg.RECONCILE_WORKERS)


def build_container(
    settings_obj: Optional[Settings] = None,
    *,
    use_sql: Optional[bool] = None,
    dispatch_mode: Optional[str] = None,
    cache=None,
    source=None,
) -> Container:
    """
    Assemble all services.

    Args:
        settings_obj: Settings override (defaults to module settings)
        use_sql: Force SQL (True) or in-memory (False) stores; default follows DATABASE_URL
        dispatch_mode: Override RECONCILE_DISPATCH ("inline" | "thread" | "rq")
        cache: Pre-built entitlement cache (tests)
        source: Pre-built payment event source (tests)
    """
    cfg = settings_obj or settings
    if use_sql is None:
        use_sql = bool(get_database_url())
    mode = dispatch_mode or cfg.RECONCILE_DISPATCH

    events, subscriptions, counters = _build_stores(use_sql)
    cache = cache if cache is not None else _build_cache(cfg.ENTITLEMENT_CACHE_BACKEND)
    resolver = EntitlementResolver(subscriptions, cache, ttl_seconds=cfg.ENTITLEMENT_CACHE_TTL_SECONDS)
    usage_gate = UsageGate(resolver, counters, failure_policy=cfg.USAGE_FAILURE_POLICY)
    reconciler = EventReconciler(
        events,
        subscriptions,
        resolver,
        price_tiers=price_tier_map(cfg),
        max_retries=cfg.RECONCILE_MAX_RETRIES,
        retry_base_seconds=cfg.RECONCILE_RETRY_BASE_SECONDS,
        max_deferrals=cfg.RECONCILE_MAX_DEFERRALS,
    )
    dispatcher = _build_dispatcher(mode, reconciler, cfg)
    source = source if source is not None else StripeEventSource(
        webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
        tolerance_seconds=cfg.WEBHOOK_TOLERANCE_SECONDS,
    )
    ingestion = WebhookIngestionService(
        source,
        events,
        dispatcher,
        store_retries=cfg.INGEST_STORE_RETRIES,
        retry_base_seconds=cfg.INGEST_RETRY_BASE_SECONDS,
    )
    operations = BillingOperations(events, subscriptions, dispatcher)

    backend = "sql" if use_sql else "memory"
    logger.info(
        "[container] services built",
        extra={"backend": backend, "dispatch": mode, "cache": type(cache).__name__},
    )
    return Container(
        backend=backend,
        events=events,
        subscriptions=subscriptions,
        counters=counters,
        cache=cache,
        resolver=resolver,
        usage_gate=usage_gate,
        source=source,
        reconciler=reconciler,
        dispatcher=dispatcher,
        ingestion=ingestion,
        operations=operations,
    )


_container: Optional[Container] = None


def get_container() -> Container:
    """Process-wide container (lazy)."""
    global _container
    if _container is None:
        _container = build_container()
    return _container


def set_container(container: Optional[Container]) -> None:
    global _container
    _container = container


def reset_container() -> None:
    """FOR TESTING ONLY."""
    set_container(None)
