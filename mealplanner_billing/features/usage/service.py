"""
mealplanner_billing/features/usage/service.py

Usage enforcement gate.

Handles:
- Ceiling lookup through the entitlement resolver
- Atomic test-and-increment on the current period's counter
- The configured failure policy when the counter store is down
- A FastAPI dependency (metered) for routes that consume a metered action
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import Request

from mealplanner_billing.core.errors import QuotaExceededError, StoreUnavailableError, ValidationError
from mealplanner_billing.core.metrics import usage_checks_total
from mealplanner_billing.features.entitlements.policy import METRICS, is_known_metric
from mealplanner_billing.models.entitlement import EntitlementSnapshot
from mealplanner_billing.models.usage import DecisionReason, UsageDecision


logger = logging.getLogger(__name__)

FAIL_CLOSED = "closed"
FAIL_OPEN = "open"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calendar_month(now: datetime) -> Tuple[datetime, datetime]:
    """UTC calendar month containing now, as [start, end)."""
    now = now.astimezone(timezone.utc)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def billing_period(snapshot: EntitlementSnapshot, now: datetime) -> Tuple[datetime, datetime]:
    """
    Period a usage increment is counted against.

    The subscription's recorded period. A lapsed period stays in force until
    the renewal event is reconciled; counting against a fresh row in the gap
    would hand out a second ceiling for the same period. The UTC calendar
    month applies only when no period was ever recorded.
    """
    start, end = snapshot.current_period_start, snapshot.current_period_end
    if start is not None and end is not None:
        return start, end
    return calendar_month(now)


class UsageGate:

    def __init__(
        self,
        resolver,
        counters,
        failure_policy: str = FAIL_CLOSED,
        time_fn: Callable[[], datetime] = _utcnow,
    ):
        if failure_policy not in (FAIL_CLOSED, FAIL_OPEN):
            raise ValueError(f"Unknown usage failure policy: {failure_policy}")
        self.resolver = resolver
        self.counters = counters
        self.failure_policy = failure_policy
        self.time_fn = time_fn

    def check_and_increment(self, customer_id: str, metric: str, now: Optional[datetime] = None) -> UsageDecision:
        """
        Admit or deny one metered action and count it when admitted.

        Raises:
            ValidationError: metric is not a known metered action
        """
        if not is_known_metric(metric):
            raise ValidationError(f"Unknown usage metric: {metric}")
        now = now or self.time_fn()

        try:
            snapshot = self.resolver.get_entitlements(customer_id, now=now)
            ceiling = snapshot.limit_for(metric)
            period_start, period_end = billing_period(snapshot, now)
            allowed, count = self.counters.increment(customer_id, metric, period_start, period_end, ceiling)
        except StoreUnavailableError as e:
            return self._store_unavailable(customer_id, metric, e)

        if allowed:
            reason = DecisionReason.UNLIMITED if ceiling is None else DecisionReason.OK
        else:
            reason = DecisionReason.QUOTA_EXCEEDED
            logger.info(
                "[usage] quota exceeded",
                extra={"customer_id": customer_id, "metric": metric, "current_usage": count, "limit": ceiling},
            )
        usage_checks_total.inc({"result": reason.value})
        return UsageDecision(
            allowed=allowed,
            customer_id=customer_id,
            metric=metric,
            current_usage=count,
            limit=ceiling,
            period_start=period_start,
            period_end=period_end,
            reason=reason,
        )

    def _store_unavailable(self, customer_id: str, metric: str, error: Exception) -> UsageDecision:
        allowed = self.failure_policy == FAIL_OPEN
        usage_checks_total.inc({"result": "fail_open" if allowed else "fail_closed"})
        if allowed:
            logger.error(
                "[usage] store unavailable, admitting without counting (fail-open)",
                extra={"customer_id": customer_id, "metric": metric, "error_code": "store_unavailable", "error": str(error)},
            )
        else:
            logger.warning(
                "[usage] store unavailable, denying (fail-closed)",
                extra={"customer_id": customer_id, "metric": metric, "error_code": "store_unavailable", "error": str(error)},
            )
        return UsageDecision(
            allowed=allowed,
            customer_id=customer_id,
            metric=metric,
            current_usage=None,
            limit=None,
            reason=DecisionReason.STORE_UNAVAILABLE,
        )

    def get_usage(self, customer_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Current-period count and ceiling for every metric."""
        now = now or self.time_fn()
        snapshot = self.resolver.get_entitlements(customer_id, now=now)
        period_start, period_end = billing_period(snapshot, now)
        return {
            "customer_id": customer_id,
            "period_start": period_start,
            "period_end": period_end,
            "metrics": {
                metric: {
                    "current_usage": self.counters.get_count(customer_id, metric, period_start),
                    "limit": snapshot.limit_for(metric),
                }
                for metric in METRICS
            },
        }


def metered(metric: str, customer_header: str = "X-Customer-Id"):
    """
    FastAPI dependency factory for routes that perform a metered action.

    The customer comes from the `customer_id` path parameter, falling back to
    the given header. Denials raise QuotaExceededError (403) carrying the
    current usage and limit.

    Usage:
        @router.post("/meal-plans/{customer_id}", dependencies=[Depends(metered("meal_plans"))])
    """
    if not is_known_metric(metric):
        raise ValueError(f"Unknown usage metric: {metric}")

    def dependency(request: Request) -> UsageDecision:
        customer_id = request.path_params.get("customer_id") or request.headers.get(customer_header)
        if not customer_id:
            raise ValidationError("customer_id is required for metered routes")
        gate: UsageGate = request.app.state.container.usage_gate
        decision = gate.check_and_increment(customer_id, metric)
        if not decision.allowed:
            if decision.reason == DecisionReason.STORE_UNAVAILABLE:
                raise StoreUnavailableError("Usage store unavailable")
            raise QuotaExceededError(
                f"{metric} limit reached",
                metric=metric,
                current_usage=decision.current_usage,
                limit=decision.limit,
            )
        return decision

    return dependency
