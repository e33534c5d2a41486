"""
Admin-only billing operations router.
Requires X-Admin-Key header for all endpoints.
Handles failed-event inspection, requeue and subscription lookup.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from mealplanner_billing.api.deps import get_services
from mealplanner_billing.container import Container
from mealplanner_billing.core.admin_auth import AdminActor, require_admin
from mealplanner_billing.core.errors import ValidationError
from mealplanner_billing.models.payment_event import EventStatus, PaymentEvent

logger = logging.getLogger("mealplanner_billing.admin_billing")

router = APIRouter(prefix="/api/admin/billing")


# ============================================================================
# Pydantic Models
# ============================================================================

class PaymentEventItem(BaseModel):
    """Single payment event for list responses (payload omitted)."""
    event_id: str
    event_type: str
    provider_event_type: str
    customer_id: Optional[str]
    status: str
    outcome: Optional[str]
    attempts: int
    last_error: Optional[str]
    occurred_at: datetime
    received_at: datetime
    processed_at: Optional[datetime]


class PaymentEventListResponse(BaseModel):
    total: int
    events: List[PaymentEventItem]


class SubscriptionResponse(BaseModel):
    customer_id: str
    provider_subscription_id: Optional[str]
    tier: str
    status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    last_applied_event_at: Optional[datetime]
    last_applied_event_id: Optional[str]
    version: int


class SummaryResponse(BaseModel):
    events_by_status: Dict[str, int]


def _event_item(event: PaymentEvent) -> PaymentEventItem:
    return PaymentEventItem(
        event_id=event.event_id,
        event_type=event.event_type.value,
        provider_event_type=event.provider_event_type,
        customer_id=event.customer_id,
        status=event.status.value,
        outcome=event.outcome.value if event.outcome else None,
        attempts=event.attempts,
        last_error=event.last_error,
        occurred_at=event.occurred_at,
        received_at=event.received_at,
        processed_at=event.processed_at,
    )


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/events", response_model=PaymentEventListResponse)
def list_events(
    status: str = Query("failed", description="pending | processed | failed | discarded"),
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
    services: Container = Depends(get_services),
):
    """List payment events by status (defaults to the failed dead-letter set)."""
    try:
        event_status = EventStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown event status: {status}")
    events = services.operations.list_events(event_status, limit=limit)
    logger.info(
        "[admin] events listed",
        extra={"actor_id": actor.actor_id, "status": status, "count": len(events)},
    )
    return PaymentEventListResponse(total=len(events), events=[_event_item(e) for e in events])


@router.post("/events/{event_id}/requeue", response_model=PaymentEventItem)
def requeue_event(
    event_id: str,
    actor: AdminActor = Depends(require_admin),
    services: Container = Depends(get_services),
):
    """Move a failed event back to pending and dispatch it for reconciliation."""
    event = services.operations.requeue(event_id, actor_id=actor.actor_id)
    return _event_item(event)


@router.get("/subscriptions/{customer_id}", response_model=SubscriptionResponse)
def get_subscription(
    customer_id: str,
    actor: AdminActor = Depends(require_admin),
    services: Container = Depends(get_services),
):
    sub = services.operations.get_subscription(customer_id)
    return SubscriptionResponse(
        customer_id=sub.customer_id,
        provider_subscription_id=sub.provider_subscription_id,
        tier=sub.tier.value,
        status=sub.status.value,
        current_period_start=sub.current_period_start,
        current_period_end=sub.current_period_end,
        cancel_at_period_end=sub.cancel_at_period_end,
        last_applied_event_at=sub.last_applied_event_at,
        last_applied_event_id=sub.last_applied_event_id,
        version=sub.version,
    )


@router.get("/summary", response_model=SummaryResponse)
def summary(
    actor: AdminActor = Depends(require_admin),
    services: Container = Depends(get_services),
):
    return SummaryResponse(events_by_status=services.operations.count_by_status())
