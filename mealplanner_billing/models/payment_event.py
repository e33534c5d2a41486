"""
mealplanner_billing/models/payment_event.py

Inbound payment-provider event as recorded in the event store.

The provider delivers at-least-once, possibly duplicated and out of order.
`event_id` is the dedup key; `occurred_at` (provider clock) drives ordering,
never `received_at`.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "subscription.trial_will_end"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    DISPUTE_CREATED = "dispute.created"
    CHECKOUT_COMPLETED = "checkout.completed"
    UNKNOWN = "unknown"


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    DISCARDED = "discarded"


class EventOutcome(str, Enum):
    """How a processed event affected subscription state."""
    APPLIED = "applied"
    STALE = "stale"
    ALREADY_APPLIED = "already_applied"
    NO_OP = "no_op"


class PaymentEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: EventType
    provider_event_type: str
    customer_id: Optional[str] = None
    occurred_at: datetime
    received_at: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)
    payload_hash: Optional[str] = None
    status: EventStatus = EventStatus.PENDING
    outcome: Optional[EventOutcome] = None
    attempts: int = 0
    last_error: Optional[str] = None
    processed_at: Optional[datetime] = None

    @property
    def data_object(self) -> Dict[str, Any]:
        """The provider object carried by the event (`data.object`)."""
        data = self.payload.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        return obj if isinstance(obj, dict) else {}
