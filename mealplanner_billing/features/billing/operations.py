"""
mealplanner_billing/features/billing/operations.py

Operator visibility into the reconciliation pipeline.

Failed events are the dead-letter queue: they stay failed until an operator
requeues them, which is the only way out of a terminal state.
"""

from typing import Dict, List, Optional

from mealplanner_billing.core.errors import ConflictError, NotFoundError
from mealplanner_billing.core.logging import log_event
from mealplanner_billing.models.payment_event import EventStatus, PaymentEvent
from mealplanner_billing.models.subscription import Subscription


class BillingOperations:

    def __init__(self, events, subscriptions, dispatcher):
        self.events = events
        self.subscriptions = subscriptions
        self.dispatcher = dispatcher

    def list_events(self, status: EventStatus, limit: int = 50) -> List[PaymentEvent]:
        return self.events.list_by_status(status, limit=limit)

    def list_failed(self, limit: int = 50) -> List[PaymentEvent]:
        return self.events.list_by_status(EventStatus.FAILED, limit=limit)

    def get_event(self, event_id: str) -> PaymentEvent:
        event = self.events.get(event_id)
        if event is None:
            raise NotFoundError(f"Event not found: {event_id}")
        return event

    def requeue(self, event_id: str, actor_id: Optional[str] = None) -> PaymentEvent:
        """
        Move a failed event back to pending and dispatch its customer.

        Raises:
            NotFoundError: unknown event
            ConflictError: event is not in the failed state
        """
        event = self.get_event(event_id)
        if event.status != EventStatus.FAILED or not self.events.requeue(event_id):
            raise ConflictError(f"Only failed events can be requeued (event {event_id} is {event.status.value})")
        log_event(
            "warning",
            "operator.requeue",
            customer_id=event.customer_id,
            event_id=event_id,
            event_type=event.event_type.value,
            extra={"actor_id": actor_id, "previous_error": event.last_error},
        )
        if event.customer_id:
            self.dispatcher.dispatch(event.customer_id)
        return self.get_event(event_id)

    def get_subscription(self, customer_id: str) -> Subscription:
        subscription = self.subscriptions.get(customer_id)
        if subscription is None:
            raise NotFoundError(f"No subscription for customer {customer_id}")
        return subscription

    def count_by_status(self) -> Dict[str, int]:
        return self.events.count_by_status()
