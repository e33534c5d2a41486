"""
mealplanner_billing/features/billing/ingestion.py

Webhook ingestion service.

Verifies, deduplicates and durably records inbound payment events, then
hands the customer to the reconcile dispatcher. Never touches subscription
state directly: "received" and "applied" are separate steps.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Mapping, Optional

from mealplanner_billing.core.errors import MalformedPayloadError, SignatureVerificationError, StoreUnavailableError
from mealplanner_billing.core.logging import log_event
from mealplanner_billing.core.metrics import webhook_events_total
from mealplanner_billing.core.retry import compute_backoff
from mealplanner_billing.features.billing.provider import ParsedEvent
from mealplanner_billing.models.payment_event import EventStatus, EventType, PaymentEvent


logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    status: IngestStatus
    customer_id: Optional[str] = None
    dispatched: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookIngestionService:

    def __init__(
        self,
        source,
        events,
        dispatcher,
        store_retries: int = 3,
        retry_base_seconds: float = 0.05,
        sleep_fn: Callable[[float], None] = time.sleep,
        time_fn: Callable[[], datetime] = _utcnow,
    ):
        self.source = source
        self.events = events
        self.dispatcher = dispatcher
        self.store_retries = max(0, store_retries)
        self.retry_base_seconds = retry_base_seconds
        self.sleep_fn = sleep_fn
        self.time_fn = time_fn

    def ingest(self, headers: Mapping[str, str], body: bytes) -> IngestResult:
        """
        Record one signed webhook delivery.

        Raises:
            SignatureVerificationError / MalformedPayloadError: rejected, nothing stored
            StoreUnavailableError: store still down after retries; the provider
                must redeliver (safe, deliveries are keyed by event id)
        """
        try:
            parsed = self.source.verify_and_parse(headers, body)
        except SignatureVerificationError as e:
            webhook_events_total.inc({"outcome": "invalid_signature"})
            log_event("warning", "webhook.signature_rejected", error_code=e.code, extra={"reason": e.message})
            raise
        except MalformedPayloadError as e:
            webhook_events_total.inc({"outcome": "malformed"})
            log_event("warning", "webhook.malformed_payload", error_code=e.code, extra={"reason": e.message})
            raise

        event = self._to_event(parsed)
        if not self._insert_with_retries(event):
            webhook_events_total.inc({"outcome": "duplicate"})
            log_event(
                "info",
                "webhook.duplicate",
                customer_id=event.customer_id,
                event_id=event.event_id,
                event_type=event.event_type.value,
            )
            return IngestResult(event_id=event.event_id, status=IngestStatus.DUPLICATE, customer_id=event.customer_id)

        if event.status == EventStatus.DISCARDED:
            webhook_events_total.inc({"outcome": "discarded"})
            log_event(
                "info",
                "webhook.discarded",
                customer_id=event.customer_id,
                event_id=event.event_id,
                event_type=event.provider_event_type,
                extra={"reason": event.last_error},
            )
            return IngestResult(event_id=event.event_id, status=IngestStatus.DISCARDED, customer_id=event.customer_id)

        dispatched = self.dispatcher.dispatch(event.customer_id)
        webhook_events_total.inc({"outcome": "accepted"})
        log_event(
            "info",
            "webhook.accepted",
            customer_id=event.customer_id,
            event_id=event.event_id,
            event_type=event.event_type.value,
            extra={"dispatched": dispatched},
        )
        return IngestResult(
            event_id=event.event_id,
            status=IngestStatus.ACCEPTED,
            customer_id=event.customer_id,
            dispatched=dispatched,
        )

    def _to_event(self, parsed: ParsedEvent) -> PaymentEvent:
        status = EventStatus.PENDING
        reason = None
        if parsed.event_type == EventType.UNKNOWN:
            status, reason = EventStatus.DISCARDED, f"unhandled event type: {parsed.provider_event_type}"
        elif not parsed.customer_id:
            status, reason = EventStatus.DISCARDED, "event carries no customer reference"
        now = self.time_fn()
        return PaymentEvent(
            event_id=parsed.event_id,
            event_type=parsed.event_type,
            provider_event_type=parsed.provider_event_type,
            customer_id=parsed.customer_id,
            occurred_at=parsed.occurred_at,
            received_at=now,
            payload=parsed.payload,
            payload_hash=parsed.payload_hash,
            status=status,
            last_error=reason,
            processed_at=now if status == EventStatus.DISCARDED else None,
        )

    def _insert_with_retries(self, event: PaymentEvent) -> bool:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.events.insert_if_absent(event)
            except StoreUnavailableError as e:
                if attempt > self.store_retries:
                    webhook_events_total.inc({"outcome": "store_unavailable"})
                    log_event(
                        "error",
                        "webhook.store_unavailable",
                        event_id=event.event_id,
                        event_type=event.event_type.value,
                        error_code=e.code,
                        extra={"attempts": attempt},
                    )
                    raise
                delay = compute_backoff(attempt, self.retry_base_seconds)
                logger.warning(
                    "[webhook] event store unavailable, retrying",
                    extra={"event_id": event.event_id, "attempt": attempt, "delay_seconds": delay},
                )
                self.sleep_fn(delay)
