"""
Payment event source protocol.

Defines the interface for signed webhook sources (Stripe, etc.) so the
ingestion pipeline never depends on one provider's envelope format.
"""
from typing import Protocol, Dict, Any, Mapping, Optional
from dataclasses import dataclass, field
from datetime import datetime

from mealplanner_billing.models.payment_event import EventType


@dataclass(frozen=True)
class ParsedEvent:
    """A verified, parsed provider event (payload already redacted)."""
    event_id: str
    event_type: EventType
    provider_event_type: str
    customer_id: Optional[str]
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    payload_hash: Optional[str] = None


class PaymentEventSource(Protocol):
    """
    Protocol for payment event sources.

    Implementations must:
    - Verify the webhook signature against the shared secret
    - Parse the envelope into a ParsedEvent
    - Redact personal data before returning the payload
    """

    def verify_and_parse(self, headers: Mapping[str, str], body: bytes) -> ParsedEvent:
        """
        Verify webhook signature and parse the event.

        Args:
            headers: HTTP headers (must include the signature header)
            body: Raw request body, exactly as received

        Returns:
            ParsedEvent

        Raises:
            SignatureVerificationError: signature missing, expired or invalid
            MalformedPayloadError: body is not a parseable provider event
        """
        ...
