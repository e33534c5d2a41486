"""
Stripe webhook event source.

Signature verification uses the stripe library; the envelope is parsed
locally so that only the fields the reconciler needs are trusted.
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import stripe

from mealplanner_billing.core.config import settings
from mealplanner_billing.core.errors import MalformedPayloadError, SignatureVerificationError
from mealplanner_billing.features.billing.provider import ParsedEvent
from mealplanner_billing.features.billing.redaction import redact_payload
from mealplanner_billing.models.payment_event import EventType


SIGNATURE_HEADER = "Stripe-Signature"

# Stripe event names and the generic names used by other senders
EVENT_TYPE_MAP = {
    "customer.subscription.created": EventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_DELETED,
    "customer.subscription.trial_will_end": EventType.SUBSCRIPTION_TRIAL_WILL_END,
    "invoice.paid": EventType.INVOICE_PAID,
    "invoice.payment_succeeded": EventType.INVOICE_PAID,
    "invoice.payment_failed": EventType.INVOICE_PAYMENT_FAILED,
    "charge.dispute.created": EventType.DISPUTE_CREATED,
    "subscription.created": EventType.SUBSCRIPTION_CREATED,
    "subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "subscription.deleted": EventType.SUBSCRIPTION_DELETED,
    "subscription.trial_will_end": EventType.SUBSCRIPTION_TRIAL_WILL_END,
    "dispute.created": EventType.DISPUTE_CREATED,
    "checkout.session.completed": EventType.CHECKOUT_COMPLETED,
    "checkout.completed": EventType.CHECKOUT_COMPLETED,
}

# Metadata keys carrying our customer id; trainerId is what checkout sessions are created with
CUSTOMER_METADATA_KEYS = ("customer_id", "trainerId")


def map_event_type(provider_event_type: str) -> EventType:
    return EVENT_TYPE_MAP.get(provider_event_type, EventType.UNKNOWN)


def _metadata_customer(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        return None
    for key in CUSTOMER_METADATA_KEYS:
        if metadata.get(key):
            return str(metadata[key])
    return None


def resolve_customer_id(obj: Dict[str, Any]) -> Optional[str]:
    """
    Internal customer id for a provider object.

    Order: object metadata (customer_id, then trainerId), then the parent
    subscription's metadata (invoices carry it under subscription_details),
    then the provider customer reference.
    """
    customer_id = _metadata_customer(obj)
    if customer_id:
        return customer_id
    details = obj.get("subscription_details")
    if isinstance(details, dict):
        customer_id = _metadata_customer(details)
        if customer_id:
            return customer_id
    customer = obj.get("customer")
    if isinstance(customer, str) and customer:
        return customer
    if isinstance(customer, dict) and customer.get("id"):
        return str(customer["id"])
    return None


def _parse_created(value: Any) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedPayloadError("Event 'created' must be a unix timestamp")
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise MalformedPayloadError(f"Event 'created' out of range: {e}") from e


class StripeEventSource:
    """Verifies Stripe-Signature headers and parses event envelopes."""

    def __init__(self, webhook_secret: Optional[str] = None, tolerance_seconds: Optional[int] = None):
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance_seconds = (
            tolerance_seconds if tolerance_seconds is not None else settings.WEBHOOK_TOLERANCE_SECONDS
        )

    def verify_and_parse(self, headers: Mapping[str, str], body: bytes) -> ParsedEvent:
        self._verify(headers, body)
        return self.parse(body)

    def _verify(self, headers: Mapping[str, str], body: bytes) -> None:
        if not self.webhook_secret:
            # Refuse rather than accept unsigned events
            raise SignatureVerificationError("Webhook secret not configured")

        sig_header = headers.get(SIGNATURE_HEADER) or headers.get(SIGNATURE_HEADER.lower())
        if not sig_header:
            raise SignatureVerificationError("Missing Stripe-Signature header")

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPayloadError("Webhook body is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret, self.tolerance_seconds)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError(f"Invalid signature: {e}") from e

    def parse(self, body: bytes) -> ParsedEvent:
        """Parse an already-verified body into a ParsedEvent."""
        try:
            envelope = json.loads(body)
        except ValueError as e:
            raise MalformedPayloadError(f"Invalid payload: {e}") from e
        if not isinstance(envelope, dict):
            raise MalformedPayloadError("Event envelope must be a JSON object")

        event_id = envelope.get("id")
        provider_event_type = envelope.get("type")
        if not isinstance(event_id, str) or not event_id:
            raise MalformedPayloadError("Event is missing 'id'")
        if not isinstance(provider_event_type, str) or not provider_event_type:
            raise MalformedPayloadError("Event is missing 'type'")
        occurred_at = _parse_created(envelope.get("created"))

        data = envelope.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise MalformedPayloadError("Event is missing 'data.object'")

        return ParsedEvent(
            event_id=event_id,
            event_type=map_event_type(provider_event_type),
            provider_event_type=provider_event_type,
            customer_id=resolve_customer_id(obj),
            occurred_at=occurred_at,
            payload=redact_payload(envelope),
            payload_hash=hashlib.sha256(body).hexdigest(),
        )
