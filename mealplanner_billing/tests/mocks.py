"""Builders for provider events and signed webhook deliveries."""
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_ADMIN_KEY = "test-admin-key"

# Fixed billing period used by subscription fixtures: Oct 2026
PERIOD_START = 1790812800  # 2026-10-01T00:00:00Z
PERIOD_END = 1793491200  # 2026-11-01T00:00:00Z


def sign_payload(body: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header value for body."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{body.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def to_body(envelope: Dict[str, Any]) -> bytes:
    return json.dumps(envelope).encode("utf-8")


def signed_headers(body: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> Dict[str, str]:
    return {"Stripe-Signature": sign_payload(body, secret, timestamp), "Content-Type": "application/json"}


def subscription_event(
    event_id: str,
    customer_id: str,
    created: int,
    *,
    event_type: str = "customer.subscription.updated",
    tier: Optional[str] = "starter",
    status: str = "active",
    cancel_at_period_end: bool = False,
    period_start: Optional[int] = PERIOD_START,
    period_end: Optional[int] = PERIOD_END,
    price_id: Optional[str] = None,
    subscription_id: str = "sub_123",
) -> Dict[str, Any]:
    metadata = {"customer_id": customer_id}
    if tier is not None:
        metadata["tier"] = tier
    obj: Dict[str, Any] = {
        "id": subscription_id,
        "object": "subscription",
        "customer": "cus_provider_1",
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": metadata,
        "items": {"data": [{"price": {"id": price_id or "price_unmapped"}}]},
        "customer_email": "someone@example.com",
    }
    if period_start is not None:
        obj["current_period_start"] = period_start
    if period_end is not None:
        obj["current_period_end"] = period_end
    return {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}


def invoice_event(
    event_id: str,
    customer_id: str,
    created: int,
    *,
    event_type: str = "invoice.paid",
    period_start: Optional[int] = None,
    period_end: Optional[int] = None,
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "id": f"in_{event_id}",
        "object": "invoice",
        "customer": "cus_provider_1",
        "subscription_details": {"metadata": {"customer_id": customer_id}},
        "customer_name": "Jane Doe",
        "customer_email": "jane@example.com",
    }
    if period_start is not None and period_end is not None:
        obj["lines"] = {"data": [{"period": {"start": period_start, "end": period_end}}]}
    return {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}


def dispute_event(event_id: str, customer_id: str, created: int) -> Dict[str, Any]:
    obj = {"id": f"dp_{event_id}", "object": "dispute", "metadata": {"customer_id": customer_id}}
    return {"id": event_id, "type": "charge.dispute.created", "created": created, "data": {"object": obj}}


def checkout_event(
    event_id: str,
    trainer_id: str,
    created: int,
    *,
    tier: Optional[str] = "professional",
    subscription_id: Optional[str] = "sub_checkout",
) -> Dict[str, Any]:
    metadata = {"trainerId": trainer_id}
    if tier is not None:
        metadata["tier"] = tier
    obj: Dict[str, Any] = {
        "id": f"cs_{event_id}",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": "cus_provider_1",
        "subscription": subscription_id,
        "metadata": metadata,
        "customer_details": {"email": "trainer@example.com", "name": "Pat Trainer"},
    }
    return {"id": event_id, "type": "checkout.session.completed", "created": created, "data": {"object": obj}}


def payment_event(envelope: Dict[str, Any], received_at: Optional[datetime] = None):
    """Build the stored PaymentEvent for an envelope, as ingestion would."""
    from mealplanner_billing.features.billing.stripe_provider import StripeEventSource
    from mealplanner_billing.models.payment_event import PaymentEvent

    parsed = StripeEventSource(webhook_secret=TEST_WEBHOOK_SECRET).parse(to_body(envelope))
    return PaymentEvent(
        event_id=parsed.event_id,
        event_type=parsed.event_type,
        provider_event_type=parsed.provider_event_type,
        customer_id=parsed.customer_id,
        occurred_at=parsed.occurred_at,
        received_at=received_at or datetime.now(timezone.utc),
        payload=parsed.payload,
        payload_hash=parsed.payload_hash,
    )


def ts(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)
