"""
Billing webhook API.

Endpoints:
- POST /api/billing/webhook: Receive signed payment-provider events
"""
from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from mealplanner_billing.api.deps import get_services
from mealplanner_billing.container import Container


router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook")
async def handle_webhook(request: Request, services: Container = Depends(get_services)):
    """
    Receive a payment-provider webhook.

    Verifies the signature, records the event idempotently and hands it to
    reconciliation. Acknowledges without waiting for the state change.

    Returns:
        {"received": true, "event_id": str, "status": "accepted" | "duplicate" | "discarded"}

    Errors:
        400: Invalid signature or malformed payload (nothing stored)
        503: Event store unavailable (provider should redeliver)
    """
    # Raw body: the signature covers the exact bytes
    body = await request.body()
    # Store writes, retry backoff and inline reconciliation all block
    result = await run_in_threadpool(services.ingestion.ingest, request.headers, body)
    return {"received": True, "event_id": result.event_id, "status": result.status.value}
