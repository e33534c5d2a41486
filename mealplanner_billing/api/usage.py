"""
Usage API.

Endpoints:
- POST /api/usage/check: Atomic check-and-increment for one metered action
- GET  /api/usage/{customer_id}: Current-period usage per metric

A denial is a normal 200 response with allowed=false; only routes guarded by
the metered() dependency turn it into a 403.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from mealplanner_billing.api.deps import get_services
from mealplanner_billing.container import Container


router = APIRouter(prefix="/usage", tags=["usage"])


class UsageCheckRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    metric: str = Field(..., min_length=1)


class UsageCheckResponse(BaseModel):
    allowed: bool
    current_usage: Optional[int]
    limit: Optional[int]
    metric: str
    reason: str
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@router.post("/check", response_model=UsageCheckResponse)
def check_and_increment(req: UsageCheckRequest, services: Container = Depends(get_services)):
    decision = services.usage_gate.check_and_increment(req.customer_id, req.metric)
    return UsageCheckResponse(
        allowed=decision.allowed,
        current_usage=decision.current_usage,
        limit=decision.limit,
        metric=decision.metric,
        reason=decision.reason.value,
        period_start=decision.period_start,
        period_end=decision.period_end,
    )


@router.get("/{customer_id}")
def get_usage(customer_id: str, services: Container = Depends(get_services)):
    return services.usage_gate.get_usage(customer_id)
