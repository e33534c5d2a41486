"""
mealplanner_billing/models/subscription.py

Durable per-customer subscription record.

At most one row per customer_id. Only the event reconciler mutates it, and
every write carries the optimistic `version` token read beforehand.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


# Statuses that grant the full tier policy
ENTITLED_STATUSES = frozenset({SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE})


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    customer_id: str
    provider_subscription_id: Optional[str] = None
    tier: Tier
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_applied_event_at: Optional[datetime] = None
    last_applied_event_id: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
