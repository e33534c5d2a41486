"""
mealplanner_billing/models/usage.py

Usage counters and the gate's decision record.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UsageCounter(BaseModel):
    """Count of a metered action for one customer within one billing period."""
    model_config = ConfigDict(frozen=True)

    customer_id: str
    metric: str
    period_start: datetime
    period_end: datetime
    count: int = 0


class DecisionReason(str, Enum):
    OK = "ok"
    UNLIMITED = "unlimited"
    QUOTA_EXCEEDED = "quota_exceeded"
    STORE_UNAVAILABLE = "store_unavailable"


class UsageDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    customer_id: str
    metric: str
    current_usage: Optional[int]
    limit: Optional[int]  # None = unlimited
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    reason: DecisionReason = DecisionReason.OK
