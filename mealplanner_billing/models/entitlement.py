"""
mealplanner_billing/models/entitlement.py

Derived entitlement snapshot.

Always reproducible from the subscription row plus the static tier policy
table. Cached copies are disposable.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict

from mealplanner_billing.models.subscription import SubscriptionStatus, Tier


class EntitlementSnapshot(BaseModel):
    """
    Resolved capabilities for one customer.

    Limits map metric -> ceiling; a ceiling of None means unbounded.
    """
    model_config = ConfigDict(frozen=True)

    customer_id: str
    tier: Optional[Tier]
    status: Optional[SubscriptionStatus]
    restricted: bool
    limits: Dict[str, Optional[int]]
    feature_flags: Dict[str, bool]
    export_formats: Tuple[str, ...] = ()
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    subscription_version: Optional[int] = None
    computed_at: datetime
    ttl_seconds: int

    @property
    def expires_at(self) -> datetime:
        return self.computed_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def limit_for(self, metric: str) -> Optional[int]:
        return self.limits[metric]


class FeatureAccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None
    upgrade_required: bool = False
    current_tier: Optional[Tier] = None
