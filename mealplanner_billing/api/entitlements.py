"""
Entitlements API.

Endpoints:
- GET /api/entitlements/{customer_id}: Resolved entitlement snapshot
- GET /api/entitlements/{customer_id}/features/{feature}: Feature access check
- GET /api/entitlements/{customer_id}/exports/{fmt}: Export format check
"""
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from mealplanner_billing.api.deps import get_services
from mealplanner_billing.container import Container


router = APIRouter(prefix="/entitlements", tags=["entitlements"])


class EntitlementResponse(BaseModel):
    customer_id: str
    tier: Optional[str]
    status: Optional[str]
    restricted: bool
    limits: Dict[str, Optional[int]]
    feature_flags: Dict[str, bool]
    export_formats: List[str]
    computed_at: datetime
    ttl_seconds: int


class FeatureAccessResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    upgrade_required: bool = False
    current_tier: Optional[str] = None


@router.get("/{customer_id}", response_model=EntitlementResponse)
def get_entitlements(customer_id: str, services: Container = Depends(get_services)):
    snapshot = services.resolver.get_entitlements(customer_id)
    return EntitlementResponse(
        customer_id=snapshot.customer_id,
        tier=snapshot.tier.value if snapshot.tier else None,
        status=snapshot.status.value if snapshot.status else None,
        restricted=snapshot.restricted,
        limits=snapshot.limits,
        feature_flags=snapshot.feature_flags,
        export_formats=list(snapshot.export_formats),
        computed_at=snapshot.computed_at,
        ttl_seconds=snapshot.ttl_seconds,
    )


def _access_response(access) -> FeatureAccessResponse:
    return FeatureAccessResponse(
        allowed=access.allowed,
        reason=access.reason,
        upgrade_required=access.upgrade_required,
        current_tier=access.current_tier.value if access.current_tier else None,
    )


@router.get("/{customer_id}/features/{feature}", response_model=FeatureAccessResponse)
def check_feature(customer_id: str, feature: str, services: Container = Depends(get_services)):
    return _access_response(services.resolver.check_feature_access(customer_id, feature))


@router.get("/{customer_id}/exports/{fmt}", response_model=FeatureAccessResponse)
def check_export(customer_id: str, fmt: str, services: Container = Depends(get_services)):
    return _access_response(services.resolver.check_export_format(customer_id, fmt))
