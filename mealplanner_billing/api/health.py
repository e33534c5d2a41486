"""
Health endpoints.

- /healthz: liveness, no dependencies
- /readyz: database connectivity and billing tables (SQL backend only)
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from mealplanner_billing.api.deps import get_services
from mealplanner_billing.container import Container
from mealplanner_billing.core.database import check_connection, get_engine

logger = logging.getLogger("mealplanner_billing")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "payment_events",
    "subscriptions",
    "usage_counters",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(services: Container = Depends(get_services)):
    """Readiness check: DB connectivity + required tables."""
    if services.backend != "sql":
        return {"status": "ok", "backend": services.backend}

    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok", "backend": services.backend}
    except Exception as e:
        logger.error(f"[readyz] table check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "table check failed"})
