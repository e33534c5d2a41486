"""
Admin authentication for billing operations.

Operator endpoints (failed-event inspection, requeue) are guarded by a shared
X-Admin-Key. Every admin action is logged with a hashed actor identity; the key
itself is never logged.
"""
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from mealplanner_billing.core.config import settings
from mealplanner_billing.core.errors import PermissionError


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "key:<hash>"
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> Optional[str]:
    """Get admin API key.
    Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_API_KEY.
    """
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_API_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """
    Verify X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """FastAPI dependency: raise 403 unless a valid admin key is presented."""
    actor = verify_admin_key(request)
    if actor is None:
        raise PermissionError("Admin access required")
    return actor
