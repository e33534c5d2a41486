"""Error normalization and handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from mealplanner_billing.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def details(self) -> Dict[str, Any]:
        """Extra fields merged into the error envelope."""
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class SignatureVerificationError(ValidationError):
    """Webhook signature missing, malformed, expired or wrong."""
    code = "invalid_signature"


class MalformedPayloadError(ValidationError):
    """Webhook body is not a parseable provider event."""
    code = "malformed_payload"


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class VersionConflictError(ConflictError):
    """Optimistic concurrency token no longer matches the stored row."""
    code = "version_conflict"

    def __init__(self, customer_id: str, expected_version: Optional[int] = None):
        super().__init__(
            f"Subscription for {customer_id} changed concurrently (expected version {expected_version})"
        )
        self.customer_id = customer_id
        self.expected_version = expected_version


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403

    def __init__(self, message: str, *, metric: Optional[str] = None, current_usage: Optional[int] = None, limit: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.metric = metric
        self.current_usage = current_usage
        self.limit = limit

    def details(self) -> Dict[str, Any]:
        return {"metric": self.metric, "current_usage": self.current_usage, "limit": self.limit}


class StoreUnavailableError(AppError):
    """A durable store could not be reached; callers may retry."""
    code = "store_unavailable"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error.update(details)
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details())
    logger = logging.getLogger("mealplanner_billing")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("mealplanner_billing")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("mealplanner_billing")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
