"""Error normalization and handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from promo_engine.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    reason: Optional[str] = None
    retry_after: Optional[int] = None

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        if reason:
            self.reason = reason
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


# Input rejections: reported synchronously, never retried automatically.

class CouponRejectedError(AppError):
    """The requested coupon cannot be honored for this plan at this moment."""
    code = "coupon_rejected"
    status_code = 400

    def __init__(self, reason: str, *, message: Optional[str] = None, request_id: Optional[str] = None):
        super().__init__(message or f"Coupon rejected: {reason}", reason=reason, request_id=request_id)


class PlanUnavailableError(AppError):
    code = "plan_unavailable"
    status_code = 400
    reason = "plan_unavailable"


# Transient: the caller retries with the same attempt id.

class GatewayUnavailableError(AppError):
    code = "gateway_unavailable"
    status_code = 503
    reason = "gateway_unavailable"
    retry_after = 5


class PurchaseInProgressError(AppError):
    """Another purchase for the same user holds the lease."""
    code = "purchase_in_progress"
    status_code = 503
    reason = "purchase_in_progress"
    retry_after = 1


# Consistency: the gateway succeeded but local bookkeeping did not.

class BookkeepingError(AppError):
    code = "bookkeeping_failed"
    status_code = 409
    reason = "bookkeeping_failed"


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, reason: Optional[str] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    payload = {"error": error, "detail": message}
    if reason:
        error["reason"] = reason
        payload["reason"] = reason
    return payload


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.reason)
    logger = logging.getLogger("promo_engine")
    log_level = logging.ERROR if exc.status_code >= 500 or isinstance(exc, BookkeepingError) else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    if exc.retry_after:
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("promo_engine")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("promo_engine")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
