"""Domain error hierarchy and the HTTP boundary that renders it.

Core code raises StoreError subclasses tagged with an ErrorKind; only
add_exception_handlers() knows about status codes.
"""

import enum
from typing import Any, Optional

from fastapi import FastAPI, Request
from starlette.responses import JSONResponse

from libs.common.config import get_settings
from libs.common.logging import get_logger, get_request_id

logger = get_logger(__name__)


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UPSTREAM = "upstream"
    INTERNAL = "internal"


class StoreError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.details = details or {}


class ValidationError(StoreError):
    kind = ErrorKind.VALIDATION
    code = "VALIDATION_ERROR"


class EmptyCartError(ValidationError):
    code = "EMPTY_CART"

    def __init__(self, user_id=None):
        super().__init__("Cart is empty", details={"user_id": str(user_id)} if user_id else None)


class InsufficientStockError(StoreError):
    kind = ErrorKind.CONFLICT
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}",
            details={
                "product_id": str(product_id),
                "requested": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidTransitionError(StoreError):
    kind = ErrorKind.CONFLICT
    code = "INVALID_TRANSITION"

    def __init__(self, current, attempted):
        current = getattr(current, "value", current)
        attempted = getattr(attempted, "value", attempted)
        super().__init__(
            f"Cannot move order from {current} to {attempted}",
            details={"current": current, "attempted": attempted},
        )
        self.current = current
        self.attempted = attempted


class NotFoundError(StoreError):
    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"


class PermissionDeniedError(StoreError):
    kind = ErrorKind.AUTHORIZATION
    code = "FORBIDDEN"


class NoPayoutAccountError(ValidationError):
    code = "NO_PAYOUT_ACCOUNT"

    def __init__(self, vendor_id):
        super().__init__(
            f"Vendor {vendor_id} has no payout account",
            details={"vendor_id": str(vendor_id)},
        )


class PaymentNotSucceededError(StoreError):
    kind = ErrorKind.CONFLICT
    code = "PAYMENT_NOT_SUCCEEDED"

    def __init__(self, intent_id: str, status: str):
        super().__init__(
            f"Payment {intent_id} has not succeeded (status: {status})",
            details={"intent_id": intent_id, "status": status},
        )
        self.status = status


class PaymentGatewayError(StoreError):
    kind = ErrorKind.UPSTREAM
    code = "PAYMENT_GATEWAY_ERROR"


class InvalidSignatureError(ValidationError):
    code = "INVALID_SIGNATURE"


_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UPSTREAM: 502,
    ErrorKind.INTERNAL: 500,
}


def status_for(exc: StoreError) -> int:
    if exc.kind == ErrorKind.UPSTREAM and exc.retryable:
        return 503
    return _STATUS_BY_KIND.get(exc.kind, 500)


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(
            f"{exc.code} on {request.method} {request.url.path}: {exc.message}",
            extra={"extra_fields": exc.details},
        )
    else:
        logger.info(f"{exc.code}: {exc.message}")

    content: dict[str, Any] = {"detail": exc.message, "code": exc.code}
    if exc.details:
        content["details"] = exc.details
    if exc.kind == ErrorKind.INTERNAL and get_settings().ENVIRONMENT == "production":
        content = {"detail": "Internal server error", "code": exc.code}

    headers = {"Retry-After": "5"} if exc.retryable else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    detail = "Internal server error"
    if get_settings().ENVIRONMENT != "production":
        detail = f"{type(exc).__name__}: {exc}"
    return JSONResponse(
        status_code=500,
        content={"detail": detail, "code": "INTERNAL_ERROR", "request_id": get_request_id()},
    )


def add_exception_handlers(app: FastAPI) -> None:
    """Register consistent JSON error responses on an app."""
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
