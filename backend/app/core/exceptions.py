"""
Custom exceptions and error handlers for consistent error responses.

Provides the settlement error taxonomy, standardized error codes and
global exception handlers.
"""

import enum
import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    """Named failure kinds returned by the settlement engine."""
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    PRODUCT_UNAVAILABLE = "PRODUCT_UNAVAILABLE"
    ALREADY_APPROVED = "ALREADY_APPROVED"
    NOT_DELIVERED_YET = "NOT_DELIVERED_YET"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"  # Transient
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"  # Transient
    NOT_FOUND = "NOT_FOUND"
    INVALID_ORDER_STATE = "INVALID_ORDER_STATE"
    INVALID_REQUEST = "INVALID_REQUEST"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    INTENT_EXPIRED = "INTENT_EXPIRED"
    INVALID_WITHDRAWAL_STATE = "INVALID_WITHDRAWAL_STATE"
    WITHDRAWAL_PENDING = "WITHDRAWAL_PENDING"


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class SettlementError(AppException):
    """
    Base class for settlement failures.

    Raised inside an atomic unit to abort and roll it back; the engine
    turns it into a result value before it reaches a caller.
    """
    kind: ErrorKind = ErrorKind.INVALID_REQUEST
    transient: bool = False

    def __init__(self, message: str, error_code: str, status_code: int, details: Dict[str, Any] = None):
        super().__init__(message=message, error_code=error_code, status_code=status_code, details=details)


class InsufficientFundsError(SettlementError):
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, required: Any = None, available: Any = None):
        super().__init__(
            message="Insufficient wallet balance",
            error_code="ERR_WALLET_001",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"required": str(required), "available": str(available)}
        )


class InvalidAmountError(SettlementError):
    kind = ErrorKind.INVALID_REQUEST

    def __init__(self, amount: Any):
        super().__init__(
            message="Amount must be positive",
            error_code="ERR_WALLET_002",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"amount": str(amount)}
        )


class OutOfStockError(SettlementError):
    kind = ErrorKind.OUT_OF_STOCK

    def __init__(self, product_id: Any = None):
        super().__init__(
            message="Product is sold out",
            error_code="ERR_STOCK_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"product_id": product_id}
        )


class ProductUnavailableError(SettlementError):
    kind = ErrorKind.PRODUCT_UNAVAILABLE

    def __init__(self, product_id: Any = None, reason: str = "Product is not available"):
        super().__init__(
            message=reason,
            error_code="ERR_PRODUCT_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"product_id": product_id}
        )


class AlreadyApprovedError(SettlementError):
    kind = ErrorKind.ALREADY_APPROVED

    def __init__(self, order_id: Any = None):
        super().__init__(
            message="Order has already been approved",
            error_code="ERR_ESCROW_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"order_id": order_id}
        )


class NotDeliveredYetError(SettlementError):
    kind = ErrorKind.NOT_DELIVERED_YET

    def __init__(self, order_id: Any = None):
        super().__init__(
            message="Order has not been delivered yet",
            error_code="ERR_ESCROW_002",
            status_code=status.HTTP_409_CONFLICT,
            details={"order_id": order_id}
        )


class InvalidOrderStateError(SettlementError):
    kind = ErrorKind.INVALID_ORDER_STATE

    def __init__(self, order_id: Any = None, current: Any = None, action: str = ""):
        super().__init__(
            message=f"Cannot {action} an order in state {current}",
            error_code="ERR_ORDER_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"order_id": order_id, "status": str(current)}
        )


class NotAuthorizedError(SettlementError):
    kind = ErrorKind.NOT_AUTHORIZED

    def __init__(self, message: str = "Not authorized for this resource"):
        super().__init__(
            message=message,
            error_code="ERR_PERM_002",
            status_code=status.HTTP_403_FORBIDDEN
        )


class SettlementNotFoundError(SettlementError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_002",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class InvalidRequestError(SettlementError):
    kind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_REQUEST_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class IdempotencyConflictError(SettlementError):
    kind = ErrorKind.IDEMPOTENCY_CONFLICT

    def __init__(self, key: str):
        super().__init__(
            message="Idempotency key was already used for a different request",
            error_code="ERR_IDEMPOTENCY_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"idempotency_key": key}
        )


class IntentExpiredError(SettlementError):
    kind = ErrorKind.INTENT_EXPIRED

    def __init__(self, token: str = None):
        super().__init__(
            message="Purchase intent has expired",
            error_code="ERR_INTENT_001",
            status_code=status.HTTP_410_GONE
        )


class InvalidWithdrawalStateError(SettlementError):
    kind = ErrorKind.INVALID_WITHDRAWAL_STATE

    def __init__(self, withdrawal_id: Any = None, current: Any = None, action: str = ""):
        super().__init__(
            message=f"Cannot {action} a withdrawal in state {current}",
            error_code="ERR_WITHDRAWAL_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"withdrawal_id": withdrawal_id, "status": str(current)}
        )


class WithdrawalPendingError(SettlementError):
    kind = ErrorKind.WITHDRAWAL_PENDING

    def __init__(self, withdrawal_id: Any = None):
        super().__init__(
            message="A withdrawal request is already waiting for review",
            error_code="ERR_WITHDRAWAL_002",
            status_code=status.HTTP_409_CONFLICT,
            details={"withdrawal_id": withdrawal_id}
        )


class ConcurrentModificationError(SettlementError):
    """Lost an optimistic version check or a serialization conflict. Safe to retry."""
    kind = ErrorKind.CONCURRENT_MODIFICATION
    transient = True

    def __init__(self, message: str = "Concurrent modification, please retry"):
        super().__init__(
            message=message,
            error_code="ERR_CONCURRENCY_001",
            status_code=status.HTTP_409_CONFLICT
        )


class StorageUnavailableError(SettlementError):
    """Datastore unreachable or locked. Safe to retry with backoff."""
    kind = ErrorKind.STORAGE_UNAVAILABLE
    transient = True

    def __init__(self, message: str = "Storage temporarily unavailable, please retry"):
        super().__init__(
            message=message,
            error_code="ERR_STORAGE_001",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE
        )


# Maps a failed result back to the exception that describes it (HTTP layer).
ERROR_STATUS = {
    ErrorKind.INSUFFICIENT_FUNDS: (status.HTTP_402_PAYMENT_REQUIRED, "ERR_WALLET_001"),
    ErrorKind.OUT_OF_STOCK: (status.HTTP_409_CONFLICT, "ERR_STOCK_001"),
    ErrorKind.PRODUCT_UNAVAILABLE: (status.HTTP_409_CONFLICT, "ERR_PRODUCT_001"),
    ErrorKind.ALREADY_APPROVED: (status.HTTP_409_CONFLICT, "ERR_ESCROW_001"),
    ErrorKind.NOT_DELIVERED_YET: (status.HTTP_409_CONFLICT, "ERR_ESCROW_002"),
    ErrorKind.NOT_AUTHORIZED: (status.HTTP_403_FORBIDDEN, "ERR_PERM_002"),
    ErrorKind.CONCURRENT_MODIFICATION: (status.HTTP_409_CONFLICT, "ERR_CONCURRENCY_001"),
    ErrorKind.STORAGE_UNAVAILABLE: (status.HTTP_503_SERVICE_UNAVAILABLE, "ERR_STORAGE_001"),
    ErrorKind.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "ERR_NOT_FOUND_002"),
    ErrorKind.INVALID_ORDER_STATE: (status.HTTP_409_CONFLICT, "ERR_ORDER_001"),
    ErrorKind.INVALID_REQUEST: (status.HTTP_422_UNPROCESSABLE_ENTITY, "ERR_REQUEST_001"),
    ErrorKind.IDEMPOTENCY_CONFLICT: (status.HTTP_422_UNPROCESSABLE_ENTITY, "ERR_IDEMPOTENCY_001"),
    ErrorKind.INTENT_EXPIRED: (status.HTTP_410_GONE, "ERR_INTENT_001"),
    ErrorKind.INVALID_WITHDRAWAL_STATE: (status.HTTP_409_CONFLICT, "ERR_WITHDRAWAL_001"),
    ErrorKind.WITHDRAWAL_PENDING: (status.HTTP_409_CONFLICT, "ERR_WITHDRAWAL_002"),
}


class ResultError(AppException):
    """Raised by endpoints for a failed engine result."""

    def __init__(self, kind: ErrorKind, message: str, details: Dict[str, Any] = None):
        status_code, error_code = ERROR_STATUS[kind]
        details = dict(details or {})
        details.setdefault("kind", kind.value)
        super().__init__(message=message, error_code=error_code, status_code=status_code, details=details)


def raise_for_result(result: Any) -> Any:
    """Return a successful engine result, raise ResultError for a failed one."""
    if not result.ok:
        raise ResultError(result.error, result.message, details=result.details)
    return result


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        500: "ERR_INTERNAL_SERVER",
        503: "ERR_SERVICE_UNAVAILABLE"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        },
        headers=getattr(exc, "headers", None)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": jsonable_errors(exc)
            }
        }
    )


def jsonable_errors(exc: RequestValidationError):
    # ctx may hold exception instances (e.g. ValueError from a validator)
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(error)
    return errors


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
