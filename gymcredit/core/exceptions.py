import functools
from decimal import Decimal
from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from pymongo.errors import PyMongoError


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    """Missing entity, or one that belongs to another tenant."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InternalError(AppError):
    """Persistence or contention failure. The only kind callers may retry."""

    def __init__(self, message: str = "Internal error", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="INTERNAL_ERROR",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"retryable": True, **(details or {})},
        )


def persistence_guard(func):
    """Service-boundary decorator: datastore failures leave as InternalError, whoever the caller is."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PyMongoError as e:
            from gymcredit.core.logging import get_logger
            get_logger(func.__module__).error(
                "persistence_error", operation=func.__name__, error=str(e), error_type=type(e).__name__
            )
            raise InternalError("Datastore unavailable, retry the request", details={"operation": func.__name__}) from e

    return wrapper


# Ledger / redemption domain errors


class InsufficientBalanceError(AppError):
    def __init__(self, available: Decimal, requested: Decimal):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient store credit. Available: {available:.2f}, Requested: {requested:.2f}",
            code="INSUFFICIENT_BALANCE",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"available": str(available), "requested": str(requested)},
        )


class InsufficientCreditsError(AppError):
    def __init__(self, pass_id: str, remaining: int, requested: int):
        self.pass_id = pass_id
        super().__init__(
            f"Insufficient pack credits: {remaining} remaining, {requested} required",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"pass_id": pass_id, "remaining": remaining, "requested": requested},
        )


class PassNotActiveError(AppError):
    def __init__(self, pass_id: str, pass_status: str):
        self.pass_id = pass_id
        super().__init__(
            f"Pass is {pass_status.lower()}",
            code="PASS_NOT_ACTIVE",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"pass_id": pass_id, "status": pass_status},
        )


class PassExpiredError(AppError):
    def __init__(self, pass_id: str):
        self.pass_id = pass_id
        super().__init__(
            "Pass has expired",
            code="PASS_EXPIRED",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"pass_id": pass_id},
        )


class AccessDeniedError(AppError):
    def __init__(self, message: str = "No funding source available for this access", details: dict[str, Any] | None = None):
        super().__init__(message, code="ACCESS_DENIED", status_code=status.HTTP_403_FORBIDDEN, details=details)


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def persistence_exception_handler(request: Request, exc: PyMongoError) -> ORJSONResponse:
    from gymcredit.core.logging import get_logger
    get_logger(__name__).error("persistence_error", error=str(exc), error_type=type(exc).__name__)
    return error_response(request, InternalError("Datastore unavailable, retry the request"))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": jsonable_encoder(exc.errors())},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from gymcredit.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
