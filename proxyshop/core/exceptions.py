from decimal import Decimal
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse

from proxyshop.core.money import as_float, quantize


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


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class ValidationError(AppError):
    """Bad input; raised before any side effect."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="VALIDATION_ERROR", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InsufficientBalanceError(AppError):
    def __init__(self, required: Decimal, current: Decimal, message: str = "Insufficient balance"):
        self.required = quantize(required)
        self.current = quantize(current)
        self.shortfall = quantize(self.required - self.current)
        super().__init__(
            message,
            code="INSUFFICIENT_BALANCE",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={
                "required": as_float(self.required),
                "current": as_float(self.current),
                "shortfall": as_float(self.shortfall),
            },
        )


class UpstreamError(AppError):
    """Provisioning API or payment gateway failure."""

    code_name = "UPSTREAM_ERROR"

    def __init__(self, message: str, upstream_status: int | None = None, upstream_message: str | None = None):
        self.upstream_status = upstream_status
        self.upstream_message = upstream_message
        super().__init__(
            message,
            code=self.code_name,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"upstream_status": upstream_status, "upstream_message": upstream_message},
        )


class UpstreamEmptyResponse(UpstreamError):
    code_name = "UPSTREAM_EMPTY_RESPONSE"


class LedgerConflictError(AppError):
    """Debit lost a balance race after resources were provisioned; needs an operator."""

    def __init__(self, message: str, order_id: str, case_id: str | None = None):
        self.order_id = order_id
        self.case_id = case_id
        super().__init__(
            message,
            code="LEDGER_CONFLICT",
            status_code=status.HTTP_409_CONFLICT,
            details={"order_id": order_id, "reconciliation_case_id": case_id},
        )


def _with_request_id(request: Request, body: dict[str, Any]) -> dict[str, Any]:
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return body


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    return ORJSONResponse(status_code=exc.status_code, content=_with_request_id(request, body))


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_with_request_id(request, body),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from proxyshop.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_with_request_id(request, body),
    )
