from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


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


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InsufficientBalanceError(AppError):
    def __init__(self, balance: int, amount: int):
        super().__init__(
            "Insufficient token balance",
            code="INSUFFICIENT_BALANCE",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"balance": balance, "amount": amount},
        )


class PipelineStageFailure(AppError):
    """A pipeline stage failed or timed out; nothing was charged or persisted."""

    def __init__(self, stage: str, reason: str, accrued_cost: int, message: str = ""):
        self.stage = stage
        self.reason = reason
        self.accrued_cost = accrued_cost
        super().__init__(
            message or f"Stage '{stage}' failed: {reason}",
            code="PIPELINE_STAGE_FAILED",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"stage": stage, "reason": reason, "accrued_cost": accrued_cost},
        )


class StorageFailure(AppError):
    def __init__(self, message: str = "Asset storage unavailable"):
        super().__init__(
            message,
            code="STORAGE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"retryable": True},
        )


class LedgerUnavailable(AppError):
    def __init__(self, message: str = "Ledger unavailable"):
        super().__init__(message, code="LEDGER_UNAVAILABLE", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class BillingInconsistency(AppError):
    """Artifact was stored but the charge could not be recorded."""

    def __init__(self, artifact_id: str, action_id: str, cost: int):
        self.artifact_id = artifact_id
        self.action_id = action_id
        self.cost = cost
        super().__init__(
            "Result saved but billing is pending; it will be reconciled",
            code="BILLING_PENDING",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"artifact_id": artifact_id, "action_id": action_id, "cost": cost, "retryable": False},
        )


class RequestCancelled(AppError):
    def __init__(self, message: str = "Client disconnected before completion"):
        super().__init__(message, code="REQUEST_CANCELLED", status_code=499)


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
    from visionstudio.core.logging import get_logger
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
