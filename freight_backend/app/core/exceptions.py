"""
Custom exceptions and error handlers for consistent error responses.

Every dispatch failure is an AppException subclass carrying a stable error
code; the handlers below render them as ``{error_code, message, details}``.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationFailedError(AppException):
    """Malformed input, rejected before any state is touched."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class CapacityConflictError(AppException):
    """
    Claim rejected because the broadcast no longer has the requested capacity.

    Retryable by the caller with a smaller count; ``trucks_remaining`` is
    always reported so no second round trip is needed.
    """

    def __init__(self, broadcast_id: int, requested: int, trucks_remaining: int):
        super().__init__(
            message=f"Requested {requested} trucks but only {trucks_remaining} remain",
            error_code="ERR_CAPACITY_001",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "broadcast_id": broadcast_id,
                "requested": requested,
                "trucks_remaining": trucks_remaining,
            }
        )
        self.trucks_remaining = trucks_remaining


class ExpiredOrTerminalError(AppException):
    """Operation attempted on an entity that is no longer active. Not retryable."""

    def __init__(self, resource: str, resource_id: Any, current_status: str, details: Dict[str, Any] = None):
        super().__init__(
            message=f"{resource} {resource_id} is no longer active (status: {current_status})",
            error_code="ERR_STATE_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource": resource, "id": resource_id, "status": current_status, **(details or {})}
        )
        self.current_status = current_status


class InvalidTransitionError(AppException):
    """State change not present in the entity's transition table."""

    def __init__(self, resource: str, resource_id: Any, current: str, target: str):
        super().__init__(
            message=f"Cannot move {resource} {resource_id} from {current} to {target}",
            error_code="ERR_STATE_002",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource": resource, "id": resource_id, "current": current, "target": target}
        )


class AlreadyBoundError(AppException):
    """Driver binding attempted on an assignment that is no longer bindable."""

    def __init__(self, assignment_id: int, current_status: str, driver_id: Any = None):
        super().__init__(
            message=f"Assignment {assignment_id} is already bound or no longer pending",
            error_code="ERR_ASSIGN_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"assignment_id": assignment_id, "status": current_status, "driver_id": driver_id}
        )


class AlreadyResolvedError(AppException):
    """A response that conflicts with the assignment's recorded resolution."""

    def __init__(self, assignment_id: int, current_status: str):
        super().__init__(
            message=f"Assignment {assignment_id} was already resolved as {current_status}",
            error_code="ERR_ASSIGN_002",
            status_code=status.HTTP_409_CONFLICT,
            details={"assignment_id": assignment_id, "status": current_status}
        )
        self.current_status = current_status


class DeliveryFailureError(AppException):
    """Every notification channel failed for one delivery."""

    def __init__(self, target_id: int, attempts: int, last_error: str = None):
        super().__init__(
            message=f"Notification to {target_id} failed after {attempts} attempts",
            error_code="ERR_DELIVERY_001",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"target_id": target_id, "attempts": attempts, "last_error": last_error}
        )


class InvariantViolationError(AppException):
    """
    Broadcast counter corruption.

    The broadcast is quarantined when this is raised and stays frozen until an
    operator reconciles it.
    """

    def __init__(self, broadcast_id: int, reason: str):
        super().__init__(
            message=f"Integrity violation on broadcast {broadcast_id}: {reason}",
            error_code="ERR_INTEGRITY_001",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"broadcast_id": broadcast_id, "reason": reason}
        )
        self.broadcast_id = broadcast_id
        self.reason = reason


class BroadcastQuarantinedError(AppException):
    """Mutation refused on a broadcast awaiting manual reconciliation."""

    def __init__(self, broadcast_id: int, reason: str = None):
        super().__init__(
            message=f"Broadcast {broadcast_id} is quarantined pending reconciliation",
            error_code="ERR_INTEGRITY_002",
            status_code=status.HTTP_423_LOCKED,
            details={"broadcast_id": broadcast_id, "reason": reason}
        )


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
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
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
                "errors": jsonable_encoder(exc.errors())
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
