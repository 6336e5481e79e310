"""Dispatch error taxonomy and its HTTP mapping."""
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.logging import logger


class DispatchError(Exception):
    """Base exception for dispatch business rules."""

    status_code = 500
    error_code = "DISPATCH_ERROR"

    def __init__(self, message: str, error_code: str | None = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


class ValidationError(DispatchError):
    """Malformed or missing input. Caller must fix the request."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class DuplicateTruckError(ValidationError):
    """An active truck already uses the requested truck number."""

    error_code = "DUPLICATE_TRUCK"


class NotFoundError(DispatchError):
    status_code = 404
    error_code = "NOT_FOUND"


class SlotConflictError(DispatchError):
    """Truck already booked for the same date and slot."""

    status_code = 409
    error_code = "SLOT_CONFLICT"


class InvalidTransitionError(DispatchError):
    status_code = 409
    error_code = "INVALID_TRANSITION"


class DependencyFailure(DispatchError):
    """An external collaborator (SMS, email, maps, inventory) failed."""

    status_code = 502
    error_code = "DEPENDENCY_FAILURE"


async def _dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Dispatch request failed", path=request.url.path, error=exc.message, error_code=exc.error_code)
    else:
        logger.warning("Dispatch request rejected", path=request.url.path, error=exc.message, error_code=exc.error_code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "error_code": exc.error_code},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DispatchError, _dispatch_error_handler)
