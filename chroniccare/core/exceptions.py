"""Custom application exceptions."""

from typing import Any
from uuid import UUID


class AppException(Exception):
    """Base application exception."""

    code = "APP_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """Initialize exception with message, status code and error details."""
        self.message = message
        self.status_code = status_code
        self.code = code or self.code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    code = "NOT_FOUND"

    def __init__(
        self,
        message: str = "Resource not found",
        resource: str | None = None,
        resource_id: UUID | str | None = None,
    ):
        """Initialize with 404 status code."""
        details: dict[str, Any] = {}
        if resource:
            details["resource"] = resource
        if resource_id is not None:
            details["id"] = str(resource_id)
        super().__init__(message, status_code=404, details=details)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized"):
        """Initialize with 401 status code."""
        super().__init__(message, status_code=401)


class ConflictException(AppException):
    """Double booking or duplicate key."""

    code = "APPOINTMENT_CONFLICT"

    def __init__(
        self,
        message: str = "Conflict",
        conflicting_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ):
        """Initialize with 409 status code and the colliding entity id."""
        merged = dict(details or {})
        if conflicting_id is not None:
            merged["conflicting_appointment_id"] = str(conflicting_id)
        super().__init__(message, status_code=409, details=merged)
        self.conflicting_id = conflicting_id


class ValidationException(AppException):
    """Validation error exception."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "Validation error",
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """Initialize with 422 status code."""
        merged = dict(details or {})
        if field:
            merged["field"] = field
        super().__init__(message, status_code=422, details=merged)


class InvalidStatusTransitionException(ValidationException):
    """Attempted appointment status change is not in the transition table."""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, attempted: str, allowed: list[str]):
        """Initialize with the rejected transition."""
        super().__init__(
            f"Cannot transition appointment from '{current}' to '{attempted}'",
            field="status",
            details={"from": current, "to": attempted, "allowed": allowed},
        )
