"""
Base exception classes for application-wide error handling.

Every domain error carries a human-readable message, a machine-readable
error code, and an optional details dict so API layers can render a
consistent error body.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input or business rule validation failures
    ├── NotFoundError - Resource not found
    ├── ConflictError - State conflicts (invalid transitions, races)
    └── ExternalServiceError - Third-party service failures

Usage:
    from core.exceptions import NotFoundError

    raise NotFoundError(
        f"Contract {contract_id} not found",
        error_code="CONTRACT_NOT_FOUND",
        details={"contract_id": str(contract_id)},
    )

    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=400)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context
        http_status: Suggested HTTP status for API responses
    """

    default_error_code: str = "APPLICATION_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Example:
            {
                "error": "Contract not found",
                "error_code": "CONTRACT_NOT_FOUND",
                "details": {"contract_id": "..."}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """Raised when input or a business rule fails validation."""

    default_error_code: str = "VALIDATION_ERROR"
    http_status: int = 400


class NotFoundError(BaseApplicationError):
    """
    Raised when a requested resource is not found.

    Use for single-resource lookups where existence is expected.
    """

    default_error_code: str = "NOT_FOUND"
    http_status: int = 404


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - Invalid state transitions
    - Concurrent modification conflicts
    - Attempts to edit immutable records

    HTTP 409 Conflict is the appropriate status for these errors.
    """

    default_error_code: str = "CONFLICT"
    http_status: int = 409


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Log the original error for debugging but don't expose internal
    details to clients in production.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
    http_status: int = 502
