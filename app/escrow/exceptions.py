"""
Escrow-specific exceptions.

Exception Hierarchy:
    EscrowError (base for escrow domain)
    ├── EscrowValidationError - Invalid input or business rule violation
    │   └── FeeOverrunError - Computed net amount would be negative
    ├── UnresolvedReferenceError - Notification cannot be mapped to a contract
    ├── WebhookSignatureError - Notification failed the authenticity check
    └── ProviderError - Base for payment provider failures
        ├── ProviderTransientError - Timeout, connection, 429, 5xx (retry)
        ├── ProviderUnavailableError - Transient failure after retries ran out
        └── ProviderRejectedError - Business rejection (do not retry)

    ContractNotFoundError - Contract lookup failures (inherits NotFoundError)
    └── ReconciliationContractNotFoundError - Notification references a
        contract that does not exist (yet)

    InvalidStateError - Operation not valid for current status (ConflictError)
    LockAcquisitionError - Distributed lock busy (ConflictError)
    ImmutableRecordError - Attempt to edit a frozen record (ConflictError)

Usage:
    from escrow.exceptions import InvalidStateError

    raise InvalidStateError(
        "Cannot release contract in 'created' state",
        details={"contract_id": str(contract.id), "current_status": "created"},
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Escrow Domain Exceptions
# =============================================================================


class EscrowError(BaseApplicationError):
    """Base exception for all escrow operations."""

    default_error_code: str = "ESCROW_ERROR"


class EscrowValidationError(EscrowError):
    """
    Raised when escrow input validation fails.

    Example:
        if gross_amount_cents <= 0:
            raise EscrowValidationError(
                "Gross amount must be positive",
                details={"gross_amount_cents": gross_amount_cents},
            )
    """

    default_error_code: str = "ESCROW_VALIDATION_ERROR"


class FeeOverrunError(EscrowValidationError):
    """
    Raised when fees would exceed the gross amount.

    The caller must not proceed with the release.
    """

    default_error_code: str = "FEE_OVERRUN"
    http_status: int = 422


class UnresolvedReferenceError(EscrowError):
    """
    Raised when a provider notification carries no usable reference.

    Non-fatal: the raw notification is stored for manual review.
    """

    default_error_code: str = "UNRESOLVED_REFERENCE"

    def __init__(
        self,
        message: str,
        notification_id: Any = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if notification_id is not None:
            details["notification_id"] = str(notification_id)
        super().__init__(message, details=details)
        self.notification_id = notification_id


class WebhookSignatureError(EscrowError):
    """Raised when a webhook request fails signature verification."""

    default_error_code: str = "INVALID_SIGNATURE"


class ContractNotFoundError(NotFoundError):
    """Raised when a contract cannot be found."""

    default_error_code: str = "CONTRACT_NOT_FOUND"


class ReconciliationContractNotFoundError(ContractNotFoundError):
    """
    Raised when a notification references a contract that does not exist.

    Usually an out-of-order delivery. The notification is kept as deferred
    and the provider's redelivery (or the recovery sweep) retries it.
    """

    default_error_code: str = "RECONCILIATION_CONTRACT_NOT_FOUND"


# =============================================================================
# Provider Exceptions
# =============================================================================


class ProviderError(ExternalServiceError):
    """
    Base exception for payment provider failures.

    Attributes:
        provider: Provider name (mercadopago, stripe, sandbox)
        provider_code: Provider's own error code, when it sent one
        status_code: HTTP status of the provider response, when there was one
        is_retryable: Whether the call may succeed if repeated
    """

    default_error_code: str = "PROVIDER_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider: str | None = None,
        provider_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if provider:
            details["provider"] = provider
        if provider_code:
            details["provider_code"] = provider_code
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, error_code=error_code, details=details)
        self.provider = provider
        self.provider_code = provider_code
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    """
    Transient provider failure: timeout, connection error, 429 or 5xx.

    Retried with backoff inside the gateway adapter. A timed out request
    may have succeeded on the provider's side, so retries reuse the same
    idempotency key.
    """

    default_error_code: str = "PROVIDER_TRANSIENT"
    is_retryable: bool = True


class ProviderUnavailableError(ProviderError):
    """
    Provider kept failing transiently after every retry.

    Raised by the adapter in place of ProviderTransientError once the
    retry budget is spent. Queue workers treat it as retryable at their
    own, coarser level.
    """

    default_error_code: str = "PROVIDER_UNAVAILABLE"
    is_retryable: bool = True


class ProviderRejectedError(ProviderError):
    """
    Provider refused the request (invalid payment id, refund not allowed...).

    Permanent: repeating the same request will not succeed.
    """

    default_error_code: str = "PROVIDER_REJECTED"
    is_retryable: bool = False


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class InvalidStateError(ConflictError):
    """
    Raised when an operation is not valid for the contract's current status.

    Also raised to the loser of a race between two transitions on the
    same contract.
    """

    default_error_code: str = "INVALID_STATE"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Another worker is processing the same resource. Retry later.
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


class ImmutableRecordError(ConflictError):
    """Raised when code tries to edit or delete a frozen record."""

    default_error_code: str = "IMMUTABLE_RECORD"
