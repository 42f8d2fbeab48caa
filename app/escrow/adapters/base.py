"""
Provider gateway contracts and shared plumbing.

Every payment provider sits behind the same capability set so a provider
swap touches only its adapter module. Provider responses are normalized
into the dataclasses below; amounts are always integer cents.

Capabilities:
    PaymentGateway: preference creation, payment lookup, notification
        normalization, refund, webhook signature verification
    PayoutGateway: fund transfer to the worker

Retry policy:
    ProviderTransientError is retried with bounded exponential backoff
    inside the adapter and never escapes it; once retries are spent the
    call raises ProviderUnavailableError. ProviderRejectedError is never
    retried.

Usage:
    from escrow.adapters import get_payment_gateway

    with get_payment_gateway() as gateway:
        preference = gateway.create_preference(
            contract_id=contract.id,
            amount_cents=100000,
            currency="BRL",
            description="Logo design",
            return_url="https://app.example.com/contracts/1",
        )
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from django.conf import settings

from escrow.exceptions import (
    ProviderError,
    ProviderTransientError,
    ProviderUnavailableError,
)
from escrow.state_machines import PaymentStatus

if TYPE_CHECKING:
    from collections.abc import Mapping

T = TypeVar("T")


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class PreferenceResult:
    """
    A payment preference (checkout) created at the provider.

    Attributes:
        preference_id: Provider id of the preference / checkout session
        init_point: URL the client is sent to for paying
        external_reference: Reference the provider echoes back (contract id)
        sandbox_init_point: Test-mode checkout URL, when the provider has one
        raw_response: Full provider response (for debugging)
    """

    preference_id: str
    init_point: str | None
    external_reference: str
    sandbox_init_point: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "preference_id": self.preference_id,
            "init_point": self.init_point,
            "sandbox_init_point": self.sandbox_init_point,
            "external_reference": self.external_reference,
        }


@dataclass
class NormalizedPayment:
    """Authoritative payment detail fetched from the provider."""

    provider_tx_id: str
    status: str
    amount_cents: int
    provider_fee_cents: int
    external_reference: str | None
    currency: str | None = None
    raw_status: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizedNotification:
    """
    Provider notification reduced to what reconciliation needs.

    fetched is True when the values come from a payment lookup rather
    than from the (untrusted) notification body.
    """

    status: str
    provider_fee_cents: int
    provider_tx_id: str | None
    external_reference: str | None
    amount_cents: int | None = None
    fetched: bool = False


@dataclass
class ProviderRefundResult:
    id: str
    status: str
    provider_tx_id: str
    amount_cents: int | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "provider_tx_id": self.provider_tx_id,
            "amount_cents": self.amount_cents,
        }


@dataclass
class PayoutResult:
    id: str
    status: str
    amount_cents: int
    destination: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Money Helpers
# =============================================================================


def to_cents(value: Any) -> int:
    """
    Convert a major-unit amount from a provider payload to integer cents.

    Accepts Decimal, int, str and float (floats go through str() so the
    binary representation never leaks into the result).
    """
    if value is None or value == "":
        return 0
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ProviderError(
            "Provider returned a non-numeric amount",
            error_code="PROVIDER_BAD_AMOUNT",
            details={"value": str(value)},
        )
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(amount_cents: int) -> Decimal:
    return (Decimal(amount_cents) / 100).quantize(Decimal("0.01"))


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for provider calls.

    Format: "{operation}:{entity_id}:{hash}"

    The hash is derived from SECRET_KEY so keys are stable across retries
    and restarts but not guessable from the entity id alone.
    """

    @staticmethod
    def generate(operation: str, entity_id: uuid.UUID | str) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]
        return f"{operation}:{entity_str}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def is_retryable_provider_error(error: Exception) -> bool:
    """True if the error is a provider failure that may succeed later."""
    if isinstance(error, ProviderError):
        return getattr(error, "is_retryable", False)
    return False


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds
        max_delay: Cap before jitter

    Returns:
        Delay in seconds plus 0-25% jitter

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# =============================================================================
# Gateway Base Classes
# =============================================================================


class ProviderClient:
    """
    Shared plumbing for provider adapters: logging, timing, retries, shutdown.

    Subclasses own whatever transport they need and release it in close().
    Adapters are context managers so the owner decides when they shut down.
    """

    provider_name: str = "provider"

    def __init__(
        self,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float = 0.5,
    ) -> None:
        self.timeout = (
            timeout
            if timeout is not None
            else getattr(settings, "PROVIDER_API_TIMEOUT_SECONDS", 10)
        )
        self.max_retries = (
            max_retries
            if max_retries is not None
            else getattr(settings, "PROVIDER_MAX_RETRIES", 3)
        )
        self.backoff_base = backoff_base
        self.closed = False

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    def _call_with_retry(
        self,
        operation: str,
        func: Callable[[], T],
        log_context: Mapping[str, Any] | None = None,
    ) -> T:
        """
        Run ``func`` retrying transient provider failures.

        Raises:
            ProviderUnavailableError: Still transient after max_retries retries
            ProviderRejectedError: Raised by func, passed through untouched
        """
        logger = self.get_logger()
        log_context = {
            "provider": self.provider_name,
            "operation": operation,
            **(log_context or {}),
        }
        attempt = 0
        while True:
            start_time = time.time()
            logger.info("Starting provider operation", extra=log_context)
            try:
                result = func()
            except ProviderTransientError as e:
                duration_ms = (time.time() - start_time) * 1000
                if attempt >= self.max_retries:
                    logger.error(
                        "Provider operation failed after retries",
                        extra={
                            **log_context,
                            "attempts": attempt + 1,
                            "duration_ms": duration_ms,
                            "error": str(e),
                        },
                    )
                    raise ProviderUnavailableError(
                        f"{self.provider_name} unavailable: {e.message}",
                        provider=self.provider_name,
                        provider_code=e.provider_code,
                        status_code=e.status_code,
                        details={"operation": operation, "attempts": attempt + 1},
                    ) from e
                delay = backoff_delay(attempt, base=self.backoff_base)
                logger.warning(
                    "Transient provider failure, retrying",
                    extra={
                        **log_context,
                        "attempt": attempt + 1,
                        "retry_in_seconds": round(delay, 3),
                        "duration_ms": duration_ms,
                        "error": str(e),
                    },
                )
                time.sleep(delay)
                attempt += 1
                continue

            logger.info(
                "Provider operation completed",
                extra={
                    **log_context,
                    "attempts": attempt + 1,
                    "duration_ms": (time.time() - start_time) * 1000,
                },
            )
            return result

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


class PaymentGateway(ProviderClient, ABC):
    """Capability set every payment provider adapter implements."""

    @abstractmethod
    def create_preference(
        self,
        contract_id: uuid.UUID | str,
        amount_cents: int,
        currency: str,
        description: str,
        return_url: str,
    ) -> PreferenceResult: ...

    @abstractmethod
    def get_payment(self, payment_id: str) -> NormalizedPayment: ...

    @abstractmethod
    def verify_notification(self, payload: Mapping[str, Any]) -> NormalizedNotification:
        """
        Normalize a notification payload.

        When the payload identifies a payment, the authoritative detail is
        fetched from the provider instead of trusting the payload amounts.
        A payload with no identifying data yields status "unknown" rather
        than an error; rejecting it is the reconciler's call.
        """

    @abstractmethod
    def refund(
        self,
        provider_tx_id: str,
        amount_cents: int | None = None,
        idempotency_key: str | None = None,
    ) -> ProviderRefundResult: ...

    @abstractmethod
    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str] | None = None,
    ) -> None:
        """
        Check the notification came from the provider.

        Raises:
            WebhookSignatureError: Missing or invalid signature
        """


class PayoutGateway(ProviderClient, ABC):
    """Capability for moving released funds to the worker."""

    @abstractmethod
    def create_payout(
        self,
        destination: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> PayoutResult: ...


def normalize_status(raw_status: str | None, mapping: Mapping[str, str]) -> str:
    if not raw_status:
        return PaymentStatus.UNKNOWN
    return mapping.get(str(raw_status).lower(), PaymentStatus.UNKNOWN)
