"""
Tests for shared adapter plumbing: money conversion, idempotency keys,
backoff and the gateway registry.
"""

from decimal import Decimal

import pytest
from django.core.exceptions import ImproperlyConfigured

from escrow.adapters import (
    IdempotencyKeyGenerator,
    MercadoPagoGateway,
    SandboxPayoutGateway,
    StripeGateway,
    backoff_delay,
    from_cents,
    get_payment_gateway,
    get_payout_gateway,
    is_retryable_provider_error,
    to_cents,
)
from escrow.exceptions import (
    ProviderError,
    ProviderRejectedError,
    ProviderTransientError,
    ProviderUnavailableError,
)


class TestMoneyConversion:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (Decimal("1000.00"), 100000),
            ("12.345", 1235),
            (19.99, 1999),
            (7, 700),
            (None, 0),
            ("", 0),
        ],
    )
    def test_to_cents(self, value, expected):
        assert to_cents(value) == expected

    def test_to_cents_rejects_garbage(self):
        with pytest.raises(ProviderError):
            to_cents("ten reais")

    def test_from_cents(self):
        assert from_cents(100050) == Decimal("1000.50")
        assert from_cents(5) == Decimal("0.05")


class TestIdempotencyKeyGenerator:
    def test_format_and_stability(self):
        first = IdempotencyKeyGenerator.generate("payout", "entry-1")
        second = IdempotencyKeyGenerator.generate("payout", "entry-1")

        operation, entity, digest = first.split(":")
        assert (operation, entity) == ("payout", "entry-1")
        assert len(digest) == 8
        assert first == second

    def test_differs_per_entity(self):
        assert IdempotencyKeyGenerator.generate(
            "payout", "entry-1"
        ) != IdempotencyKeyGenerator.generate("payout", "entry-2")


class TestBackoff:
    @pytest.mark.parametrize("attempt,low,high", [(0, 1.0, 1.25), (2, 4.0, 5.0)])
    def test_exponential_with_jitter(self, attempt, low, high):
        delay = backoff_delay(attempt)
        assert low <= delay <= high

    def test_capped(self):
        assert backoff_delay(20, max_delay=10) <= 12.5


class TestRetryable:
    def test_classification(self):
        assert is_retryable_provider_error(ProviderTransientError("timeout")) is True
        assert is_retryable_provider_error(ProviderUnavailableError("down")) is True
        assert is_retryable_provider_error(ProviderRejectedError("no")) is False
        assert is_retryable_provider_error(ValueError("other")) is False


class TestRegistry:
    def test_payment_gateway_from_settings(self, settings):
        settings.ESCROW_PAYMENT_PROVIDER = "mercadopago"

        with get_payment_gateway() as gateway:
            assert isinstance(gateway, MercadoPagoGateway)

    def test_explicit_provider(self):
        assert isinstance(get_payment_gateway("stripe"), StripeGateway)

    def test_payout_gateway_from_settings(self, settings):
        settings.ESCROW_PAYOUT_PROVIDER = "sandbox"

        assert isinstance(get_payout_gateway(), SandboxPayoutGateway)

    def test_unknown_provider(self):
        with pytest.raises(ImproperlyConfigured):
            get_payment_gateway("paypal")
        with pytest.raises(ImproperlyConfigured):
            get_payout_gateway("mercadopago")

    def test_close_marks_closed(self):
        with SandboxPayoutGateway() as gateway:
            assert gateway.closed is False

        assert gateway.closed is True
