"""
Payment provider adapters.

All provider API calls go through these adapters so error translation,
timeouts, retries and logging stay consistent. Which provider backs
deposits and which backs payouts is configuration:

    ESCROW_PAYMENT_PROVIDER: "mercadopago" (default) or "stripe"
    ESCROW_PAYOUT_PROVIDER: "sandbox" (default) or "stripe"

Usage:
    from escrow.adapters import get_payment_gateway

    with get_payment_gateway() as gateway:
        payment = gateway.get_payment("123456789")
"""

from __future__ import annotations

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from escrow.adapters.base import (
    IdempotencyKeyGenerator,
    NormalizedNotification,
    NormalizedPayment,
    PaymentGateway,
    PayoutGateway,
    PayoutResult,
    PreferenceResult,
    ProviderRefundResult,
    backoff_delay,
    from_cents,
    is_retryable_provider_error,
    to_cents,
)
from escrow.adapters.mercadopago_adapter import MercadoPagoGateway
from escrow.adapters.sandbox_adapter import SandboxPayoutGateway
from escrow.adapters.stripe_adapter import StripeGateway

PAYMENT_GATEWAYS = {
    "mercadopago": MercadoPagoGateway,
    "stripe": StripeGateway,
}

PAYOUT_GATEWAYS = {
    "sandbox": SandboxPayoutGateway,
    "stripe": StripeGateway,
}


def _resolve(registry: dict, name: str, setting: str):
    try:
        return registry[name]
    except KeyError:
        raise ImproperlyConfigured(
            f"{setting}={name!r} is not one of {sorted(registry)}"
        ) from None


def get_payment_gateway(provider: str | None = None, **kwargs) -> PaymentGateway:
    """Build the payment gateway for ``provider`` (default: ESCROW_PAYMENT_PROVIDER)."""
    name = provider or settings.ESCROW_PAYMENT_PROVIDER
    return _resolve(PAYMENT_GATEWAYS, name, "ESCROW_PAYMENT_PROVIDER")(**kwargs)


def get_payout_gateway(provider: str | None = None, **kwargs) -> PayoutGateway:
    """Build the payout gateway for ``provider`` (default: ESCROW_PAYOUT_PROVIDER)."""
    name = provider or settings.ESCROW_PAYOUT_PROVIDER
    return _resolve(PAYOUT_GATEWAYS, name, "ESCROW_PAYOUT_PROVIDER")(**kwargs)


__all__ = [
    "IdempotencyKeyGenerator",
    "MercadoPagoGateway",
    "NormalizedNotification",
    "NormalizedPayment",
    "PaymentGateway",
    "PayoutGateway",
    "PayoutResult",
    "PreferenceResult",
    "ProviderRefundResult",
    "SandboxPayoutGateway",
    "StripeGateway",
    "backoff_delay",
    "from_cents",
    "get_payment_gateway",
    "get_payout_gateway",
    "is_retryable_provider_error",
    "to_cents",
]
