"""
Stripe gateway for deposits, refunds and worker payouts.

Deposits go through Stripe Checkout: the preference is a Checkout Session
whose PaymentIntent carries the contract id as metadata. Payouts are
Connect transfers to the worker's connected account.

Stripe amounts are already integer minor units, so no conversion happens
here. Currency codes are sent lowercase as Stripe expects.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- PROVIDER_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- PROVIDER_MAX_RETRIES: Max retry attempts (default: 3)

Usage:
    with StripeGateway() as gateway:
        payment = gateway.get_payment("pi_123")
        payout = gateway.create_payout(
            destination="acct_123",
            amount_cents=90000,
            currency="BRL",
            idempotency_key="payout:...",
        )
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, TypeVar

import stripe
from django.conf import settings

from escrow.adapters.base import (
    NormalizedNotification,
    NormalizedPayment,
    PaymentGateway,
    PayoutGateway,
    PayoutResult,
    PreferenceResult,
    ProviderRefundResult,
    normalize_status,
)
from escrow.exceptions import (
    ProviderRejectedError,
    ProviderTransientError,
    WebhookSignatureError,
)
from escrow.state_machines import PaymentStatus, Provider

if TYPE_CHECKING:
    from collections.abc import Mapping

T = TypeVar("T")

STATUS_MAP = {
    "succeeded": PaymentStatus.APPROVED,
    "processing": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
    "canceled": PaymentStatus.REJECTED,
}

# Event types whose data.object is (or points at) a PaymentIntent
PAYMENT_INTENT_EVENTS = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "payment_intent.processing",
}
CHECKOUT_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
}
CHARGE_EVENTS = {"charge.refunded", "charge.succeeded"}


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway(PaymentGateway, PayoutGateway):
    """
    Stripe adapter implementing both the payment and payout capabilities.

    Error translation:
        RateLimitError / APIConnectionError / APIError -> ProviderTransientError
        CardError / InvalidRequestError / AuthenticationError
            -> ProviderRejectedError
    """

    provider_name = Provider.STRIPE

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = (
            webhook_secret
            if webhook_secret is not None
            else settings.STRIPE_WEBHOOK_SECRET
        )
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    # =========================================================================
    # Error Handling
    # =========================================================================

    def _invoke(self, func: Callable[[], T]) -> T:
        """Run a Stripe SDK call, translating SDK errors to provider errors."""
        try:
            return func()
        except stripe.CardError as e:
            raise ProviderRejectedError(
                str(e.user_message or e),
                provider=self.provider_name,
                provider_code=e.code,
                status_code=e.http_status,
                details={"decline_code": getattr(e, "decline_code", None)},
            ) from e
        except stripe.InvalidRequestError as e:
            raise ProviderRejectedError(
                str(e),
                provider=self.provider_name,
                provider_code=e.code,
                status_code=e.http_status,
            ) from e
        except stripe.AuthenticationError as e:
            self.get_logger().critical("Stripe authentication failed, check API key")
            raise ProviderRejectedError(
                "Stripe authentication failed",
                provider=self.provider_name,
                provider_code="authentication_error",
                status_code=e.http_status,
            ) from e
        except stripe.RateLimitError as e:
            raise ProviderTransientError(
                "Stripe rate limit exceeded",
                provider=self.provider_name,
                provider_code="rate_limit",
                status_code=e.http_status,
            ) from e
        except stripe.APIConnectionError as e:
            raise ProviderTransientError(
                "Could not connect to Stripe",
                provider=self.provider_name,
                provider_code="api_connection_error",
            ) from e
        except stripe.APIError as e:
            raise ProviderTransientError(
                "Stripe service error",
                provider=self.provider_name,
                provider_code="api_error",
                status_code=e.http_status,
            ) from e

    def _call(
        self,
        operation: str,
        func: Callable[[], T],
        log_context: Mapping[str, Any] | None = None,
    ) -> T:
        return self._call_with_retry(operation, lambda: self._invoke(func), log_context)

    # =========================================================================
    # Payments
    # =========================================================================

    def create_preference(
        self,
        contract_id,
        amount_cents: int,
        currency: str,
        description: str,
        return_url: str,
    ) -> PreferenceResult:
        reference = str(contract_id)
        metadata = {"contract_id": reference, "external_reference": reference}
        session = self._call(
            "create_preference",
            lambda: stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="payment",
                client_reference_id=reference,
                line_items=[
                    {
                        "quantity": 1,
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": amount_cents,
                            "product_data": {
                                "name": description or f"Contract {reference}",
                            },
                        },
                    }
                ],
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                success_url=return_url,
                cancel_url=return_url,
                idempotency_key=f"preference:{reference}:{amount_cents}",
            ),
            {"contract_id": reference, "amount_cents": amount_cents},
        )
        data = _as_dict(session)
        return PreferenceResult(
            preference_id=data["id"],
            init_point=data.get("url"),
            external_reference=data.get("client_reference_id") or reference,
            raw_response=data,
        )

    def get_payment(self, payment_id: str) -> NormalizedPayment:
        intent = self._call(
            "get_payment",
            lambda: stripe.PaymentIntent.retrieve(
                payment_id,
                api_key=self.api_key,
                expand=["latest_charge.balance_transaction"],
            ),
            {"payment_id": payment_id},
        )
        data = _as_dict(intent)
        charge = data.get("latest_charge")
        charge = charge if isinstance(charge, dict) else {}
        balance = charge.get("balance_transaction")
        balance = balance if isinstance(balance, dict) else {}

        status = normalize_status(data.get("status"), STATUS_MAP)
        if charge.get("refunded"):
            status = PaymentStatus.REFUNDED
        metadata = data.get("metadata") or {}
        return NormalizedPayment(
            provider_tx_id=data.get("id", payment_id),
            status=status,
            raw_status=data.get("status"),
            amount_cents=int(data.get("amount_received") or data.get("amount") or 0),
            provider_fee_cents=int(balance.get("fee") or 0),
            external_reference=metadata.get("external_reference")
            or metadata.get("contract_id"),
            currency=(data.get("currency") or "").upper() or None,
            raw_response=data,
        )

    def verify_notification(self, payload: Mapping[str, Any]) -> NormalizedNotification:
        """
        Normalize a Stripe event.

        PaymentIntent, Checkout Session and Charge events are resolved to
        their PaymentIntent and fetched; anything else is "unknown".
        """
        event_type = payload.get("type")
        obj = (payload.get("data") or {}).get("object") or {}

        intent_id = None
        if event_type in PAYMENT_INTENT_EVENTS:
            intent_id = obj.get("id")
        elif event_type in CHECKOUT_EVENTS or event_type in CHARGE_EVENTS:
            intent_id = obj.get("payment_intent")

        if intent_id:
            payment = self.get_payment(intent_id)
            return NormalizedNotification(
                status=payment.status,
                provider_fee_cents=payment.provider_fee_cents,
                provider_tx_id=payment.provider_tx_id,
                external_reference=payment.external_reference,
                amount_cents=payment.amount_cents,
                fetched=True,
            )

        metadata = obj.get("metadata") or {}
        return NormalizedNotification(
            status=PaymentStatus.UNKNOWN,
            provider_fee_cents=0,
            provider_tx_id=None,
            external_reference=metadata.get("external_reference")
            or obj.get("client_reference_id"),
        )

    def refund(
        self,
        provider_tx_id: str,
        amount_cents: int | None = None,
        idempotency_key: str | None = None,
    ) -> ProviderRefundResult:
        params: dict[str, Any] = {"payment_intent": provider_tx_id}
        if amount_cents is not None:
            params["amount"] = amount_cents
        refund = self._call(
            "refund",
            lambda: stripe.Refund.create(
                api_key=self.api_key,
                idempotency_key=idempotency_key or f"refund:{provider_tx_id}",
                **params,
            ),
            {"provider_tx_id": provider_tx_id, "amount_cents": amount_cents},
        )
        data = _as_dict(refund)
        return ProviderRefundResult(
            id=data["id"],
            status=data.get("status", "pending"),
            provider_tx_id=data.get("payment_intent") or provider_tx_id,
            amount_cents=data.get("amount", amount_cents),
            raw_response=data,
        )

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str] | None = None,
    ) -> None:
        if not self.webhook_secret:
            if settings.DEBUG:
                self.get_logger().warning(
                    "Stripe webhook secret not set, skipping check"
                )
                return
            raise WebhookSignatureError("Webhook secret is not configured")

        signature = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(
                "Invalid webhook signature",
                details={"error": str(e)},
            ) from e
        except ValueError as e:
            raise WebhookSignatureError(
                "Webhook body is not valid JSON",
                details={"error": str(e)},
            ) from e

    # =========================================================================
    # Payouts
    # =========================================================================

    def create_payout(
        self,
        destination: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> PayoutResult:
        """
        Transfer released funds to a connected account.

        The idempotency key makes a retried transfer (after a timeout whose
        outcome is unknown) return the original transfer.
        """
        if not destination:
            raise ProviderRejectedError(
                "Worker has no payout destination",
                provider=self.provider_name,
                provider_code="missing_destination",
            )
        transfer = self._call(
            "create_payout",
            lambda: stripe.Transfer.create(
                api_key=self.api_key,
                amount=amount_cents,
                currency=currency.lower(),
                destination=destination,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            ),
            {
                "destination": destination,
                "amount_cents": amount_cents,
                "idempotency_key": idempotency_key,
            },
        )
        data = _as_dict(transfer)
        return PayoutResult(
            id=data["id"],
            status="paid",
            amount_cents=data.get("amount", amount_cents),
            destination=data.get("destination", destination),
            raw_response=data,
        )
