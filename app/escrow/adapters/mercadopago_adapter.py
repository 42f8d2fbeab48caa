"""
Mercado Pago payment gateway.

Talks to the Mercado Pago REST API over a requests.Session owned by the
adapter instance. Amounts cross the wire in major units and are converted
to integer cents at this boundary.

Endpoints:
    POST /checkout/preferences            create a checkout preference
    GET  /v1/payments/{id}                authoritative payment detail
    POST /v1/payments/{id}/refunds        full or partial refund

Configuration (via settings):
    MERCADOPAGO_ACCESS_TOKEN: API bearer token
    MERCADOPAGO_WEBHOOK_SECRET: Secret for the x-signature HMAC
    MERCADOPAGO_API_BASE_URL: API root (default: https://api.mercadopago.com)
    PROVIDER_API_TIMEOUT_SECONDS / PROVIDER_MAX_RETRIES

Usage:
    with MercadoPagoGateway() as gateway:
        payment = gateway.get_payment("123456789")
"""

from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import requests
from django.conf import settings

from escrow.adapters.base import (
    NormalizedNotification,
    NormalizedPayment,
    PaymentGateway,
    PreferenceResult,
    ProviderRefundResult,
    from_cents,
    normalize_status,
    to_cents,
)
from escrow.exceptions import (
    ProviderRejectedError,
    ProviderTransientError,
    WebhookSignatureError,
)
from escrow.state_machines import PaymentStatus, Provider

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_BASE_URL = "https://api.mercadopago.com"

STATUS_MAP = {
    "approved": PaymentStatus.APPROVED,
    "authorized": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.PENDING,
    "in_mediation": PaymentStatus.PENDING,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.REJECTED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.REFUNDED,
}

# Notification topics whose id is a payment id
PAYMENT_TOPICS = {None, "", "payment"}


class MercadoPagoGateway(PaymentGateway):
    """
    Mercado Pago adapter.

    Error translation:
        timeout / connection error / 429 / 5xx -> ProviderTransientError
        other 4xx                              -> ProviderRejectedError
    """

    provider_name = Provider.MERCADOPAGO

    def __init__(
        self,
        access_token: str | None = None,
        webhook_secret: str | None = None,
        base_url: str | None = None,
        session: requests.Session | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.access_token = (
            access_token
            if access_token is not None
            else settings.MERCADOPAGO_ACCESS_TOKEN
        )
        self.webhook_secret = (
            webhook_secret
            if webhook_secret is not None
            else settings.MERCADOPAGO_WEBHOOK_SECRET
        )
        self.base_url = (
            base_url or getattr(settings, "MERCADOPAGO_API_BASE_URL", DEFAULT_BASE_URL)
        ).rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    def close(self) -> None:
        if not self.closed:
            self.session.close()
        super().close()

    # =========================================================================
    # Transport
    # =========================================================================

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Send one request; translate failures into provider errors."""
        headers = {}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                data=json.dumps(body) if body is not None else None,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise ProviderTransientError(
                "Mercado Pago request timed out",
                error_code="PROVIDER_TIMEOUT",
                provider=self.provider_name,
                details={"path": path, "error": str(e)},
            ) from e
        except requests.ConnectionError as e:
            raise ProviderTransientError(
                "Could not connect to Mercado Pago",
                provider=self.provider_name,
                details={"path": path, "error": str(e)},
            ) from e

        status_code = response.status_code
        if status_code == 429 or status_code >= 500:
            raise ProviderTransientError(
                f"Mercado Pago returned HTTP {status_code}",
                provider=self.provider_name,
                status_code=status_code,
                details={"path": path},
            )
        if status_code >= 400:
            provider_code, message = self._error_detail(response)
            raise ProviderRejectedError(
                message or f"Mercado Pago rejected the request (HTTP {status_code})",
                provider=self.provider_name,
                provider_code=provider_code,
                status_code=status_code,
                details={"path": path},
            )

        try:
            return response.json(parse_float=Decimal)
        except ValueError as e:
            raise ProviderRejectedError(
                "Mercado Pago returned a non-JSON response",
                provider=self.provider_name,
                status_code=status_code,
                details={"path": path},
            ) from e

    @staticmethod
    def _error_detail(response: requests.Response) -> tuple[str | None, str | None]:
        try:
            data = response.json()
        except ValueError:
            return None, None
        if not isinstance(data, dict):
            return None, None
        return data.get("error") or data.get("code"), data.get("message")

    # =========================================================================
    # Core Operations
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
        body = {
            "items": [
                {
                    "id": reference,
                    "title": f"Contract {reference}",
                    "description": description or f"Contract {reference}",
                    "quantity": 1,
                    "currency_id": currency.upper(),
                    # Wire format requires a JSON number
                    "unit_price": float(from_cents(amount_cents)),
                }
            ],
            "external_reference": reference,
            "back_urls": {
                "success": return_url,
                "failure": return_url,
                "pending": return_url,
            },
            "auto_return": "approved",
            "binary_mode": True,
        }
        data = self._call_with_retry(
            "create_preference",
            lambda: self._request(
                "POST",
                "/checkout/preferences",
                body,
                idempotency_key=f"preference:{reference}:{amount_cents}",
            ),
            {"contract_id": reference, "amount_cents": amount_cents},
        )
        return PreferenceResult(
            preference_id=str(data["id"]),
            init_point=data.get("init_point"),
            sandbox_init_point=data.get("sandbox_init_point"),
            external_reference=data.get("external_reference") or reference,
            raw_response=_jsonable(data),
        )

    def get_payment(self, payment_id: str) -> NormalizedPayment:
        data = self._call_with_retry(
            "get_payment",
            lambda: self._request("GET", f"/v1/payments/{payment_id}"),
            {"payment_id": str(payment_id)},
        )
        return NormalizedPayment(
            provider_tx_id=str(data.get("id", payment_id)),
            status=normalize_status(data.get("status"), STATUS_MAP),
            raw_status=data.get("status"),
            amount_cents=to_cents(data.get("transaction_amount")),
            provider_fee_cents=self._fee_cents(data),
            external_reference=_str_or_none(data.get("external_reference")),
            currency=data.get("currency_id"),
            raw_response=_jsonable(data),
        )

    @staticmethod
    def _fee_cents(payment: Mapping[str, Any]) -> int:
        """
        Provider fee of a payment.

        total_paid_amount - net_received_amount when both are present,
        otherwise the sum of fee_details.
        """
        details = payment.get("transaction_details") or {}
        paid = details.get("total_paid_amount")
        net = details.get("net_received_amount")
        if paid is not None and net is not None:
            return max(to_cents(paid) - to_cents(net), 0)
        return sum(to_cents(fee.get("amount")) for fee in payment.get("fee_details") or [])

    def verify_notification(self, payload: Mapping[str, Any]) -> NormalizedNotification:
        payment_id = self.extract_payment_id(payload)
        if payment_id:
            payment = self.get_payment(payment_id)
            return NormalizedNotification(
                status=payment.status,
                provider_fee_cents=payment.provider_fee_cents,
                provider_tx_id=payment.provider_tx_id,
                external_reference=payment.external_reference,
                amount_cents=payment.amount_cents,
                fetched=True,
            )

        preference = payload.get("preference") or {}
        reference = payload.get("external_reference") or (
            preference.get("external_reference") if isinstance(preference, dict) else None
        )
        return NormalizedNotification(
            status=normalize_status(payload.get("status"), STATUS_MAP),
            provider_fee_cents=to_cents(payload.get("fee_amount")),
            provider_tx_id=None,
            external_reference=_str_or_none(reference),
            fetched=False,
        )

    @staticmethod
    def extract_payment_id(payload: Mapping[str, Any]) -> str | None:
        """
        Find the payment id in a notification body.

        Checks data.id, id, resource (URL or object) and payment_id, in that
        order. Topics other than "payment" (merchant_order...) carry ids of
        other resources and are ignored.
        """
        topic = payload.get("type") or payload.get("topic")
        if topic not in PAYMENT_TOPICS:
            return None

        data = payload.get("data")
        if isinstance(data, dict) and data.get("id"):
            return str(data["id"])
        if payload.get("id") and topic:
            return str(payload["id"])

        resource = payload.get("resource")
        if isinstance(resource, dict) and resource.get("id"):
            return str(resource["id"])
        if isinstance(resource, str) and resource:
            return urlparse(resource).path.rstrip("/").rsplit("/", 1)[-1] or None

        if payload.get("payment_id"):
            return str(payload["payment_id"])
        return None

    def refund(
        self,
        provider_tx_id: str,
        amount_cents: int | None = None,
        idempotency_key: str | None = None,
    ) -> ProviderRefundResult:
        body = {}
        if amount_cents is not None:
            body["amount"] = float(from_cents(amount_cents))
        data = self._call_with_retry(
            "refund",
            lambda: self._request(
                "POST",
                f"/v1/payments/{provider_tx_id}/refunds",
                body,
                idempotency_key=idempotency_key or f"refund:{provider_tx_id}",
            ),
            {"provider_tx_id": provider_tx_id, "amount_cents": amount_cents},
        )
        return ProviderRefundResult(
            id=str(data.get("id")),
            status=str(data.get("status", "approved")),
            provider_tx_id=str(data.get("payment_id", provider_tx_id)),
            amount_cents=to_cents(data.get("amount")) if "amount" in data else amount_cents,
            raw_response=_jsonable(data),
        )

    def create_payout(
        self,
        destination: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ):
        """Not offered; worker payouts go through ESCROW_PAYOUT_PROVIDER."""
        raise ProviderRejectedError(
            "Mercado Pago gateway does not issue payouts",
            provider=self.provider_name,
            provider_code="payouts_not_supported",
        )

    # =========================================================================
    # Webhook Authenticity
    # =========================================================================

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str] | None = None,
    ) -> None:
        """
        Verify the x-signature header.

        Header format: "ts=1704908010,v1=<hex hmac>". The HMAC-SHA256 is
        computed over "id:{data.id};request-id:{x-request-id};ts:{ts};"
        with parts whose value is absent left out.
        """
        logger = self.get_logger()
        if not self.webhook_secret:
            if settings.DEBUG:
                logger.warning("Mercado Pago webhook secret not set, skipping check")
                return
            raise WebhookSignatureError("Webhook secret is not configured")

        signature = headers.get("x-signature") or headers.get("X-Signature") or ""
        parts = dict(
            item.strip().split("=", 1) for item in signature.split(",") if "=" in item
        )
        ts, received = parts.get("ts"), parts.get("v1")
        if not ts or not received:
            raise WebhookSignatureError("Missing or malformed x-signature header")

        data_id = (query or {}).get("data.id")
        if not data_id:
            try:
                data_id = (json.loads(body or b"{}").get("data") or {}).get("id")
            except (ValueError, AttributeError):
                data_id = None
        request_id = headers.get("x-request-id") or headers.get("X-Request-Id")

        manifest = ""
        if data_id:
            data_id = str(data_id)
            manifest += f"id:{data_id.lower() if data_id.isalnum() else data_id};"
        if request_id:
            manifest += f"request-id:{request_id};"
        manifest += f"ts:{ts};"

        expected = hmac.new(
            self.webhook_secret.encode(), manifest.encode(), hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(expected, received):
            raise WebhookSignatureError(
                "Invalid webhook signature",
                details={"ts": ts},
            )


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _jsonable(data: Any) -> Any:
    """Turn Decimals parsed from the response back into strings for JSONField."""
    return json.loads(json.dumps(data, default=str))
