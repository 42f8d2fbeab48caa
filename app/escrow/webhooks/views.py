"""
Webhook endpoint for payment provider notifications.

The view:
1. Resolves the provider's gateway
2. Verifies the notification signature
3. Hands the payload to the Reconciler (which stores it verbatim first)
4. Maps the outcome to the status code the provider's retry policy expects

Status codes:
    200 {"ok": true}                                  applied or acknowledged
    200 {"ok": false, "reason": "unresolved_reference"}   kept for review
    404 {"ok": false, "reason": "contract_not_found"}     redeliver later
    400 {"ok": false, "reason": "invalid_signature"}      rejected
    502 {"ok": false, "reason": "provider_error"}         redeliver later

Usage:
    # In escrow/urls.py
    path("webhooks/<str:provider>/", provider_webhook, name="provider_webhook")
"""

from __future__ import annotations

import json
import logging

from django.core.exceptions import ImproperlyConfigured
from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from escrow.adapters import get_payment_gateway
from escrow.exceptions import (
    EscrowValidationError,
    ProviderError,
    ReconciliationContractNotFoundError,
    UnresolvedReferenceError,
    WebhookSignatureError,
)
from escrow.services.reconciliation_service import Reconciler

logger = logging.getLogger(__name__)


def _parse_payload(request: HttpRequest) -> dict:
    """
    JSON body, or the query string for body-less notifications.

    Mercado Pago's legacy IPN posts "?topic=payment&id=123" with no body.
    """
    if request.body:
        payload = json.loads(request.body)
        if not isinstance(payload, dict):
            raise ValueError("Notification body must be a JSON object")
        return payload

    payload = dict(request.GET.items())
    if "data.id" in payload:
        payload["data"] = {"id": payload.pop("data.id")}
    return payload


@csrf_exempt
@require_POST
def provider_webhook(request: HttpRequest, provider: str) -> JsonResponse:
    """
    Receive and reconcile a provider notification.

    Processing is synchronous: the status code tells the provider whether
    to redeliver, so it can only be chosen once reconciliation ran.

    Security:
    - Signature verification before any processing or storage
    - CSRF exemption required for external webhooks
    - Only POST requests accepted
    """
    try:
        gateway = get_payment_gateway(provider)
    except ImproperlyConfigured:
        return JsonResponse({"ok": False, "reason": "unknown_provider"}, status=404)

    with gateway:
        try:
            gateway.verify_signature(request.body, request.headers, request.GET)
        except WebhookSignatureError as e:
            logger.warning(
                "Webhook signature verification failed",
                extra={"provider": provider, "error": str(e)},
            )
            return JsonResponse({"ok": False, "reason": "invalid_signature"}, status=400)

        try:
            payload = _parse_payload(request)
        except ValueError:
            logger.warning("Webhook body is not a JSON object", extra={"provider": provider})
            return JsonResponse({"ok": False, "reason": "invalid_payload"}, status=400)

        try:
            result = Reconciler(gateway).handle_notification(
                payload, raw_body=request.body, provider=provider
            )
        except UnresolvedReferenceError:
            return JsonResponse({"ok": False, "reason": "unresolved_reference"}, status=200)
        except ReconciliationContractNotFoundError:
            return JsonResponse({"ok": False, "reason": "contract_not_found"}, status=404)
        except EscrowValidationError as e:
            logger.error(
                "Notification rejected by validation",
                extra={"provider": provider, "error": str(e)},
            )
            return JsonResponse({"ok": False, "reason": "invalid_notification"}, status=400)
        except ProviderError as e:
            logger.warning(
                "Provider lookup failed while reconciling notification",
                extra={"provider": provider, "error": str(e)},
            )
            return JsonResponse({"ok": False, "reason": "provider_error"}, status=502)

    logger.info(
        "Webhook reconciled",
        extra={
            "provider": provider,
            "notification_id": str(result.notification_id),
            "reason": result.reason,
        },
    )
    return JsonResponse(result.to_dict(), status=200)
