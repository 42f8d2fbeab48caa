"""
Tests for the provider webhook endpoint.

The gateway is a mock returned from the patched get_payment_gateway, so
signature checks and payment lookups are controlled per test.
"""

import json

import pytest
from django.core.exceptions import ImproperlyConfigured

from escrow.exceptions import ProviderUnavailableError, WebhookSignatureError
from escrow.ledger import LedgerEntry
from escrow.models import Contract, ProviderNotification
from escrow.state_machines import EscrowStatus, LedgerEntryType, NotificationStatus
from escrow.tests.conftest import DEPOSIT_TX_ID
from escrow.tests.factories import ContractFactory

WEBHOOK_URL = "/api/v1/escrow/webhooks/mercadopago/"
PAYLOAD = {"type": "payment", "action": "payment.updated", "data": {"id": DEPOSIT_TX_ID}}


@pytest.fixture
def webhook_gateway(mocker, payment_gateway):
    mocker.patch(
        "escrow.webhooks.views.get_payment_gateway", return_value=payment_gateway
    )
    return payment_gateway


def _post(client, payload=PAYLOAD, url=WEBHOOK_URL, **extra):
    return client.post(
        url, data=json.dumps(payload), content_type="application/json", **extra
    )


@pytest.mark.django_db
class TestWebhookReconciliation:
    def test_approved_payment_holds_contract(
        self, client, webhook_gateway, approved_notification, contract
    ):
        webhook_gateway.verify_notification.return_value = approved_notification(contract)

        response = _post(client)

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert "ledger_entry_id" in body
        assert Contract.objects.get(id=contract.id).escrow_status == EscrowStatus.HELD
        webhook_gateway.verify_signature.assert_called_once()
        webhook_gateway.verify_notification.assert_called_once_with(PAYLOAD)

    def test_duplicate_delivery_records_one_deposit(
        self, client, webhook_gateway, approved_notification, contract
    ):
        webhook_gateway.verify_notification.return_value = approved_notification(contract)

        first = _post(client)
        second = _post(client)

        assert first.status_code == second.status_code == 200
        assert second.json()["ok"] is True
        assert first.json()["ledger_entry_id"] == second.json()["ledger_entry_id"]
        assert LedgerEntry.objects.filter(
            entry_type=LedgerEntryType.DEPOSIT, provider_tx_id=DEPOSIT_TX_ID
        ).count() == 1

    def test_raw_body_stored(self, client, webhook_gateway, approved_notification, contract):
        webhook_gateway.verify_notification.return_value = approved_notification(contract)

        _post(client)

        notification = ProviderNotification.objects.get()
        assert json.loads(notification.raw_body) == PAYLOAD
        assert notification.provider == "mercadopago"

    def test_query_string_notification(
        self, client, webhook_gateway, approved_notification, contract
    ):
        webhook_gateway.verify_notification.return_value = approved_notification(contract)

        response = client.post(
            f"{WEBHOOK_URL}?type=payment&data.id={DEPOSIT_TX_ID}",
            data="",
            content_type="application/x-www-form-urlencoded",
        )

        assert response.status_code == 200
        webhook_gateway.verify_notification.assert_called_once_with(
            {"type": "payment", "data": {"id": DEPOSIT_TX_ID}}
        )

    def test_payment_not_approved(
        self, client, webhook_gateway, approved_notification, contract
    ):
        webhook_gateway.verify_notification.return_value = approved_notification(
            contract, status="pending"
        )

        response = _post(client)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "reason": "payment_not_approved"}


@pytest.mark.django_db
class TestWebhookRejections:
    def test_invalid_signature(self, client, webhook_gateway):
        webhook_gateway.verify_signature.side_effect = WebhookSignatureError(
            "Invalid webhook signature"
        )

        response = _post(client)

        assert response.status_code == 400
        assert response.json() == {"ok": False, "reason": "invalid_signature"}
        assert not ProviderNotification.objects.exists()
        webhook_gateway.verify_notification.assert_not_called()

    def test_unresolved_reference_acknowledged(
        self, client, webhook_gateway, approved_notification, contract
    ):
        webhook_gateway.verify_notification.return_value = approved_notification(None)

        response = _post(client)

        assert response.status_code == 200
        assert response.json() == {"ok": False, "reason": "unresolved_reference"}
        notification = ProviderNotification.objects.get()
        assert notification.status == NotificationStatus.UNRESOLVED
        assert not LedgerEntry.objects.exists()
        assert Contract.objects.get(id=contract.id).escrow_status == EscrowStatus.CREATED

    def test_unknown_contract_asks_for_redelivery(
        self, client, webhook_gateway, approved_notification
    ):
        webhook_gateway.verify_notification.return_value = approved_notification(
            ContractFactory.build()
        )

        response = _post(client)

        assert response.status_code == 404
        assert response.json() == {"ok": False, "reason": "contract_not_found"}
        assert ProviderNotification.objects.get().status == NotificationStatus.DEFERRED

    def test_provider_error(self, client, webhook_gateway):
        webhook_gateway.verify_notification.side_effect = ProviderUnavailableError(
            "mercadopago unavailable"
        )

        response = _post(client)

        assert response.status_code == 502
        assert response.json()["reason"] == "provider_error"

    def test_non_object_body(self, client, webhook_gateway):
        response = _post(client, payload=["not", "an", "object"])

        assert response.status_code == 400
        assert response.json()["reason"] == "invalid_payload"

    def test_unknown_provider(self, client, mocker):
        mocker.patch(
            "escrow.webhooks.views.get_payment_gateway",
            side_effect=ImproperlyConfigured("unknown"),
        )

        response = _post(client, url="/api/v1/escrow/webhooks/paypal/")

        assert response.status_code == 404
        assert response.json()["reason"] == "unknown_provider"

    def test_get_not_allowed(self, client, webhook_gateway):
        response = client.get(WEBHOOK_URL)

        assert response.status_code == 405

    def test_gateway_closed_after_request(self, client, webhook_gateway):
        webhook_gateway.verify_signature.side_effect = WebhookSignatureError("bad")

        _post(client)

        webhook_gateway.__exit__.assert_called_once()
