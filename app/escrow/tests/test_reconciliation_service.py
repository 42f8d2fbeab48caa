"""
Tests for the Reconciler.

Notifications are at-least-once and unordered; these tests cover
duplicates, notifications without a usable reference, notifications that
arrive before their contract, and payments that are not approved.
"""

from __future__ import annotations

from uuid import uuid4

import pytest

from escrow.exceptions import (
    EscrowValidationError,
    ProviderUnavailableError,
    ReconciliationContractNotFoundError,
    UnresolvedReferenceError,
)
from escrow.ledger import LedgerEntry
from escrow.models import Contract, ProviderNotification
from escrow.state_machines import (
    EscrowStatus,
    LedgerEntryType,
    NotificationStatus,
    PaymentStatus,
)
from escrow.tests.conftest import DEPOSIT_TX_ID
from escrow.tests.factories import ContractFactory

PAYLOAD = {"type": "payment", "data": {"id": DEPOSIT_TX_ID}}


@pytest.mark.django_db
class TestHandleNotification:
    def test_approved_payment_holds_contract(
        self, reconciler, payment_gateway, approved_notification, contract
    ):
        payment_gateway.verify_notification.return_value = approved_notification(contract)

        result = reconciler.handle_notification(
            PAYLOAD, raw_body=b'{"type": "payment"}', provider="mercadopago"
        )

        assert result.ok is True
        assert result.reason is None
        assert result.contract_id == contract.id
        entry = LedgerEntry.objects.get(id=result.ledger_entry_id)
        assert entry.entry_type == LedgerEntryType.DEPOSIT
        assert entry.provider_fee_cents == 3000

        contract = Contract.objects.get(id=contract.id)
        assert contract.escrow_status == EscrowStatus.HELD

        notification = ProviderNotification.objects.get(id=result.notification_id)
        assert notification.status == NotificationStatus.PROCESSED
        assert notification.raw_body == '{"type": "payment"}'
        assert notification.payload == PAYLOAD
        assert notification.provider_tx_id == DEPOSIT_TX_ID
        assert notification.contract_id == contract.id
        assert notification.attempts == 1

    def test_duplicate_notification_records_one_deposit(
        self, reconciler, payment_gateway, approved_notification, contract
    ):
        payment_gateway.verify_notification.return_value = approved_notification(contract)

        first = reconciler.handle_notification(PAYLOAD)
        second = reconciler.handle_notification(PAYLOAD)

        assert second.ok is True
        assert second.ledger_entry_id == first.ledger_entry_id
        assert LedgerEntry.objects.filter(
            contract=contract, entry_type=LedgerEntryType.DEPOSIT
        ).count() == 1
        assert ProviderNotification.objects.count() == 2
        assert ProviderNotification.objects.get(id=second.notification_id).reason == (
            "already_recorded"
        )

    def test_provider_defaults_to_gateway(
        self, reconciler, payment_gateway, approved_notification, contract
    ):
        payment_gateway.verify_notification.return_value = approved_notification(contract)

        result = reconciler.handle_notification(PAYLOAD)

        notification = ProviderNotification.objects.get(id=result.notification_id)
        assert notification.provider == "mercadopago"

    def test_to_dict(self, reconciler, payment_gateway, approved_notification, contract):
        payment_gateway.verify_notification.return_value = approved_notification(contract)

        result = reconciler.handle_notification(PAYLOAD)

        assert result.to_dict() == {
            "ok": True,
            "ledger_entry_id": str(result.ledger_entry_id),
        }

    @pytest.mark.parametrize(
        "status", [PaymentStatus.PENDING, PaymentStatus.REJECTED, PaymentStatus.UNKNOWN]
    )
    def test_payment_not_approved_is_acknowledged(
        self, reconciler, payment_gateway, approved_notification, contract, status
    ):
        payment_gateway.verify_notification.return_value = approved_notification(
            contract, status=status
        )

        result = reconciler.handle_notification(PAYLOAD)

        assert result.ok is True
        assert result.reason == "payment_not_approved"
        assert Contract.objects.get(id=contract.id).escrow_status == EscrowStatus.CREATED
        assert not LedgerEntry.objects.exists()
        notification = ProviderNotification.objects.get(id=result.notification_id)
        assert notification.status == NotificationStatus.IGNORED

    def test_approved_payment_for_held_contract_ignored(
        self, reconciler, payment_gateway, approved_notification, held_contract
    ):
        payment_gateway.verify_notification.return_value = approved_notification(
            held_contract, tx_id="pay_second"
        )

        result = reconciler.handle_notification(PAYLOAD)

        assert result.ok is True
        assert result.reason == "contract_not_awaiting_deposit"
        assert not LedgerEntry.objects.filter(provider_tx_id="pay_second").exists()

    def test_amount_mismatch_still_recorded(
        self, reconciler, payment_gateway, approved_notification, contract
    ):
        payment_gateway.verify_notification.return_value = approved_notification(
            contract, amount_cents=99000
        )

        result = reconciler.handle_notification(PAYLOAD)

        assert result.ledger_entry_id is not None
        assert LedgerEntry.objects.get(id=result.ledger_entry_id).amount_cents == 100000


@pytest.mark.django_db
class TestUnresolvedNotifications:
    def test_missing_reference_kept_without_mutation(
        self, reconciler, payment_gateway, approved_notification, contract
    ):
        payment_gateway.verify_notification.return_value = approved_notification(
            None, amount_cents=100000
        )

        with pytest.raises(UnresolvedReferenceError) as exc_info:
            reconciler.handle_notification({"id": "1", "topic": "payment"})

        notification = ProviderNotification.objects.get(
            id=exc_info.value.notification_id
        )
        assert notification.status == NotificationStatus.UNRESOLVED
        assert notification.reason == "unresolved_reference"
        assert notification.payload == {"id": "1", "topic": "payment"}
        assert not LedgerEntry.objects.exists()
        assert Contract.objects.get(id=contract.id).escrow_status == EscrowStatus.CREATED

    def test_malformed_reference(self, reconciler, payment_gateway, approved_notification):
        payment_gateway.verify_notification.return_value = approved_notification(
            None, external_reference="order-42", amount_cents=100
        )

        with pytest.raises(UnresolvedReferenceError):
            reconciler.handle_notification(PAYLOAD)

        notification = ProviderNotification.objects.get()
        assert notification.reason == "malformed_reference"

    def test_approved_without_tx_id(
        self, reconciler, payment_gateway, approved_notification, contract
    ):
        payment_gateway.verify_notification.return_value = approved_notification(
            contract, tx_id=None
        )

        with pytest.raises(UnresolvedReferenceError):
            reconciler.handle_notification(PAYLOAD)

        notification = ProviderNotification.objects.get()
        assert notification.status == NotificationStatus.UNRESOLVED
        assert notification.reason == "missing_provider_tx_id"
        assert not LedgerEntry.objects.exists()


@pytest.mark.django_db
class TestDeferredNotifications:
    def test_unknown_contract_deferred(
        self, reconciler, payment_gateway, approved_notification
    ):
        missing = ContractFactory.build()
        payment_gateway.verify_notification.return_value = approved_notification(missing)

        with pytest.raises(ReconciliationContractNotFoundError):
            reconciler.handle_notification(PAYLOAD)

        notification = ProviderNotification.objects.get()
        assert notification.status == NotificationStatus.DEFERRED
        assert notification.reason == "contract_not_found"
        assert notification.external_reference == str(missing.id)

    def test_replay_after_contract_appears(
        self, reconciler, payment_gateway, approved_notification
    ):
        contract_id = uuid4()
        pending = ContractFactory.build(id=contract_id)
        payment_gateway.verify_notification.return_value = approved_notification(pending)
        with pytest.raises(ReconciliationContractNotFoundError):
            reconciler.handle_notification(PAYLOAD)
        notification = ProviderNotification.objects.get()

        ContractFactory(id=contract_id)
        result = reconciler.replay(notification.id)

        assert result.ok is True
        assert result.notification_id == notification.id
        assert Contract.objects.get(id=contract_id).escrow_status == EscrowStatus.HELD
        notification = ProviderNotification.objects.get(id=notification.id)
        assert notification.status == NotificationStatus.PROCESSED
        assert notification.attempts == 2

    def test_replay_of_processed_notification_rejected(
        self, reconciler, payment_gateway, approved_notification, contract
    ):
        payment_gateway.verify_notification.return_value = approved_notification(contract)
        result = reconciler.handle_notification(PAYLOAD)

        with pytest.raises(EscrowValidationError):
            reconciler.replay(result.notification_id)


@pytest.mark.django_db
class TestProviderFailures:
    def test_lookup_failure_marks_failed_and_raises(self, reconciler, payment_gateway):
        payment_gateway.verify_notification.side_effect = ProviderUnavailableError(
            "mercadopago unavailable"
        )

        with pytest.raises(ProviderUnavailableError):
            reconciler.handle_notification(PAYLOAD)

        notification = ProviderNotification.objects.get()
        assert notification.status == NotificationStatus.FAILED
        assert "unavailable" in notification.error_message

    def test_failed_notification_can_be_replayed(
        self, reconciler, payment_gateway, approved_notification, contract
    ):
        payment_gateway.verify_notification.side_effect = [
            ProviderUnavailableError("mercadopago unavailable"),
            approved_notification(contract),
        ]
        with pytest.raises(ProviderUnavailableError):
            reconciler.handle_notification(PAYLOAD)
        notification = ProviderNotification.objects.get()

        result = reconciler.replay(notification.id)

        assert result.ledger_entry_id is not None
        assert Contract.objects.get(id=contract.id).escrow_status == EscrowStatus.HELD
