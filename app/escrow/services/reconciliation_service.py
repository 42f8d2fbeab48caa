"""
Reconciler: turns provider notifications into confirmed deposits.

Every notification is stored verbatim before anything else happens, then
normalized through the payment gateway (which re-fetches the payment, so
amounts never come from the untrusted body) and applied.

Delivery is at-least-once and unordered, so processing must be safe when:
- the same notification arrives twice, or concurrently (one deposit entry)
- the notification arrives before the contract exists (deferred, replayed)
- the notification cannot be tied to a contract at all (kept for review)

Outcomes:
    PROCESSED   deposit recorded, or already recorded (idempotent replay)
    IGNORED     payment_not_approved / contract_not_awaiting_deposit
    UNRESOLVED  no usable reference; UnresolvedReferenceError raised
    DEFERRED    contract_not_found; ReconciliationContractNotFoundError raised
    FAILED      provider or database failure; the error is re-raised

Usage:
    from escrow.services import Reconciler

    with get_payment_gateway() as gateway:
        result = Reconciler(gateway).handle_notification(payload, raw_body)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from escrow.exceptions import (
    EscrowValidationError,
    InvalidStateError,
    ProviderError,
    ReconciliationContractNotFoundError,
    UnresolvedReferenceError,
)
from escrow.ledger import LedgerService
from escrow.models import Contract, ProviderNotification
from escrow.state_machines import NotificationStatus, PaymentStatus

if TYPE_CHECKING:
    from collections.abc import Mapping

    from escrow.adapters import NormalizedNotification, PaymentGateway
    from escrow.services.escrow_service import EscrowService

logger = logging.getLogger(__name__)

REPLAYABLE_STATUSES = (
    NotificationStatus.RECEIVED,
    NotificationStatus.DEFERRED,
    NotificationStatus.FAILED,
)


@dataclass
class ReconciliationResult:
    """
    Outcome of one notification.

    ok is True whenever the provider should stop redelivering; reason
    explains acknowledged notifications that did not record a deposit.
    """

    ok: bool
    notification_id: uuid.UUID
    reason: str | None = None
    ledger_entry_id: uuid.UUID | None = None
    contract_id: uuid.UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok}
        if self.reason:
            data["reason"] = self.reason
        if self.ledger_entry_id:
            data["ledger_entry_id"] = str(self.ledger_entry_id)
        return data


class Reconciler:
    """Applies provider notifications to contracts and the ledger."""

    def __init__(
        self,
        gateway: PaymentGateway,
        escrow_service: EscrowService | None = None,
    ) -> None:
        self.gateway = gateway
        if escrow_service is None:
            from escrow.services.escrow_service import EscrowService
            from escrow.services.payout_dispatcher import PayoutDispatcher

            escrow_service = EscrowService(gateway=gateway, dispatcher=PayoutDispatcher())
        self.escrow_service = escrow_service

    def handle_notification(
        self,
        payload: Mapping[str, Any],
        raw_body: str | bytes | None = None,
        provider: str | None = None,
    ) -> ReconciliationResult:
        """
        Persist and apply one notification.

        Raises:
            UnresolvedReferenceError: No reference maps to a contract
            ReconciliationContractNotFoundError: Referenced contract absent
            ProviderError: Payment lookup failed
        """
        if isinstance(raw_body, bytes):
            raw_body = raw_body.decode("utf-8", errors="replace")
        notification = ProviderNotification.objects.create(
            provider=provider or self.gateway.provider_name,
            raw_body=raw_body or "",
            payload=dict(payload),
        )
        logger.info(
            "Provider notification stored",
            extra={
                "notification_id": str(notification.id),
                "provider": notification.provider,
            },
        )
        return self._process(notification)

    def replay(self, notification_id: uuid.UUID | str) -> ReconciliationResult:
        """
        Reprocess a stored notification (recovery sweep, operators).

        Raises:
            EscrowValidationError: Notification already reached a final status
            ProviderNotification.DoesNotExist: No such notification
        """
        notification = ProviderNotification.objects.get(id=notification_id)
        if notification.status not in REPLAYABLE_STATUSES:
            raise EscrowValidationError(
                f"Notification in '{notification.status}' status cannot be replayed",
                details={"notification_id": str(notification.id)},
            )
        logger.info(
            "Replaying provider notification",
            extra={
                "notification_id": str(notification.id),
                "previous_status": notification.status,
                "attempts": notification.attempts,
            },
        )
        return self._process(notification)

    # =========================================================================
    # Processing
    # =========================================================================

    def _process(self, notification: ProviderNotification) -> ReconciliationResult:
        notification.mark_attempt()

        try:
            normalized = self.gateway.verify_notification(notification.payload)
        except ProviderError as e:
            notification.mark_failed(str(e))
            logger.warning(
                "Could not normalize provider notification",
                extra={"notification_id": str(notification.id), "error": str(e)},
            )
            raise

        notification.record_identifiers(
            normalized.provider_tx_id, normalized.external_reference
        )
        contract = self._resolve_contract(notification, normalized)

        tx_id = normalized.provider_tx_id
        if tx_id:
            existing = LedgerService.get_deposit(tx_id)
            if existing is not None:
                notification.mark_processed(contract=contract, reason="already_recorded")
                logger.info(
                    "Deposit already recorded for notification",
                    extra={
                        "notification_id": str(notification.id),
                        "provider_tx_id": tx_id,
                        "ledger_entry_id": str(existing.id),
                    },
                )
                return ReconciliationResult(
                    ok=True,
                    notification_id=notification.id,
                    ledger_entry_id=existing.id,
                    contract_id=existing.contract_id,
                )

        if normalized.status != PaymentStatus.APPROVED:
            notification.mark_ignored("payment_not_approved", contract=contract)
            logger.info(
                "Payment not approved, notification acknowledged",
                extra={
                    "notification_id": str(notification.id),
                    "payment_status": normalized.status,
                },
            )
            return ReconciliationResult(
                ok=True,
                notification_id=notification.id,
                reason="payment_not_approved",
                contract_id=contract.id,
            )

        if not tx_id:
            notification.mark_unresolved("missing_provider_tx_id")
            raise UnresolvedReferenceError(
                "Approved notification carries no provider transaction id",
                notification_id=notification.id,
            )

        if (
            normalized.amount_cents is not None
            and normalized.amount_cents != contract.gross_amount_cents
        ):
            logger.warning(
                "Deposit amount differs from the contract's gross amount",
                extra={
                    "notification_id": str(notification.id),
                    "contract_id": str(contract.id),
                    "amount_cents": normalized.amount_cents,
                    "gross_amount_cents": contract.gross_amount_cents,
                },
            )

        try:
            deposit = self.escrow_service.confirm_deposit(
                contract.id, tx_id, normalized.provider_fee_cents
            )
        except InvalidStateError:
            notification.mark_ignored("contract_not_awaiting_deposit", contract=contract)
            logger.warning(
                "Approved payment for a contract not awaiting deposit",
                extra={
                    "notification_id": str(notification.id),
                    "contract_id": str(contract.id),
                    "provider_tx_id": tx_id,
                },
            )
            return ReconciliationResult(
                ok=True,
                notification_id=notification.id,
                reason="contract_not_awaiting_deposit",
                contract_id=contract.id,
            )
        except EscrowValidationError as e:
            notification.mark_failed(str(e))
            raise

        notification.mark_processed(contract=contract)
        return ReconciliationResult(
            ok=True,
            notification_id=notification.id,
            ledger_entry_id=deposit.entry.id,
            contract_id=contract.id,
        )

    @staticmethod
    def _resolve_contract(
        notification: ProviderNotification, normalized: NormalizedNotification
    ) -> Contract:
        reference = normalized.external_reference
        if not reference:
            notification.mark_unresolved()
            logger.warning(
                "Notification has no external reference, kept for review",
                extra={"notification_id": str(notification.id)},
            )
            raise UnresolvedReferenceError(
                "Notification carries no external reference",
                notification_id=notification.id,
            )

        try:
            contract_id = uuid.UUID(str(reference))
        except ValueError:
            notification.mark_unresolved("malformed_reference")
            raise UnresolvedReferenceError(
                "External reference is not a contract id",
                notification_id=notification.id,
                details={"external_reference": reference},
            )

        contract = Contract.objects.filter(id=contract_id).first()
        if contract is None:
            notification.mark_deferred()
            logger.warning(
                "Notification references an unknown contract, deferred",
                extra={
                    "notification_id": str(notification.id),
                    "external_reference": reference,
                },
            )
            raise ReconciliationContractNotFoundError(
                f"Contract {reference} not found",
                details={
                    "contract_id": reference,
                    "notification_id": str(notification.id),
                },
            )
        return contract
