"""
Ledger service layer for escrow money movements.

All ledger writes go through LedgerService so idempotency and payout
tracking stay in one place. Methods are static; no instance state.

Usage:
    from escrow.ledger.services import LedgerService
    from escrow.ledger.types import RecordEntryParams

    entry, created = LedgerService.record_entry(RecordEntryParams(...))
    deposit = LedgerService.get_deposit(provider_tx_id="pay_123")
"""

from __future__ import annotations

import logging
import uuid

from django.db import IntegrityError, transaction
from django.db.models import F, QuerySet
from django.utils import timezone

from escrow.exceptions import ImmutableRecordError
from escrow.state_machines import LedgerEntryType, PayoutStatus

from .models import LedgerEntry
from .types import RecordEntryParams, deposit_key

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Service class for ledger operations.

    Key features:
    - Idempotency via unique keys (safe to retry)
    - Concurrent inserts of the same key resolve to the winner's row
    - Payout progress updates restricted to RELEASE entries
    """

    # =========================================================================
    # Recording
    # =========================================================================

    @staticmethod
    def record_entry(params: RecordEntryParams) -> tuple[LedgerEntry, bool]:
        """
        Record a ledger entry.

        Idempotent: if an entry with the same idempotency_key exists it is
        returned untouched. Runs in a savepoint so a lost insert race leaves
        the caller's transaction usable.

        Returns:
            (entry, created) where created is False on replay
        """
        existing = LedgerEntry.objects.filter(
            idempotency_key=params.idempotency_key
        ).first()
        if existing is not None:
            return existing, False

        try:
            with transaction.atomic():
                entry = LedgerEntry.objects.create(
                    contract_id=params.contract_id,
                    entry_type=params.entry_type,
                    amount_cents=params.amount_cents,
                    platform_fee_cents=params.platform_fee_cents,
                    provider_fee_cents=params.provider_fee_cents,
                    net_amount_cents=params.net_amount_cents,
                    currency=params.currency,
                    provider_tx_id=params.provider_tx_id,
                    idempotency_key=params.idempotency_key,
                    payout_status=params.payout_status,
                    metadata=params.metadata or {},
                )
        except IntegrityError:
            # Another worker inserted the same key between our check and create
            entry = LedgerEntry.objects.get(idempotency_key=params.idempotency_key)
            logger.info(
                "Ledger entry already recorded by a concurrent writer",
                extra={
                    "idempotency_key": params.idempotency_key,
                    "ledger_entry_id": str(entry.id),
                },
            )
            return entry, False

        logger.info(
            "Ledger entry recorded",
            extra={
                "ledger_entry_id": str(entry.id),
                "contract_id": str(params.contract_id),
                "entry_type": str(params.entry_type),
                "amount_cents": params.amount_cents,
                "idempotency_key": params.idempotency_key,
            },
        )
        return entry, True

    # =========================================================================
    # Lookups
    # =========================================================================

    @staticmethod
    def get_deposit(provider_tx_id: str) -> LedgerEntry | None:
        """Return the DEPOSIT entry recorded for a provider transaction, if any."""
        if not provider_tx_id:
            return None
        return LedgerEntry.objects.filter(
            idempotency_key=deposit_key(provider_tx_id)
        ).first()

    @staticmethod
    def get_entry(
        contract_id: uuid.UUID, entry_type: LedgerEntryType | str
    ) -> LedgerEntry | None:
        return LedgerEntry.objects.filter(
            contract_id=contract_id, entry_type=entry_type
        ).first()

    @staticmethod
    def entries_for_contract(contract_id: uuid.UUID) -> QuerySet[LedgerEntry]:
        return LedgerEntry.objects.filter(contract_id=contract_id).order_by(
            "created_at"
        )

    @staticmethod
    def lock_release_entry(entry_id: uuid.UUID) -> LedgerEntry:
        """
        Load a RELEASE entry with a row lock.

        Must be called inside a transaction.

        Raises:
            LedgerEntry.DoesNotExist: No RELEASE entry with this id
        """
        return LedgerEntry.objects.select_for_update().get(
            id=entry_id, entry_type=LedgerEntryType.RELEASE
        )

    # =========================================================================
    # Payout Tracking
    # =========================================================================

    @staticmethod
    def mark_payout_enqueued(entry_id: uuid.UUID) -> int:
        """
        Flag a RELEASE entry as queued for payout.

        Entries already COMPLETED or DEAD_LETTER are left alone.

        Returns:
            Number of rows updated (0 or 1)
        """
        return (
            LedgerEntry.objects.filter(
                id=entry_id, entry_type=LedgerEntryType.RELEASE
            )
            .exclude(
                payout_status__in=[PayoutStatus.COMPLETED, PayoutStatus.DEAD_LETTER]
            )
            .update(
                payout_status=PayoutStatus.ENQUEUED,
                payout_enqueued_at=timezone.now(),
            )
        )

    @staticmethod
    def mark_payout_in_flight(entry: LedgerEntry) -> LedgerEntry:
        LedgerService._require_release(entry)
        entry.payout_status = PayoutStatus.IN_FLIGHT
        entry.payout_attempts = F("payout_attempts") + 1
        entry.save(update_fields=["payout_status", "payout_attempts"])
        entry.payout_attempts = LedgerEntry.objects.values_list(
            "payout_attempts", flat=True
        ).get(id=entry.id)
        return entry

    @staticmethod
    def complete_payout(entry: LedgerEntry, provider_payout_id: str) -> LedgerEntry:
        """
        Write the provider payout id back onto a RELEASE entry.

        The contract's escrow status is not touched; it is already RELEASED.
        """
        LedgerService._require_release(entry)
        entry.provider_tx_id = provider_payout_id
        entry.payout_status = PayoutStatus.COMPLETED
        entry.payout_completed_at = timezone.now()
        entry.payout_last_error = ""
        entry.save(
            update_fields=[
                "provider_tx_id",
                "payout_status",
                "payout_completed_at",
                "payout_last_error",
            ]
        )
        return entry

    @staticmethod
    def record_payout_failure(
        entry: LedgerEntry, error: str, dead_letter: bool = False
    ) -> LedgerEntry:
        """
        Store a payout failure.

        A retryable failure puts the entry back to ENQUEUED (the retry is
        already scheduled); a final one moves it to DEAD_LETTER.
        """
        LedgerService._require_release(entry)
        entry.payout_status = (
            PayoutStatus.DEAD_LETTER if dead_letter else PayoutStatus.ENQUEUED
        )
        entry.payout_last_error = error[:2000]
        update_fields = ["payout_status", "payout_last_error"]
        if not dead_letter:
            entry.payout_enqueued_at = timezone.now()
            update_fields.append("payout_enqueued_at")
        entry.save(update_fields=update_fields)
        return entry

    @staticmethod
    def _require_release(entry: LedgerEntry) -> None:
        if entry.entry_type != LedgerEntryType.RELEASE:
            raise ImmutableRecordError(
                "Payout tracking only applies to RELEASE entries",
                details={
                    "ledger_entry_id": str(entry.id),
                    "entry_type": entry.entry_type,
                },
            )
