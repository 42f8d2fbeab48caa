"""
Ledger model for escrow money movements.

One LedgerEntry per DEPOSIT, RELEASE or REFUND of a contract. Entries are
immutable once written; corrections are new entries, never edits.

The unique idempotency_key is the idempotency boundary:
    deposit:{provider_tx_id}   at most one DEPOSIT per provider transaction
    release:{contract_id}      at most one RELEASE per contract
    refund:{contract_id}       at most one REFUND per contract

RELEASE entries also carry the payout tracking columns written by the
payout worker. Those, and the payout id written into provider_tx_id,
are the only columns that may change after insert.

Usage:
    from escrow.ledger.models import LedgerEntry

    entries = LedgerEntry.objects.filter(contract=contract).order_by("created_at")
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q

from core.model_mixins import ImmutableFieldsMixin, UUIDPrimaryKeyMixin

from escrow.exceptions import ImmutableRecordError
from escrow.state_machines import LedgerEntryType, PayoutStatus


class LedgerEntry(ImmutableFieldsMixin, UUIDPrimaryKeyMixin, models.Model):
    """
    A single money-movement event against a contract.

    Fields:
        contract: Owning contract
        entry_type: DEPOSIT, RELEASE or REFUND
        amount_cents: Gross amount moved (always positive)
        platform_fee_cents / provider_fee_cents / net_amount_cents: Fee split
        provider_tx_id: Provider transaction id (deposit/refund id, or the
            payout id written back onto a RELEASE entry)
        idempotency_key: Unique key preventing duplicate entries
        payout_*: Payout progress (RELEASE entries only)
    """

    immutable_fields = (
        "contract_id",
        "entry_type",
        "amount_cents",
        "platform_fee_cents",
        "provider_fee_cents",
        "net_amount_cents",
        "currency",
        "idempotency_key",
    )
    immutable_error_class = ImmutableRecordError

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this entry was recorded",
    )

    contract = models.ForeignKey(
        "escrow.Contract",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        help_text="Contract this movement belongs to",
    )
    entry_type = models.CharField(
        max_length=20,
        choices=LedgerEntryType.choices,
        help_text="Category of this entry",
    )

    # ==========================================================================
    # Amounts (integer minor units)
    # ==========================================================================

    amount_cents = models.BigIntegerField(
        help_text="Gross amount moved, in cents (always positive)",
    )
    platform_fee_cents = models.BigIntegerField(default=0)
    provider_fee_cents = models.BigIntegerField(default=0)
    net_amount_cents = models.BigIntegerField(default=0)
    currency = models.CharField(
        max_length=3,
        help_text="ISO 4217 currency code",
    )

    # ==========================================================================
    # Provider Reference & Idempotency
    # ==========================================================================

    provider_tx_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Provider transaction id (payout id for RELEASE entries)",
    )
    idempotency_key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Unique key to prevent duplicate entries",
    )
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Provider response excerpt and other context",
    )

    # ==========================================================================
    # Payout Tracking (RELEASE entries only)
    # ==========================================================================

    payout_status = models.CharField(
        max_length=20,
        choices=PayoutStatus.choices,
        null=True,
        blank=True,
        db_index=True,
        help_text="Payout progress for RELEASE entries",
    )
    payout_attempts = models.PositiveIntegerField(
        default=0,
        help_text="Number of payout attempts started",
    )
    payout_enqueued_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the payout job was last put on the queue",
    )
    payout_completed_at = models.DateTimeField(null=True, blank=True)
    payout_last_error = models.TextField(
        blank=True,
        default="",
        help_text="Last payout failure message",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Ledger Entry"
        verbose_name_plural = "Ledger Entries"
        indexes = [
            models.Index(
                fields=["contract", "entry_type"], name="escrow_ledger_ctr_type_idx"
            ),
            models.Index(
                fields=["payout_status", "payout_enqueued_at"],
                name="escrow_ledger_payout_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_cents__gt=0),
                name="escrow_ledger_amount_positive",
            ),
            models.CheckConstraint(
                condition=Q(
                    platform_fee_cents__gte=0,
                    provider_fee_cents__gte=0,
                    net_amount_cents__gte=0,
                ),
                name="escrow_ledger_fees_non_negative",
            ),
            models.UniqueConstraint(
                fields=["provider_tx_id"],
                condition=Q(entry_type=LedgerEntryType.DEPOSIT),
                name="escrow_ledger_one_deposit_per_provider_tx",
            ),
            models.UniqueConstraint(
                fields=["contract", "entry_type"],
                name="escrow_ledger_one_entry_type_per_contract",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.get_entry_type_display()}: {self.amount_cents} cents"

    def save(self, *args, **kwargs):
        if not self._state.adding and self._provider_tx_id_changed():
            raise ImmutableRecordError(
                "Only a RELEASE entry without a payout id accepts one after creation",
                details={"ledger_entry_id": str(self.pk)},
            )
        super().save(*args, **kwargs)
        self._loaded_provider_tx_id = self.provider_tx_id

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError(
            "Ledger entries cannot be deleted",
            details={"ledger_entry_id": str(self.pk)},
        )

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_provider_tx_id = instance.__dict__.get("provider_tx_id")
        return instance

    def _provider_tx_id_changed(self) -> bool:
        loaded = getattr(self, "_loaded_provider_tx_id", self.provider_tx_id)
        if self.provider_tx_id == loaded:
            return False
        return not (self.entry_type == LedgerEntryType.RELEASE and loaded is None)
