"""
Contract model: one escrow engagement between a client and a worker.

The contract owns the escrow lifecycle. Status changes happen only through
the django-fsm transitions below, and only EscrowService calls them.

Usage:
    from escrow.models import Contract

    contract = Contract.objects.create(
        client_id="client-1",
        worker_id="worker-9",
        gross_amount_cents=100000,
        applied_platform_fee_pct=Decimal("7.00"),
    )

    contract.hold(provider_tx_id="pay_123", provider_fee_cents=3000)
    contract.save()
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from django_fsm import ConcurrentTransitionMixin, FSMField, transition

from core.model_mixins import ImmutableFieldsMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.exceptions import ImmutableRecordError, InvalidStateError
from escrow.state_machines import EscrowStatus

if TYPE_CHECKING:
    from escrow.services.fee_calculator import FeeBreakdown


def default_currency() -> str:
    return settings.ESCROW_CURRENCY


class Contract(
    ConcurrentTransitionMixin, ImmutableFieldsMixin, UUIDPrimaryKeyMixin, BaseModel
):
    """
    Escrow contract tracking money from deposit to release or refund.

    State Flow:
        CREATED -> HELD -> RELEASED
        CREATED -> HELD -> REFUNDED

    ConcurrentTransitionMixin turns every save into a conditional update on
    the status the instance was loaded with, so two writers racing from the
    same status cannot both commit.

    Invariant (RELEASED and REFUNDED):
        net_amount_cents == gross - platform_fee - provider_fee
    """

    immutable_fields = (
        "client_id",
        "worker_id",
        "gross_amount_cents",
        "applied_platform_fee_pct",
        "currency",
    )
    immutable_error_class = ImmutableRecordError

    # ==========================================================================
    # Parties
    # ==========================================================================

    client_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Opaque identifier of the paying client",
    )
    worker_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Opaque identifier of the receiving worker",
    )
    worker_payout_destination = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Provider account that receives the worker payout",
    )
    description = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Short description shown on the provider checkout",
    )

    # ==========================================================================
    # Amounts (integer minor units)
    # ==========================================================================

    currency = models.CharField(
        max_length=3,
        default=default_currency,
        help_text="ISO 4217 currency code",
    )
    gross_amount_cents = models.BigIntegerField(
        help_text="Amount the client deposits, in cents",
    )
    applied_platform_fee_pct = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        validators=[MinValueValidator(Decimal("0")), MaxValueValidator(Decimal("100"))],
        help_text="Platform fee percentage captured at creation (immutable)",
    )
    platform_fee_cents = models.BigIntegerField(
        default=0,
        help_text="Platform fee withheld on release, in cents",
    )
    provider_fee_cents = models.BigIntegerField(
        default=0,
        help_text="Fee charged by the provider on the deposit, in cents",
    )
    net_amount_cents = models.BigIntegerField(
        default=0,
        help_text="Amount owed to the worker (or settled on refund), in cents",
    )

    # ==========================================================================
    # Escrow State
    # ==========================================================================

    escrow_status = FSMField(
        default=EscrowStatus.CREATED,
        choices=EscrowStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current escrow status (managed by FSM)",
    )
    status_changed_at = models.DateTimeField(
        default=timezone.now,
        help_text="When escrow_status last changed",
    )
    preference_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Last payment preference obtained from the provider",
    )
    deposit_provider_tx_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Provider transaction id of the reconciled deposit",
    )

    held_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Contract"
        verbose_name_plural = "Contracts"
        indexes = [
            models.Index(
                fields=["escrow_status", "status_changed_at"],
                name="escrow_contract_status_idx",
            ),
            models.Index(
                fields=["client_id", "created_at"], name="escrow_contract_client_idx"
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(gross_amount_cents__gt=0),
                name="escrow_contract_gross_positive",
            ),
            models.CheckConstraint(
                condition=Q(
                    platform_fee_cents__gte=0,
                    provider_fee_cents__gte=0,
                    net_amount_cents__gte=0,
                ),
                name="escrow_contract_fees_non_negative",
            ),
            models.CheckConstraint(
                condition=~Q(escrow_status=EscrowStatus.CREATED)
                | Q(platform_fee_cents=0, provider_fee_cents=0, net_amount_cents=0),
                name="escrow_contract_no_fees_before_deposit",
            ),
            models.CheckConstraint(
                condition=Q(
                    escrow_status__in=[EscrowStatus.CREATED, EscrowStatus.HELD]
                )
                | Q(
                    net_amount_cents=F("gross_amount_cents")
                    - F("platform_fee_cents")
                    - F("provider_fee_cents")
                ),
                name="escrow_contract_net_conservation",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.gross_amount_cents / 100:.2f} {self.currency.upper()}"
        return f"Contract({self.id}, {self.escrow_status}, {amount_display})"

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError(
            "Contracts are retained for audit and cannot be deleted",
            details={"contract_id": str(self.pk)},
        )

    @property
    def is_terminal(self) -> bool:
        return self.escrow_status in (EscrowStatus.RELEASED, EscrowStatus.REFUNDED)

    def check_amount_invariant(self) -> None:
        """
        Verify net = gross - platform - provider for settled contracts.

        Raises:
            InvalidStateError: The stored amounts do not add up
        """
        if not self.is_terminal:
            return
        expected = (
            self.gross_amount_cents - self.platform_fee_cents - self.provider_fee_cents
        )
        if self.net_amount_cents != expected:
            raise InvalidStateError(
                "Contract amounts do not add up",
                error_code="AMOUNT_INVARIANT_VIOLATED",
                details={
                    "contract_id": str(self.pk),
                    "gross_amount_cents": self.gross_amount_cents,
                    "platform_fee_cents": self.platform_fee_cents,
                    "provider_fee_cents": self.provider_fee_cents,
                    "net_amount_cents": self.net_amount_cents,
                },
            )

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=escrow_status,
        source=EscrowStatus.CREATED,
        target=EscrowStatus.HELD,
    )
    def hold(self, provider_tx_id: str, provider_fee_cents: int) -> None:
        """
        Record a reconciled deposit.

        Transition: CREATED -> HELD

        The provider fee is kept for the fee split at release time.
        """
        now = timezone.now()
        self.deposit_provider_tx_id = provider_tx_id
        self.provider_fee_cents = provider_fee_cents
        self.held_at = now
        self.status_changed_at = now

    @transition(
        field=escrow_status,
        source=EscrowStatus.HELD,
        target=EscrowStatus.RELEASED,
    )
    def release(self, fees: FeeBreakdown) -> None:
        """
        Release escrowed funds to the worker.

        Transition: HELD -> RELEASED

        Payout happens asynchronously; its progress is tracked on the
        RELEASE ledger entry, not here.
        """
        now = timezone.now()
        self.platform_fee_cents = fees.platform_fee_cents
        self.provider_fee_cents = fees.provider_fee_cents
        self.net_amount_cents = fees.net_amount_cents
        self.released_at = now
        self.status_changed_at = now

    @transition(
        field=escrow_status,
        source=EscrowStatus.HELD,
        target=EscrowStatus.REFUNDED,
    )
    def refund(self) -> None:
        """
        Return escrowed funds to the client.

        Transition: HELD -> REFUNDED

        No platform fee is withheld. The deposit's provider fee stays
        recorded, so net is what remains of the gross after that fee.
        """
        now = timezone.now()
        self.platform_fee_cents = 0
        self.net_amount_cents = self.gross_amount_cents - self.provider_fee_cents
        self.refunded_at = now
        self.status_changed_at = now
