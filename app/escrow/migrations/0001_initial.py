"""
Initial escrow schema.

Changes:
    - Create Contract with FSM-managed escrow_status
    - Create LedgerEntry with idempotency and one-entry-per-type constraints
    - Create ProviderNotification for stored provider callbacks
"""

from decimal import Decimal
import uuid

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
import django_fsm
from django.db import migrations, models

import escrow.models.contract


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Contract",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "client_id",
                    models.CharField(
                        db_index=True,
                        help_text="Opaque identifier of the paying client",
                        max_length=64,
                    ),
                ),
                (
                    "worker_id",
                    models.CharField(
                        db_index=True,
                        help_text="Opaque identifier of the receiving worker",
                        max_length=64,
                    ),
                ),
                (
                    "worker_payout_destination",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Provider account that receives the worker payout",
                        max_length=255,
                    ),
                ),
                (
                    "description",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Short description shown on the provider checkout",
                        max_length=255,
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default=escrow.models.contract.default_currency,
                        help_text="ISO 4217 currency code",
                        max_length=3,
                    ),
                ),
                (
                    "gross_amount_cents",
                    models.BigIntegerField(
                        help_text="Amount the client deposits, in cents",
                    ),
                ),
                (
                    "applied_platform_fee_pct",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Platform fee percentage captured at creation (immutable)",
                        max_digits=5,
                        validators=[
                            django.core.validators.MinValueValidator(Decimal("0")),
                            django.core.validators.MaxValueValidator(Decimal("100")),
                        ],
                    ),
                ),
                (
                    "platform_fee_cents",
                    models.BigIntegerField(
                        default=0,
                        help_text="Platform fee withheld on release, in cents",
                    ),
                ),
                (
                    "provider_fee_cents",
                    models.BigIntegerField(
                        default=0,
                        help_text="Fee charged by the provider on the deposit, in cents",
                    ),
                ),
                (
                    "net_amount_cents",
                    models.BigIntegerField(
                        default=0,
                        help_text="Amount owed to the worker (or settled on refund), in cents",
                    ),
                ),
                (
                    "escrow_status",
                    django_fsm.FSMField(
                        choices=[
                            ("created", "Created"),
                            ("held", "Held"),
                            ("released", "Released"),
                            ("refunded", "Refunded"),
                        ],
                        db_index=True,
                        default="created",
                        help_text="Current escrow status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "status_changed_at",
                    models.DateTimeField(
                        default=django.utils.timezone.now,
                        help_text="When escrow_status last changed",
                    ),
                ),
                (
                    "preference_id",
                    models.CharField(
                        blank=True,
                        help_text="Last payment preference obtained from the provider",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "deposit_provider_tx_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Provider transaction id of the reconciled deposit",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("held_at", models.DateTimeField(blank=True, null=True)),
                ("released_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Contract",
                "verbose_name_plural": "Contracts",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["escrow_status", "status_changed_at"],
                        name="escrow_contract_status_idx",
                    ),
                    models.Index(
                        fields=["client_id", "created_at"],
                        name="escrow_contract_client_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(gross_amount_cents__gt=0),
                        name="escrow_contract_gross_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            platform_fee_cents__gte=0,
                            provider_fee_cents__gte=0,
                            net_amount_cents__gte=0,
                        ),
                        name="escrow_contract_fees_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=~models.Q(escrow_status="created")
                        | models.Q(
                            platform_fee_cents=0,
                            provider_fee_cents=0,
                            net_amount_cents=0,
                        ),
                        name="escrow_contract_no_fees_before_deposit",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(escrow_status__in=["created", "held"])
                        | models.Q(
                            net_amount_cents=models.F("gross_amount_cents")
                            - models.F("platform_fee_cents")
                            - models.F("provider_fee_cents")
                        ),
                        name="escrow_contract_net_conservation",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this entry was recorded",
                    ),
                ),
                (
                    "entry_type",
                    models.CharField(
                        choices=[
                            ("deposit", "Deposit"),
                            ("release", "Release"),
                            ("refund", "Refund"),
                        ],
                        help_text="Category of this entry",
                        max_length=20,
                    ),
                ),
                (
                    "amount_cents",
                    models.BigIntegerField(
                        help_text="Gross amount moved, in cents (always positive)",
                    ),
                ),
                ("platform_fee_cents", models.BigIntegerField(default=0)),
                ("provider_fee_cents", models.BigIntegerField(default=0)),
                ("net_amount_cents", models.BigIntegerField(default=0)),
                (
                    "currency",
                    models.CharField(help_text="ISO 4217 currency code", max_length=3),
                ),
                (
                    "provider_tx_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Provider transaction id (payout id for RELEASE entries)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "idempotency_key",
                    models.CharField(
                        help_text="Unique key to prevent duplicate entries",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Provider response excerpt and other context",
                    ),
                ),
                (
                    "payout_status",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("pending", "Pending"),
                            ("enqueued", "Enqueued"),
                            ("in_flight", "In Flight"),
                            ("completed", "Completed"),
                            ("dead_letter", "Dead Letter"),
                        ],
                        db_index=True,
                        help_text="Payout progress for RELEASE entries",
                        max_length=20,
                        null=True,
                    ),
                ),
                (
                    "payout_attempts",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Number of payout attempts started",
                    ),
                ),
                (
                    "payout_enqueued_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the payout job was last put on the queue",
                        null=True,
                    ),
                ),
                ("payout_completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payout_last_error",
                    models.TextField(
                        blank=True,
                        default="",
                        help_text="Last payout failure message",
                    ),
                ),
                (
                    "contract",
                    models.ForeignKey(
                        help_text="Contract this movement belongs to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="escrow.contract",
                    ),
                ),
            ],
            options={
                "verbose_name": "Ledger Entry",
                "verbose_name_plural": "Ledger Entries",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["contract", "entry_type"],
                        name="escrow_ledger_ctr_type_idx",
                    ),
                    models.Index(
                        fields=["payout_status", "payout_enqueued_at"],
                        name="escrow_ledger_payout_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(amount_cents__gt=0),
                        name="escrow_ledger_amount_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            platform_fee_cents__gte=0,
                            provider_fee_cents__gte=0,
                            net_amount_cents__gte=0,
                        ),
                        name="escrow_ledger_fees_non_negative",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(entry_type="deposit"),
                        fields=("provider_tx_id",),
                        name="escrow_ledger_one_deposit_per_provider_tx",
                    ),
                    models.UniqueConstraint(
                        fields=("contract", "entry_type"),
                        name="escrow_ledger_one_entry_type_per_contract",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ProviderNotification",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "provider",
                    models.CharField(
                        choices=[
                            ("mercadopago", "Mercado Pago"),
                            ("stripe", "Stripe"),
                            ("sandbox", "Sandbox"),
                        ],
                        help_text="Provider that sent this notification",
                        max_length=20,
                    ),
                ),
                (
                    "raw_body",
                    models.TextField(
                        blank=True,
                        default="",
                        help_text="Request body exactly as received",
                    ),
                ),
                (
                    "payload",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Parsed JSON payload",
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("received", "Received"),
                            ("processed", "Processed"),
                            ("ignored", "Ignored"),
                            ("unresolved", "Unresolved"),
                            ("deferred", "Deferred"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="received",
                        help_text="Processing status",
                        max_length=20,
                    ),
                ),
                (
                    "reason",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Machine-readable outcome reason",
                        max_length=64,
                    ),
                ),
                (
                    "error_message",
                    models.TextField(
                        blank=True,
                        default="",
                        help_text="Error details if processing failed",
                    ),
                ),
                (
                    "attempts",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Number of processing attempts",
                    ),
                ),
                (
                    "processed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When processing reached a final status",
                        null=True,
                    ),
                ),
                (
                    "provider_tx_id",
                    models.CharField(
                        blank=True, db_index=True, max_length=255, null=True
                    ),
                ),
                (
                    "external_reference",
                    models.CharField(
                        blank=True, db_index=True, max_length=255, null=True
                    ),
                ),
                (
                    "contract",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="notifications",
                        to="escrow.contract",
                    ),
                ),
            ],
            options={
                "verbose_name": "Provider Notification",
                "verbose_name_plural": "Provider Notifications",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"],
                        name="escrow_notif_status_idx",
                    ),
                ],
            },
        ),
    ]
