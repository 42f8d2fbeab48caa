"""
Serializers for the escrow API.

Serializer Hierarchy:
    ContractCreateSerializer: Contract creation input
    ContractSerializer: Contract detail (read-only)
    LedgerEntrySerializer: Ledger entry (read-only)

    DepositRequestSerializer / RefundRequestSerializer: Action inputs
    PreferenceSerializer, ReleaseResponseSerializer,
    RefundResponseSerializer: Action outputs

Design Decisions:
    - Amounts are integer cents on the wire as well as in storage
    - Read and write serializers are separate
    - Status and fee fields are never writable; they change only
      through EscrowService
"""

from __future__ import annotations

from decimal import Decimal

from rest_framework import serializers

from escrow.models import Contract, LedgerEntry


class ContractCreateSerializer(serializers.Serializer):
    client_id = serializers.CharField(max_length=64)
    worker_id = serializers.CharField(max_length=64)
    gross_amount_cents = serializers.IntegerField(
        min_value=1,
        help_text="Amount the client deposits, in cents",
    )
    platform_fee_pct = serializers.DecimalField(
        max_digits=5,
        decimal_places=2,
        min_value=Decimal("0"),
        max_value=Decimal("100"),
        required=False,
        help_text="Overrides ESCROW_PLATFORM_FEE_PERCENT for this contract",
    )
    currency = serializers.CharField(min_length=3, max_length=3, required=False)
    description = serializers.CharField(
        max_length=255, required=False, allow_blank=True, default=""
    )
    worker_payout_destination = serializers.CharField(
        max_length=255, required=False, allow_blank=True, default=""
    )

    def validate(self, attrs):
        if attrs["client_id"] == attrs["worker_id"]:
            raise serializers.ValidationError(
                {"worker_id": "Client and worker must be different parties."}
            )
        return attrs


class ContractSerializer(serializers.ModelSerializer):
    class Meta:
        model = Contract
        fields = [
            "id",
            "client_id",
            "worker_id",
            "description",
            "currency",
            "gross_amount_cents",
            "applied_platform_fee_pct",
            "platform_fee_cents",
            "provider_fee_cents",
            "net_amount_cents",
            "escrow_status",
            "status_changed_at",
            "preference_id",
            "deposit_provider_tx_id",
            "held_at",
            "released_at",
            "refunded_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class LedgerEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = LedgerEntry
        fields = [
            "id",
            "entry_type",
            "amount_cents",
            "platform_fee_cents",
            "provider_fee_cents",
            "net_amount_cents",
            "currency",
            "provider_tx_id",
            "payout_status",
            "payout_attempts",
            "payout_completed_at",
            "created_at",
        ]
        read_only_fields = fields


class DepositRequestSerializer(serializers.Serializer):
    return_url = serializers.URLField(
        help_text="Where the provider sends the client after checkout"
    )


class RefundRequestSerializer(serializers.Serializer):
    provider_tx_id = serializers.CharField(
        max_length=255,
        help_text="Provider transaction id of the deposit being refunded",
    )


class PreferenceSerializer(serializers.Serializer):
    preference_id = serializers.CharField()
    init_point = serializers.CharField(allow_null=True)
    sandbox_init_point = serializers.CharField(allow_null=True)
    external_reference = serializers.CharField()


class FeeBreakdownSerializer(serializers.Serializer):
    gross_amount_cents = serializers.IntegerField()
    platform_fee_cents = serializers.IntegerField()
    provider_fee_cents = serializers.IntegerField()
    net_amount_cents = serializers.IntegerField()


class ReleaseResponseSerializer(serializers.Serializer):
    release_tx_id = serializers.UUIDField(help_text="RELEASE ledger entry id")
    fees = FeeBreakdownSerializer()


class RefundResponseSerializer(serializers.Serializer):
    refund_tx_id = serializers.UUIDField(help_text="REFUND ledger entry id")
    provider_response = serializers.DictField()
