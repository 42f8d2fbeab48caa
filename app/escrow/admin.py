"""
Escrow admin configuration.

Everything here is read-only: contracts change status only through
EscrowService, ledger entries are immutable, and provider notifications
are an audit trail. Operators use the admin to inspect dead-lettered
payouts and unresolved notifications.
"""

from django.contrib import admin

from escrow.ledger.models import LedgerEntry
from escrow.models import Contract, ProviderNotification


class ReadOnlyAdminMixin:
    """Disable add, change and delete in the admin."""

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


class LedgerEntryInline(admin.TabularInline):
    model = LedgerEntry
    extra = 0
    can_delete = False
    fields = [
        "entry_type",
        "amount_cents",
        "platform_fee_cents",
        "provider_fee_cents",
        "net_amount_cents",
        "provider_tx_id",
        "payout_status",
        "created_at",
    ]
    readonly_fields = fields

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Contract)
class ContractAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """
    Admin configuration for Contract.

    Shows the fee split and escrow status with the contract's ledger inline.
    """

    list_display = [
        "id",
        "client_id",
        "worker_id",
        "gross_display",
        "escrow_status",
        "status_changed_at",
        "created_at",
    ]
    list_filter = ["escrow_status", "currency"]
    search_fields = ["id", "client_id", "worker_id", "deposit_provider_tx_id"]
    ordering = ["-created_at"]
    inlines = [LedgerEntryInline]

    fieldsets = (
        (None, {"fields": ("id", "client_id", "worker_id", "description")}),
        (
            "Amounts",
            {
                "fields": (
                    "currency",
                    "gross_amount_cents",
                    "applied_platform_fee_pct",
                    "platform_fee_cents",
                    "provider_fee_cents",
                    "net_amount_cents",
                ),
            },
        ),
        (
            "Escrow",
            {
                "fields": (
                    "escrow_status",
                    "status_changed_at",
                    "preference_id",
                    "deposit_provider_tx_id",
                    "worker_payout_destination",
                    "held_at",
                    "released_at",
                    "refunded_at",
                ),
            },
        ),
    )

    def gross_display(self, obj: Contract) -> str:
        return f"{obj.gross_amount_cents / 100:.2f} {obj.currency}"

    gross_display.short_description = "Gross"


@admin.register(LedgerEntry)
class LedgerEntryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """
    Admin configuration for LedgerEntry.

    Filter on payout_status=dead_letter to find releases whose payout
    needs an operator.
    """

    list_display = [
        "id",
        "created_at",
        "entry_type",
        "contract",
        "amount_cents",
        "net_amount_cents",
        "payout_status",
        "payout_attempts",
    ]
    list_filter = ["entry_type", "payout_status", "currency"]
    search_fields = ["id", "idempotency_key", "provider_tx_id", "contract__id"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]


@admin.register(ProviderNotification)
class ProviderNotificationAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Admin configuration for ProviderNotification."""

    list_display = [
        "id",
        "provider",
        "status",
        "reason",
        "provider_tx_id",
        "attempts",
        "created_at",
    ]
    list_filter = ["provider", "status", "reason"]
    search_fields = ["id", "provider_tx_id", "external_reference"]
    ordering = ["-created_at"]
