"""
ProviderNotification model: every inbound payment provider callback.

The raw body is stored before any processing, so a notification that
cannot be reconciled is kept for manual review rather than dropped.

Usage:
    from escrow.models import ProviderNotification

    notification = ProviderNotification.objects.create(
        provider=Provider.MERCADOPAGO,
        raw_body=request.body.decode(),
        payload=payload,
    )
    ...
    notification.mark_processed(contract=contract)
"""

from __future__ import annotations

from django.db import models
from django.db.models import F
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.state_machines import NotificationStatus, Provider


class ProviderNotification(UUIDPrimaryKeyMixin, BaseModel):
    """
    Stored provider notification and its reconciliation outcome.

    Processing Flow:
        1. Webhook arrives, signature verified
        2. Row inserted with status RECEIVED and the verbatim body
        3. Reconciler normalizes and applies it
        4. Status becomes PROCESSED, IGNORED, UNRESOLVED, DEFERRED or FAILED
        5. DEFERRED rows are replayed by the recovery sweep

    Fields:
        provider: Provider that sent the notification
        raw_body: Request body exactly as received
        payload: Parsed JSON payload
        status: Processing status
        reason: Why the notification ended in its status
        provider_tx_id / external_reference: Normalized identifiers
        contract: Contract it resolved to, when it did
        attempts: Number of processing attempts
    """

    # ==========================================================================
    # Received Data
    # ==========================================================================

    provider = models.CharField(
        max_length=20,
        choices=Provider.choices,
        help_text="Provider that sent this notification",
    )
    raw_body = models.TextField(
        blank=True,
        default="",
        help_text="Request body exactly as received",
    )
    payload = models.JSONField(
        default=dict,
        blank=True,
        help_text="Parsed JSON payload",
    )

    # ==========================================================================
    # Processing Status
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=NotificationStatus.choices,
        default=NotificationStatus.RECEIVED,
        db_index=True,
        help_text="Processing status",
    )
    reason = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text="Machine-readable outcome reason",
    )
    error_message = models.TextField(
        blank=True,
        default="",
        help_text="Error details if processing failed",
    )
    attempts = models.PositiveIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )
    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When processing reached a final status",
    )

    # ==========================================================================
    # Normalized Identifiers
    # ==========================================================================

    provider_tx_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
    )
    external_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
    )
    contract = models.ForeignKey(
        "escrow.Contract",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="notifications",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Provider Notification"
        verbose_name_plural = "Provider Notifications"
        indexes = [
            models.Index(
                fields=["status", "created_at"], name="escrow_notif_status_idx"
            ),
        ]

    def __str__(self) -> str:
        return f"ProviderNotification({self.id}, {self.provider}, {self.status})"

    def mark_attempt(self) -> None:
        self.attempts = F("attempts") + 1
        self.save(update_fields=["attempts", "updated_at"])
        self.refresh_from_db(fields=["attempts"])

    def record_identifiers(
        self, provider_tx_id: str | None, external_reference: str | None
    ) -> None:
        self.provider_tx_id = provider_tx_id
        self.external_reference = external_reference
        self.save(update_fields=["provider_tx_id", "external_reference", "updated_at"])

    def _finish(self, status: str, reason: str = "", error: str = "") -> None:
        self.status = status
        self.reason = reason
        self.error_message = error
        self.processed_at = timezone.now()
        self.save(
            update_fields=[
                "status",
                "reason",
                "error_message",
                "processed_at",
                "contract",
                "updated_at",
            ]
        )

    def mark_processed(self, contract=None, reason: str = "") -> None:
        if contract is not None:
            self.contract = contract
        self._finish(NotificationStatus.PROCESSED, reason)

    def mark_ignored(self, reason: str, contract=None) -> None:
        if contract is not None:
            self.contract = contract
        self._finish(NotificationStatus.IGNORED, reason)

    def mark_unresolved(self, reason: str = "unresolved_reference") -> None:
        self._finish(NotificationStatus.UNRESOLVED, reason)

    def mark_deferred(self, reason: str = "contract_not_found") -> None:
        self.status = NotificationStatus.DEFERRED
        self.reason = reason
        self.save(update_fields=["status", "reason", "updated_at"])

    def mark_failed(self, error: str) -> None:
        self._finish(NotificationStatus.FAILED, "processing_error", error[:2000])
