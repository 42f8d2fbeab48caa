"""
Recovery sweep for releases and notifications that fell through the cracks.

A release commits its ledger entry and status first and enqueues the
payout afterwards. If the enqueue never happened, or the queued job was
lost, the RELEASE entry sits PENDING (or stale ENQUEUED / IN_FLIGHT);
this sweep re-enqueues it. It also replays notifications that were
deferred because their contract did not exist yet.

Tasks:
- run_recovery_sweep: Periodic task (celery-beat, every
  ESCROW_RECOVERY_SWEEP_MINUTES)

Usage:
    from escrow.workers import run_recovery_sweep

    run_recovery_sweep.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from core.exceptions import BaseApplicationError

from escrow.exceptions import ProviderError
from escrow.models import ProviderNotification
from escrow.state_machines import NotificationStatus

logger = logging.getLogger(__name__)

# Maximum deferred notifications replayed per run
NOTIFICATION_BATCH_SIZE = 100


@shared_task(bind=True)
def run_recovery_sweep(self) -> dict:
    """
    Re-enqueue stranded payouts and replay deferred notifications.

    Returns:
        Dict with:
        - requeued_count: Payout jobs enqueued again
        - requeue_failed_count: Entries whose enqueue failed again
        - replayed_count: Deferred notifications replayed
        - still_deferred_count: Replayed notifications still without contract

    Note:
        Idempotent. A job enqueued twice is processed once: the worker
        skips entries whose payout already completed.
    """
    logger.info("Starting escrow recovery sweep")

    requeued, requeue_failed = _requeue_stranded_payouts()
    replayed, still_deferred = _replay_deferred_notifications()

    result = {
        "requeued_count": requeued,
        "requeue_failed_count": requeue_failed,
        "replayed_count": replayed,
        "still_deferred_count": still_deferred,
    }
    logger.info("Escrow recovery sweep complete", extra=result)
    return result


def _requeue_stranded_payouts() -> tuple[int, int]:
    from escrow.services.payout_dispatcher import PayoutDispatcher

    requeued = 0
    failed = 0
    dispatcher = PayoutDispatcher()
    for entry in dispatcher.find_unqueued_releases():
        try:
            dispatcher.enqueue(dispatcher.build_job(entry))
            requeued += 1
            logger.warning(
                "Re-enqueued stranded payout",
                extra={
                    "ledger_entry_id": str(entry.id),
                    "contract_id": str(entry.contract_id),
                    "payout_status": entry.payout_status,
                },
            )
        except Exception as e:
            failed += 1
            logger.error(
                f"Failed to re-enqueue payout: {e}",
                extra={"ledger_entry_id": str(entry.id)},
                exc_info=True,
            )
    return requeued, failed


def _replay_deferred_notifications() -> tuple[int, int]:
    from escrow.adapters import get_payment_gateway
    from escrow.services.reconciliation_service import Reconciler

    cutoff = timezone.now() - timedelta(hours=settings.ESCROW_NOTIFICATION_REPLAY_HOURS)
    deferred = list(
        ProviderNotification.objects.filter(
            status=NotificationStatus.DEFERRED,
            created_at__gte=cutoff,
        ).order_by("created_at")[:NOTIFICATION_BATCH_SIZE]
    )
    if not deferred:
        return 0, 0

    replayed = 0
    still_deferred = 0
    gateways = {}
    try:
        for notification in deferred:
            gateway = gateways.get(notification.provider)
            if gateway is None:
                gateway = gateways[notification.provider] = get_payment_gateway(
                    notification.provider
                )
            try:
                Reconciler(gateway).replay(notification.id)
                replayed += 1
            except ProviderError as e:
                logger.warning(
                    "Provider error replaying notification",
                    extra={"notification_id": str(notification.id), "error": str(e)},
                )
            except BaseApplicationError as e:
                # Contract still missing or reference unusable
                replayed += 1
                if ProviderNotification.objects.filter(
                    id=notification.id, status=NotificationStatus.DEFERRED
                ).exists():
                    still_deferred += 1
                logger.info(
                    "Deferred notification replay did not settle it",
                    extra={
                        "notification_id": str(notification.id),
                        "error_code": e.error_code,
                    },
                )
    finally:
        for gateway in gateways.values():
            gateway.close()
    return replayed, still_deferred
