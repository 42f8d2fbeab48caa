"""
Payout executor worker.

Tasks:
- execute_payout: Executes one payout job with distributed locking

Retry policy:
    Retryable provider failures (ProviderUnavailableError, which the
    adapter raises once its own quick retries are spent) and lock
    contention are retried by Celery with exponential backoff, up to
    PAYOUT_MAX_RETRIES. A rejected payout, or one still failing after the
    last retry, is dead-lettered: logged at ERROR and parked on the ledger
    entry for an operator. A job is never dropped silently.

Usage:
    # Normally enqueued by PayoutDispatcher.enqueue()
    from escrow.workers import execute_payout

    execute_payout.apply_async(kwargs=job.to_message(), task_id=job.job_key)
"""

from __future__ import annotations

import logging

from celery import shared_task
from django.conf import settings

from escrow.adapters import backoff_delay
from escrow.exceptions import LockAcquisitionError, ProviderError
from escrow.ledger import LedgerEntry

logger = logging.getLogger(__name__)


@shared_task(bind=True, acks_late=True, max_retries=None)
def execute_payout(self, **message) -> dict:
    """
    Execute a single payout job.

    Args:
        **message: PayoutJob fields (see PayoutJob.to_message)

    Returns:
        Dict with:
        - status: One of "completed", "lock_failed", "not_found",
                  "dead_letter"
        - job_key: The job processed
        - provider_payout_id: Provider payout id when completed
        - error: Error message when not completed
    """
    from escrow.services.payout_dispatcher import PayoutDispatcher, PayoutJob

    job = PayoutJob.from_message(message)
    max_retries = settings.PAYOUT_MAX_RETRIES
    retries = self.request.retries

    logger.info(
        "Processing payout job",
        extra={
            "job_key": job.job_key,
            "contract_id": job.contract_id,
            "celery_retries": retries,
        },
    )

    with PayoutDispatcher() as dispatcher:
        try:
            job = dispatcher.process(job)

        except LedgerEntry.DoesNotExist:
            logger.error(
                "Payout job references a missing RELEASE entry",
                extra={"job_key": job.job_key},
            )
            return {"status": "not_found", "job_key": job.job_key}

        except LockAcquisitionError as e:
            if retries >= max_retries:
                # The holder is still working on it; the sweep re-enqueues if it died
                logger.warning(
                    "Payout lock still busy after retries, giving up this delivery",
                    extra={"job_key": job.job_key},
                )
                return {"status": "lock_failed", "job_key": job.job_key, "error": str(e)}
            raise self.retry(exc=e, countdown=backoff_delay(retries))

        except ProviderError as e:
            if not e.is_retryable or retries >= max_retries:
                dispatcher.dead_letter(job.ledger_entry_id, str(e))
                return {
                    "status": "dead_letter",
                    "job_key": job.job_key,
                    "error": str(e),
                    "error_code": e.error_code,
                }

            dispatcher.record_failure(job.ledger_entry_id, str(e))
            logger.warning(
                "Retryable payout failure, will retry",
                extra={
                    "job_key": job.job_key,
                    "celery_retries": retries,
                    "error": str(e),
                },
            )
            raise self.retry(exc=e, countdown=backoff_delay(retries))

    return {
        "status": "completed",
        "job_key": job.job_key,
        "provider_payout_id": job.provider_payout_id,
    }
