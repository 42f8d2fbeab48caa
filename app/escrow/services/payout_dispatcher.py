"""
Payout dispatcher: moves released funds to the worker, asynchronously.

One payout job exists per RELEASE ledger entry. The job key
("payout-{ledger_entry_id}") is used as the Celery task id, as the
distributed lock key and as the provider idempotency key, so redelivery
of a job after it completed is a no-op and a retried attempt cannot pay
twice.

Payout progress lives on the RELEASE ledger entry (payout_status). The
contract stays RELEASED whatever happens to the payout: releasing is a
platform decision, the payout is an operational fact.

Usage:
    from escrow.services.payout_dispatcher import PayoutDispatcher

    dispatcher = PayoutDispatcher()
    dispatcher.enqueue(dispatcher.build_job(release_entry))

    # Inside the worker
    with PayoutDispatcher() as dispatcher:
        dispatcher.process(job)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.db.models import Q, QuerySet
from django.utils import timezone

from escrow.adapters import get_payout_gateway
from escrow.exceptions import EscrowValidationError
from escrow.ledger import LedgerEntry, LedgerService
from escrow.locks import DistributedLock
from escrow.state_machines import EscrowStatus, LedgerEntryType, PayoutStatus
from escrow.workers.payout_executor import execute_payout

if TYPE_CHECKING:
    from escrow.adapters import PayoutGateway

logger = logging.getLogger(__name__)

# Maximum entries returned by one recovery scan
BATCH_SIZE = 100


@dataclass
class PayoutJob:
    """
    Queue message for one payout.

    Travels as Celery task kwargs, so every field is a plain string or int.
    """

    contract_id: str
    ledger_entry_id: str
    net_amount_cents: int
    worker_id: str
    currency: str
    destination: str = ""
    provider_payout_id: str | None = None

    @property
    def job_key(self) -> str:
        return f"payout-{self.ledger_entry_id}"

    def to_message(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> PayoutJob:
        return cls(
            contract_id=str(message["contract_id"]),
            ledger_entry_id=str(message["ledger_entry_id"]),
            net_amount_cents=int(message["net_amount_cents"]),
            worker_id=str(message["worker_id"]),
            currency=str(message["currency"]),
            destination=message.get("destination") or "",
            provider_payout_id=message.get("provider_payout_id"),
        )


class PayoutDispatcher:
    """
    Builds, enqueues and executes payout jobs.

    The payout gateway is built lazily from ESCROW_PAYOUT_PROVIDER unless
    one is passed in. A gateway the dispatcher built is closed by close().
    """

    def __init__(self, gateway: PayoutGateway | None = None) -> None:
        self._gateway = gateway
        self._owns_gateway = gateway is None

    @property
    def gateway(self) -> PayoutGateway:
        if self._gateway is None:
            self._gateway = get_payout_gateway()
        return self._gateway

    def close(self) -> None:
        if self._owns_gateway and self._gateway is not None:
            self._gateway.close()
            self._gateway = None

    def __enter__(self) -> PayoutDispatcher:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    # =========================================================================
    # Producer Side
    # =========================================================================

    def build_job(self, entry: LedgerEntry) -> PayoutJob:
        if entry.entry_type != LedgerEntryType.RELEASE:
            raise EscrowValidationError(
                "Payout jobs are built from RELEASE entries only",
                details={
                    "ledger_entry_id": str(entry.id),
                    "entry_type": entry.entry_type,
                },
            )
        contract = entry.contract
        return PayoutJob(
            contract_id=str(contract.id),
            ledger_entry_id=str(entry.id),
            net_amount_cents=entry.net_amount_cents,
            worker_id=contract.worker_id,
            currency=entry.currency,
            destination=contract.worker_payout_destination,
        )

    def enqueue(self, job: PayoutJob) -> None:
        """
        Put a job on the payout queue, then flag the entry ENQUEUED.

        The Celery task id is the job key, so a job re-enqueued by the
        recovery sweep is recognisable as the same job.
        """
        execute_payout.apply_async(kwargs=job.to_message(), task_id=job.job_key)
        LedgerService.mark_payout_enqueued(uuid.UUID(job.ledger_entry_id))
        logger.info(
            "Payout job enqueued",
            extra={
                "job_key": job.job_key,
                "contract_id": job.contract_id,
                "net_amount_cents": job.net_amount_cents,
            },
        )

    # =========================================================================
    # Consumer Side
    # =========================================================================

    def process(self, job: PayoutJob) -> PayoutJob:
        """
        Execute one payout attempt.

        Runs under a non-blocking distributed lock on the job key. A job
        whose entry is already COMPLETED or DEAD_LETTER does nothing.

        Returns:
            The job, with provider_payout_id filled in

        Raises:
            LockAcquisitionError: Another worker holds this job
            ProviderError: The payout call failed (entry left IN_FLIGHT
                for the caller to record the failure)
            LedgerEntry.DoesNotExist: The RELEASE entry is gone
        """
        with DistributedLock.for_job(job.job_key):
            entry = LedgerEntry.objects.get(
                id=job.ledger_entry_id, entry_type=LedgerEntryType.RELEASE
            )
            if entry.payout_status in (PayoutStatus.COMPLETED, PayoutStatus.DEAD_LETTER):
                logger.info(
                    "Payout already settled, skipping",
                    extra={
                        "job_key": job.job_key,
                        "payout_status": entry.payout_status,
                    },
                )
                job.provider_payout_id = entry.provider_tx_id
                return job

            entry = LedgerService.mark_payout_in_flight(entry)
            logger.info(
                "Executing payout",
                extra={
                    "job_key": job.job_key,
                    "attempt": entry.payout_attempts,
                    "net_amount_cents": job.net_amount_cents,
                },
            )

            if job.net_amount_cents == 0:
                # Fees took the whole amount; nothing to transfer
                LedgerService.complete_payout(entry, provider_payout_id=None)
                return job

            result = self.gateway.create_payout(
                destination=job.destination,
                amount_cents=job.net_amount_cents,
                currency=job.currency,
                idempotency_key=job.job_key,
                metadata={
                    "contract_id": job.contract_id,
                    "ledger_entry_id": job.ledger_entry_id,
                    "worker_id": job.worker_id,
                },
            )
            LedgerService.complete_payout(entry, provider_payout_id=result.id)
            job.provider_payout_id = result.id

        logger.info(
            "Payout completed",
            extra={
                "job_key": job.job_key,
                "provider_payout_id": result.id,
            },
        )
        return job

    def record_failure(self, entry_id: uuid.UUID | str, error: str) -> LedgerEntry | None:
        """Store a retryable failure; the entry goes back to ENQUEUED."""
        return self._fail(entry_id, error, dead_letter=False)

    def dead_letter(self, entry_id: uuid.UUID | str, error: str) -> LedgerEntry | None:
        """
        Park a payout for operator intervention.

        The worker is unpaid, so this is logged at ERROR and the entry is
        kept in DEAD_LETTER rather than dropped.
        """
        entry = self._fail(entry_id, error, dead_letter=True)
        if entry is not None:
            logger.error(
                "Payout moved to dead letter",
                extra={
                    "ledger_entry_id": str(entry_id),
                    "contract_id": str(entry.contract_id),
                    "net_amount_cents": entry.net_amount_cents,
                    "error": error,
                },
            )
        return entry

    @staticmethod
    def _fail(
        entry_id: uuid.UUID | str, error: str, dead_letter: bool
    ) -> LedgerEntry | None:
        entry = LedgerEntry.objects.get(id=entry_id, entry_type=LedgerEntryType.RELEASE)
        if entry.payout_status == PayoutStatus.COMPLETED:
            logger.warning(
                "Ignoring failure for a completed payout",
                extra={"ledger_entry_id": str(entry_id), "error": error},
            )
            return None
        return LedgerService.record_payout_failure(entry, error, dead_letter=dead_letter)

    # =========================================================================
    # Recovery
    # =========================================================================

    @staticmethod
    def find_unqueued_releases(
        grace: timedelta | None = None,
        stale: timedelta | None = None,
    ) -> QuerySet[LedgerEntry]:
        """
        RELEASE entries whose payout has fallen through the cracks.

        - PENDING for longer than ``grace``: the post-commit enqueue never
          happened (process died, broker down)
        - ENQUEUED or IN_FLIGHT with no progress for longer than ``stale``:
          the message was lost or the worker died mid-attempt
        """
        if grace is None:
            grace = timedelta(minutes=settings.ESCROW_PAYOUT_GRACE_MINUTES)
        if stale is None:
            stale = timedelta(minutes=settings.ESCROW_PAYOUT_STALE_MINUTES)
        now = timezone.now()
        return (
            LedgerEntry.objects.filter(
                entry_type=LedgerEntryType.RELEASE,
                contract__escrow_status=EscrowStatus.RELEASED,
            )
            .filter(
                Q(payout_status=PayoutStatus.PENDING, created_at__lte=now - grace)
                | Q(
                    payout_status__in=[PayoutStatus.ENQUEUED, PayoutStatus.IN_FLIGHT],
                    payout_enqueued_at__lte=now - stale,
                )
            )
            .select_related("contract")
            .order_by("created_at")[:BATCH_SIZE]
        )
