"""
Tests for PayoutDispatcher.

Covers job construction, enqueueing, a single payout attempt under the
job lock, failure recording and the recovery scan.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from django.utils import timezone
from freezegun import freeze_time

from escrow.exceptions import (
    EscrowValidationError,
    LockAcquisitionError,
    ProviderUnavailableError,
)
from escrow.ledger import LedgerEntry, LedgerService
from escrow.services.payout_dispatcher import PayoutDispatcher, PayoutJob
from escrow.state_machines import LedgerEntryType, PayoutStatus
from escrow.tests.factories import ContractFactory


@pytest.fixture
def release_entry(released_contract):
    return LedgerEntry.objects.get(
        contract=released_contract, entry_type=LedgerEntryType.RELEASE
    )


@pytest.fixture
def job(dispatcher, release_entry):
    return dispatcher.build_job(release_entry)


class TestPayoutJob:
    def test_job_key(self):
        job = PayoutJob(
            contract_id="c1",
            ledger_entry_id="e1",
            net_amount_cents=90000,
            worker_id="worker-9",
            currency="BRL",
        )

        assert job.job_key == "payout-e1"

    def test_message_round_trip(self):
        job = PayoutJob(
            contract_id="c1",
            ledger_entry_id="e1",
            net_amount_cents=90000,
            worker_id="worker-9",
            currency="BRL",
            destination="acct_1",
        )

        assert PayoutJob.from_message(job.to_message()) == job


@pytest.mark.django_db
class TestBuildAndEnqueue:
    def test_build_job_from_release_entry(self, dispatcher, release_entry, released_contract):
        job = dispatcher.build_job(release_entry)

        assert job.ledger_entry_id == str(release_entry.id)
        assert job.contract_id == str(released_contract.id)
        assert job.net_amount_cents == 90000
        assert job.worker_id == released_contract.worker_id
        assert job.destination == released_contract.worker_payout_destination
        assert job.currency == "BRL"

    def test_build_job_rejects_deposit_entry(self, dispatcher, held_contract):
        deposit = LedgerEntry.objects.get(
            contract=held_contract, entry_type=LedgerEntryType.DEPOSIT
        )

        with pytest.raises(EscrowValidationError):
            dispatcher.build_job(deposit)

    def test_enqueue_uses_job_key_as_task_id(self, mocker, dispatcher, job, release_entry):
        execute_payout = mocker.patch(
            "escrow.services.payout_dispatcher.execute_payout"
        )

        dispatcher.enqueue(job)

        execute_payout.apply_async.assert_called_once_with(
            kwargs=job.to_message(), task_id=f"payout-{release_entry.id}"
        )
        entry = LedgerEntry.objects.get(id=release_entry.id)
        assert entry.payout_status == PayoutStatus.ENQUEUED

    def test_enqueue_failure_leaves_entry_pending(self, mocker, dispatcher, job, release_entry):
        execute_payout = mocker.patch(
            "escrow.services.payout_dispatcher.execute_payout"
        )
        execute_payout.apply_async.side_effect = ConnectionError("broker down")

        with pytest.raises(ConnectionError):
            dispatcher.enqueue(job)

        assert LedgerEntry.objects.get(id=release_entry.id).payout_status == (
            PayoutStatus.PENDING
        )


@pytest.mark.django_db
class TestProcess:
    def test_successful_payout(self, dispatcher, payout_gateway, job, release_entry):
        result = dispatcher.process(job)

        assert result.provider_payout_id == f"payout_payout-{release_entry.id}"
        payout_gateway.create_payout.assert_called_once_with(
            destination=job.destination,
            amount_cents=90000,
            currency="BRL",
            idempotency_key=job.job_key,
            metadata={
                "contract_id": job.contract_id,
                "ledger_entry_id": job.ledger_entry_id,
                "worker_id": job.worker_id,
            },
        )

        entry = LedgerEntry.objects.get(id=release_entry.id)
        assert entry.payout_status == PayoutStatus.COMPLETED
        assert entry.payout_attempts == 1
        assert entry.provider_tx_id == result.provider_payout_id
        assert entry.payout_completed_at is not None

    def test_completed_payout_is_not_repeated(self, dispatcher, payout_gateway, job):
        dispatcher.process(job)
        payout_gateway.create_payout.reset_mock()

        again = dispatcher.process(job)

        payout_gateway.create_payout.assert_not_called()
        assert again.provider_payout_id is not None

    def test_dead_lettered_payout_is_skipped(self, dispatcher, payout_gateway, job, release_entry):
        dispatcher.dead_letter(release_entry.id, "manual")

        dispatcher.process(job)

        payout_gateway.create_payout.assert_not_called()

    def test_busy_lock_raises(self, mock_redis, dispatcher, payout_gateway, job):
        mock_redis.set.return_value = False

        with pytest.raises(LockAcquisitionError):
            dispatcher.process(job)

        payout_gateway.create_payout.assert_not_called()

    def test_lock_key_and_release(self, mock_redis, dispatcher, job):
        dispatcher.process(job)

        key = mock_redis.set.call_args.args[0]
        assert key == f"lock:{job.job_key}"
        assert mock_redis.set.call_args.kwargs["nx"] is True
        mock_redis.eval.assert_called_once()

    def test_provider_failure_leaves_entry_in_flight(
        self, dispatcher, payout_gateway, job, release_entry
    ):
        payout_gateway.create_payout.side_effect = ProviderUnavailableError(
            "sandbox unavailable"
        )

        with pytest.raises(ProviderUnavailableError):
            dispatcher.process(job)

        entry = LedgerEntry.objects.get(id=release_entry.id)
        assert entry.payout_status == PayoutStatus.IN_FLIGHT
        assert entry.payout_attempts == 1

    def test_zero_net_completes_without_provider_call(
        self, dispatcher, payout_gateway, escrow_service
    ):
        contract = ContractFactory(
            gross_amount_cents=10000, applied_platform_fee_pct="70.00"
        )
        escrow_service.confirm_deposit(contract.id, "pay_zero", 3000)
        entry = escrow_service.release(contract.id).entry
        assert entry.net_amount_cents == 0

        dispatcher.process(dispatcher.build_job(entry))

        payout_gateway.create_payout.assert_not_called()
        entry = LedgerEntry.objects.get(id=entry.id)
        assert entry.payout_status == PayoutStatus.COMPLETED
        assert entry.provider_tx_id is None

    def test_missing_entry(self, dispatcher):
        job = PayoutJob(
            contract_id=str(uuid4()),
            ledger_entry_id=str(uuid4()),
            net_amount_cents=100,
            worker_id="worker-1",
            currency="BRL",
        )

        with pytest.raises(LedgerEntry.DoesNotExist):
            dispatcher.process(job)


@pytest.mark.django_db
class TestFailureRecording:
    def test_record_failure_requeues(self, dispatcher, release_entry):
        entry = dispatcher.record_failure(release_entry.id, "timeout")

        assert entry.payout_status == PayoutStatus.ENQUEUED
        assert entry.payout_last_error == "timeout"

    def test_dead_letter(self, dispatcher, release_entry):
        entry = dispatcher.dead_letter(release_entry.id, "account closed")

        entry = LedgerEntry.objects.get(id=entry.id)
        assert entry.payout_status == PayoutStatus.DEAD_LETTER
        assert entry.payout_last_error == "account closed"

    def test_failure_after_completion_ignored(self, dispatcher, job, release_entry):
        dispatcher.process(job)

        assert dispatcher.dead_letter(release_entry.id, "late failure") is None
        assert LedgerEntry.objects.get(id=release_entry.id).payout_status == (
            PayoutStatus.COMPLETED
        )


@pytest.mark.django_db
class TestFindUnqueuedReleases:
    def test_pending_within_grace_not_returned(self, release_entry, settings):
        settings.ESCROW_PAYOUT_GRACE_MINUTES = 5

        assert list(PayoutDispatcher.find_unqueued_releases()) == []

    def test_pending_past_grace_returned(self, release_entry, settings):
        settings.ESCROW_PAYOUT_GRACE_MINUTES = 5

        with freeze_time(timezone.now() + timedelta(minutes=6)):
            found = list(PayoutDispatcher.find_unqueued_releases())

        assert found == [release_entry]

    def test_stale_enqueued_returned(self, release_entry, settings):
        settings.ESCROW_PAYOUT_STALE_MINUTES = 30
        LedgerService.mark_payout_enqueued(release_entry.id)

        with freeze_time(timezone.now() + timedelta(minutes=10)):
            assert list(PayoutDispatcher.find_unqueued_releases()) == []
        with freeze_time(timezone.now() + timedelta(minutes=31)):
            assert list(PayoutDispatcher.find_unqueued_releases()) == [release_entry]

    def test_completed_not_returned(self, dispatcher, job, release_entry):
        dispatcher.process(job)

        with freeze_time(timezone.now() + timedelta(days=1)):
            assert list(PayoutDispatcher.find_unqueued_releases()) == []
