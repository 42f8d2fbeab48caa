"""
Tests for the per-entry payout lock.

Redis is the mock_redis fixture from conftest.py; the lock only ever
talks to it through set() and eval().
"""

import pytest

from escrow.exceptions import LockAcquisitionError
from escrow.locks import RELEASE_SCRIPT, DistributedLock


class TestAcquire:
    def test_acquire_sets_key_with_token_and_ttl(self, mock_redis):
        lock = DistributedLock("payout-1", ttl=90)

        assert lock.acquire() is True
        assert lock.is_held is True
        key, token = mock_redis.set.call_args.args
        assert key == "lock:payout-1"
        assert token == lock._token
        assert mock_redis.set.call_args.kwargs == {"nx": True, "ex": 90}

    def test_tokens_are_unique(self, mock_redis):
        first = DistributedLock("payout-1")
        second = DistributedLock("payout-2")

        first.acquire()
        second.acquire()

        assert first._token != second._token

    def test_busy_key_fails_without_waiting(self, mock_redis):
        mock_redis.set.return_value = False
        lock = DistributedLock("payout-1")

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert "already held" in str(exc_info.value)
        assert exc_info.value.details == {"key": "lock:payout-1"}
        assert lock.is_held is False
        assert mock_redis.set.call_count == 1

    def test_explicit_redis_client(self, mocker):
        client = mocker.MagicMock()
        client.set.return_value = True

        DistributedLock("payout-1", redis=client).acquire()

        client.set.assert_called_once()

    def test_for_job_uses_configured_ttl(self, settings, mock_redis):
        settings.PAYOUT_LOCK_TTL_SECONDS = 300

        lock = DistributedLock.for_job("payout-e1")

        assert lock.key == "lock:payout-e1"
        assert lock.ttl == 300


class TestRelease:
    def test_release_runs_owner_check_script(self, mock_redis):
        lock = DistributedLock("payout-1")
        lock.acquire()
        token = lock._token

        assert lock.release() is True

        script, numkeys, key, arg = mock_redis.eval.call_args.args
        assert script == RELEASE_SCRIPT
        assert (numkeys, key, arg) == (1, "lock:payout-1", token)
        assert lock.is_held is False

    def test_release_when_not_held(self, mock_redis):
        lock = DistributedLock("payout-1")

        assert lock.release() is False
        mock_redis.eval.assert_not_called()

    def test_release_after_expiry_returns_false(self, mock_redis):
        mock_redis.eval.return_value = 0
        lock = DistributedLock("payout-1")
        lock.acquire()

        assert lock.release() is False


class TestContextManager:
    def test_releases_on_exit(self, mock_redis):
        with DistributedLock("payout-1") as lock:
            assert lock.is_held

        assert not lock.is_held
        mock_redis.eval.assert_called_once()

    def test_releases_on_exception(self, mock_redis):
        with pytest.raises(RuntimeError):
            with DistributedLock("payout-1"):
                raise RuntimeError("boom")

        mock_redis.eval.assert_called_once()

    def test_body_not_run_when_lock_busy(self, mock_redis):
        mock_redis.set.return_value = False
        ran = []

        with pytest.raises(LockAcquisitionError):
            with DistributedLock("payout-1"):
                ran.append(True)

        assert ran == []
        mock_redis.eval.assert_not_called()
