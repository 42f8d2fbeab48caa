"""
Per-entry payout lock.

Contract transitions are serialized by row locks inside a single database
transaction. A payout attempt wraps a provider call that must not hold a
transaction open, so it is serialized on the RELEASE entry's job key in
Redis instead. The job key doubles as the provider idempotency key, so a
second worker that loses the lock would at worst repeat an idempotent call;
the lock keeps it from also repeating the ledger bookkeeping.

Usage:
    from escrow.locks import DistributedLock

    with DistributedLock.for_job(job.job_key):
        dispatcher.process(job)

Acquisition never waits. A busy lock means another worker is paying the
entry right now, and the Celery task retries later with backoff.
"""

from __future__ import annotations

import uuid as uuid_module
from typing import TYPE_CHECKING

from django.conf import settings
from django_redis import get_redis_connection

from escrow.exceptions import LockAcquisitionError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

KEY_PREFIX = "lock:"

# Deletes the key only when it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class DistributedLock:
    """
    Non-blocking Redis lock owned by a random token.

    The TTL bounds how long a crashed worker can keep an entry locked; it
    should exceed the provider timeout times the adapter's retry count.

    Args:
        key: Job key, stored as "lock:<key>"
        ttl: Expiry in seconds
        redis: Client override (defaults to the django-redis connection)

    Raises:
        LockAcquisitionError: On acquire, when the key is already held
    """

    def __init__(self, key: str, ttl: int = 120, redis: Redis | None = None) -> None:
        self.key = f"{KEY_PREFIX}{key}"
        self.ttl = ttl
        self._token: str | None = None
        self._redis = redis

    @classmethod
    def for_job(cls, job_key: str) -> DistributedLock:
        return cls(job_key, ttl=settings.PAYOUT_LOCK_TTL_SECONDS)

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def acquire(self) -> bool:
        token = str(uuid_module.uuid4())
        if not self.redis.set(self.key, token, nx=True, ex=self.ttl):
            raise LockAcquisitionError(
                f"Payout lock '{self.key}' is already held",
                details={"key": self.key},
            )
        self._token = token
        return True

    def release(self) -> bool:
        """Drop the lock if this instance still owns it."""
        if self._token is None:
            return False
        released = self.redis.eval(RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(released)

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


__all__ = ["DistributedLock"]
