"""Per-hunt scan lock backed by Redis.

Alert idempotence never depends on this lock (dedup keys are unique in
storage); the lock only keeps two scans of one hunt from doing the same work
at the same time. The lock expires on its own after ``ttl_seconds`` so a
crashed worker cannot block a hunt forever.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 900
DEFAULT_REDIS_KEY_PREFIX = "hunt_engine:scan_lock:"

# Delete only if the stored token is ours.
_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class ScanAlreadyRunningError(RuntimeError):
    """Raised when another scan of the same hunt holds the lock."""

    def __init__(self, hunt_id: str) -> None:
        super().__init__(f"A scan of hunt {hunt_id} is already running")
        self.hunt_id = hunt_id


class HuntScanLock:
    """Token-owned ``SET NX EX`` lock, one key per hunt.

    Example:
        ```python
        lock = HuntScanLock(Redis.from_url("redis://localhost:6379"))
        async with lock.hold(hunt_id):
            await scanner.scan(hunt_id)
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        key_prefix: str = DEFAULT_REDIS_KEY_PREFIX,
    ) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, hunt_id: str) -> str:
        return f"{self.key_prefix}{hunt_id}"

    async def acquire(self, hunt_id: str) -> str | None:
        """Try to take the lock; return the ownership token or None if held."""
        token = uuid.uuid4().hex
        acquired = await self.redis.set(self._key(hunt_id), token, nx=True, ex=self.ttl_seconds)
        if not acquired:
            logger.debug("Scan lock for hunt %s already held", hunt_id)
            return None
        return token

    async def release(self, hunt_id: str, token: str) -> bool:
        """Release the lock if ``token`` still owns it."""
        result = await self.redis.eval(_RELEASE_SCRIPT, 1, self._key(hunt_id), token)
        released = bool(result)
        if not released:
            logger.warning("Scan lock for hunt %s expired or was taken over before release", hunt_id)
        return released

    @asynccontextmanager
    async def hold(self, hunt_id: str) -> AsyncIterator[str]:
        """Hold the lock for the duration of the block.

        Raises:
            ScanAlreadyRunningError: If the lock is already held.
        """
        token = await self.acquire(hunt_id)
        if token is None:
            raise ScanAlreadyRunningError(hunt_id)
        try:
            yield token
        finally:
            await self.release(hunt_id, token)
