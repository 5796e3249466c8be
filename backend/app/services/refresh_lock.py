"""
Per-user refresh lock.

Salla refresh tokens are single use, so two workers refreshing the same user
at once would leave one of them holding a dead token. The lock is held in
Redis when available and falls back to an in-process asyncio lock.
"""

import asyncio
import logging
import secrets
import time
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from app.config import settings

logger = logging.getLogger(__name__)

_redis_client = None
_local_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

# Delete the key only if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RefreshLockTimeout(Exception):
    """Another refresh for the same user did not finish in time."""


async def get_redis():
    """Get or create Redis client."""
    global _redis_client
    if not settings.redis_url:
        return None
    if _redis_client is None:
        try:
            import redis.asyncio as aioredis

            _redis_client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await _redis_client.ping()
        except Exception as e:
            logger.warning(f"Redis unavailable for refresh locks: {e}")
            _redis_client = None
    return _redis_client


class RefreshLock:
    """Mutual exclusion for token refreshes, keyed by user id."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        ttl: Optional[float] = None,
        poll_interval: float = 0.1,
    ):
        self.timeout = timeout if timeout is not None else settings.refresh_lock_timeout_seconds
        # Must outlive the refresh it guards
        self.ttl = ttl if ttl is not None else settings.refresh_lock_ttl_seconds
        self.poll_interval = poll_interval

    @asynccontextmanager
    async def hold(self, user_id) -> AsyncIterator[None]:
        """Hold the refresh lock for a user for the duration of the block."""
        key = f"refresh_lock:salla:{user_id}"
        redis = await get_redis()
        if redis:
            owner = await self._acquire_redis(redis, key)
            if owner:
                try:
                    yield
                finally:
                    await self._release_redis(redis, key, owner)
                return

        async with self._hold_local(key):
            yield

    async def _acquire_redis(self, redis, key: str) -> Optional[str]:
        """Poll SET NX until acquired; None means Redis failed and the caller falls back."""
        owner = secrets.token_hex(16)
        deadline = time.monotonic() + self.timeout
        try:
            while True:
                if await redis.set(key, owner, nx=True, px=int(self.ttl * 1000)):
                    return owner
                if time.monotonic() >= deadline:
                    raise RefreshLockTimeout(f"Refresh already in progress for {key}")
                await asyncio.sleep(self.poll_interval)
        except RefreshLockTimeout:
            raise
        except Exception as e:
            logger.warning(f"Redis refresh lock error: {e}")
            return None

    async def _release_redis(self, redis, key: str, owner: str) -> None:
        try:
            await redis.eval(_RELEASE_SCRIPT, 1, key, owner)
        except Exception as e:
            # The TTL frees the key anyway
            logger.warning(f"Failed to release refresh lock {key}: {e}")

    @asynccontextmanager
    async def _hold_local(self, key: str) -> AsyncIterator[None]:
        lock = _local_locks.setdefault(key, asyncio.Lock())
        if settings.redis_url:
            logger.warning(
                "Refresh lock held in-memory; not safe for multi-worker deployments."
            )
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise RefreshLockTimeout(f"Refresh already in progress for {key}")
        try:
            yield
        finally:
            lock.release()
