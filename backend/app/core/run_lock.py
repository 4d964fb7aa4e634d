"""
Single-run lock for scheduled jobs.

The daily accrual must never run twice at the same time: its idempotency
guard only works at day granularity once a pass has been persisted.
With Redis the lock is shared between processes (SET NX EX, released by
compare-and-delete); without Redis it falls back to an in-process lock,
which is enough for a single worker.
"""
import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from redis.asyncio import Redis

from backend.app.core.logging import get_logger
from backend.app.core.settings import get_settings

logger = get_logger(__name__)

# Delete the key only if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RunLock:
    """Non-blocking named lock; `hold()` yields False when someone else runs."""

    KEY_PREFIX = "lock:job:"

    _redis: Optional[Redis] = None
    _local_locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    async def get_redis(cls) -> Redis:
        """Get or create the shared Redis connection."""
        if cls._redis is None:
            settings = get_settings()
            cls._redis = Redis(
                host=settings.REDIS_HOST,
                port=settings.REDIS_PORT,
                db=settings.REDIS_DB,
                decode_responses=True,
            )
        return cls._redis

    @classmethod
    async def close(cls):
        if cls._redis:
            await cls._redis.aclose()
            cls._redis = None

    def __init__(self, redis: Optional[Redis] = None):
        self.redis = redis

    @asynccontextmanager
    async def hold(self, name: str, timeout: int) -> AsyncIterator[bool]:
        if self.redis is None:
            async with self._hold_local(name) as acquired:
                yield acquired
            return

        key = f"{self.KEY_PREFIX}{name}"
        token = uuid.uuid4().hex
        acquired = bool(await self.redis.set(key, token, nx=True, ex=timeout))
        if not acquired:
            logger.warning("Run lock busy", lock=name)
        try:
            yield acquired
        finally:
            if acquired:
                await self.redis.eval(_RELEASE_SCRIPT, 1, key, token)

    @asynccontextmanager
    async def _hold_local(self, name: str) -> AsyncIterator[bool]:
        lock = self._local_locks.setdefault(name, asyncio.Lock())
        if lock.locked():
            logger.warning("Run lock busy (local)", lock=name)
            yield False
            return
        async with lock:
            yield True
