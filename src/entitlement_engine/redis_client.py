"""Redis client used for cross-instance job locks."""

import asyncio
import contextlib
import random
import uuid
from collections.abc import AsyncIterator
from typing import Any

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()

LOCK_PREFIX = "entitlement:lock:"

# Atomic check-and-delete so a lock is only released by its holder
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class LockNotAcquiredError(RuntimeError):
    """Raised when another holder keeps a lock past all retries."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Failed to acquire lock: {key}")


class RedisClient:
    """Async Redis wrapper providing SET NX EX locks."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Any = None

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._client = redis.from_url(self._url, decode_responses=True)  # type: ignore[no-untyped-call]
        logger.info("Connected to Redis")

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from Redis")

    @property
    def client(self) -> Any:
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def acquire_lock(
        self,
        key: str,
        timeout: int = 60,
        max_retries: int = 0,
        retry_interval: float = 0.1,
        max_retry_interval: float = 5.0,
    ) -> str | None:
        """Try to take a lock, retrying with exponential backoff and jitter.

        Args:
            key: Lock name
            timeout: Lock expiry in seconds, bounds how long a crashed holder blocks others
            max_retries: Extra attempts after the first; 0 means try once
            retry_interval: Base delay between attempts
            max_retry_interval: Cap on the backoff delay

        Returns:
            Lock token if acquired, None otherwise
        """
        lock_key = f"{LOCK_PREFIX}{key}"
        token = str(uuid.uuid4())

        for attempt in range(max_retries + 1):
            if await self.client.set(lock_key, token, nx=True, ex=timeout):
                logger.debug("Lock acquired", key=key, attempt=attempt + 1)
                return token
            if attempt == max_retries:
                break
            sleep_time = min(retry_interval * (2**attempt), max_retry_interval)
            sleep_time += sleep_time * 0.25 * random.random()  # noqa: S311
            await asyncio.sleep(sleep_time)

        logger.debug("Lock held elsewhere", key=key, attempts=max_retries + 1)
        return None

    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock if this token still holds it."""
        result = await self.client.eval(_RELEASE_SCRIPT, 1, f"{LOCK_PREFIX}{key}", token)
        return bool(result)

    @contextlib.asynccontextmanager
    async def lock(
        self,
        key: str,
        timeout: int = 60,
        max_retries: int = 0,
    ) -> AsyncIterator[str]:
        """Hold a lock for the duration of the block.

        Raises:
            LockNotAcquiredError: the lock is held by someone else
        """
        token = await self.acquire_lock(key, timeout=timeout, max_retries=max_retries)
        if token is None:
            raise LockNotAcquiredError(key)
        try:
            yield token
        finally:
            released = await self.release_lock(key, token)
            if not released:
                logger.warning("Lock expired before release", key=key)
