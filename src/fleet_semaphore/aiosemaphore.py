"""Async distributed semaphore backed by redis.asyncio.

This module mirrors DistributedSemaphore for asyncio applications. It uses
the same scripts and key layout, so sync and async workers can share one
semaphore key.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pottery import ContextTimer

from .config import (
    DEFAULT_JITTER_MS,
    DEFAULT_PERMITS,
    DEFAULT_RELEASE_ATTEMPTS,
    DEFAULT_RETRY_DELAY_MS,
    DEFAULT_TIMEOUT_MS,
    SemaphoreOptions,
    redis_url_from_env,
)
from .exceptions import AcquireCancelled, AcquireTimeout, OverRelease, StoreUnavailable
from .primitives import (
    ADMIT_SCRIPT,
    RELEASE_SCRIPT,
    SemaphoreKeys,
    jitter_seconds,
    notify_token,
    parse_count,
    store_errors,
    wait_budget_ms,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis as AIORedis

logger = logging.getLogger(__name__)


class AIODistributedSemaphore:
    """Async Redis-powered semaphore shared by every process using the key.

    Usage:
        >>> import asyncio
        >>> from redis.asyncio import Redis
        >>> async def main():
        ...     redis = Redis()
        ...     sem = AIODistributedSemaphore(redis, 'verify-token')
        ...     await sem.acquire()
        ...     try:
        ...         # Critical section
        ...         pass
        ...     finally:
        ...         await sem.release()
        >>> asyncio.run(main())

        >>> # Or use as async context manager
        >>> async with sem:
        ...     # Critical section
        ...     pass

    Cancelling the task that awaits acquire() is safe: nothing is held in
    Redis until the admission script succeeds.

    Args:
        redis: Async Redis client reachable by every participating process
        key: A string that identifies this semaphore fleet-wide
        permits: Maximum concurrent holders (default: 1)
        timeout_ms: Budget for one acquire() call (default: 30000)
        retry_delay_ms: Base backoff between release retries (default: 100)
        jitter_ms: Maximum random pause after a wake-up (default: 50)
        lease_ms: Expiry of the held-permit counter, or None (default)
        release_attempts: Attempts made by release() when the store is
            unreachable (default: 3)
    """

    def __init__(
        self,
        redis: AIORedis,
        key: str,
        *,
        permits: int = DEFAULT_PERMITS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        jitter_ms: int = DEFAULT_JITTER_MS,
        lease_ms: int | None = None,
        release_attempts: int = DEFAULT_RELEASE_ATTEMPTS,
    ) -> None:
        self._options = SemaphoreOptions(
            permits=permits,
            timeout_ms=timeout_ms,
            retry_delay_ms=retry_delay_ms,
            jitter_ms=jitter_ms,
            lease_ms=lease_ms,
            release_attempts=release_attempts,
        )
        self._keys = SemaphoreKeys.for_key(key)
        self._key = key
        self._redis = redis
        self._admit = redis.register_script(ADMIT_SCRIPT)
        self._release = redis.register_script(RELEASE_SCRIPT)

    @classmethod
    def from_url(
        cls, key: str, url: str | None = None, **options: Any
    ) -> AIODistributedSemaphore:
        """Create a semaphore with its own async client for ``url``."""
        from redis.asyncio import Redis as AIORedisClient

        return cls(
            AIORedisClient.from_url(url or redis_url_from_env()), key, **options
        )

    @property
    def key(self) -> str:
        return self._key

    @property
    def permits(self) -> int:
        return self._options.permits

    @property
    def options(self) -> SemaphoreOptions:
        return self._options

    async def get_held(self) -> int:
        """Return the number of permits currently held fleet-wide."""
        with store_errors(self._key):
            return parse_count(await self._redis.get(self._keys.counter))

    async def locked(self) -> bool:
        """Return True if no permits are available."""
        return await self.get_held() >= self.permits

    async def try_acquire(self) -> bool:
        """Make a single non-blocking attempt to take a permit."""
        with store_errors(self._key):
            admitted = await self._admit(
                keys=[self._keys.counter, self._keys.notify],
                args=[self.permits, self._options.lease_arg],
            )
        return admitted == 1

    async def acquire(
        self,
        *,
        timeout_ms: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Wait until a permit is taken.

        Args:
            timeout_ms: Overrides the configured budget for this call
            cancel: Event that abandons the wait once set

        Raises:
            AcquireTimeout: If the budget runs out first
            AcquireCancelled: If ``cancel`` is set first
            StoreUnavailable: If Redis cannot be reached
        """
        budget = self._options.timeout_ms if timeout_ms is None else timeout_ms
        with ContextTimer() as timer:
            while True:
                if cancel is not None and cancel.is_set():
                    raise AcquireCancelled(self._key, timer.elapsed())

                if await self.try_acquire():
                    logger.debug(
                        "Acquired semaphore %r after %dms", self._key, timer.elapsed()
                    )
                    return

                elapsed = timer.elapsed()
                if elapsed > budget:
                    raise AcquireTimeout(self._key, budget, elapsed)

                wait_ms = wait_budget_ms(
                    budget - elapsed,
                    self._options.wait_cap_ms(watching_cancel=cancel is not None),
                )
                if wait_ms is None:
                    raise AcquireTimeout(self._key, budget, elapsed)

                if await self._wait_for_signal(wait_ms):
                    await asyncio.sleep(jitter_seconds(self._options.jitter_ms))

    async def _wait_for_signal(self, wait_ms: int) -> bool:
        """Block on the notify list; True if a token was popped."""
        logger.debug("Waiting up to %dms on %r", wait_ms, self._keys.notify)
        with store_errors(self._key):
            popped = await self._redis.blpop(
                [self._keys.notify], timeout=wait_ms / 1000
            )
        return popped is not None

    async def release(self) -> None:
        """Release one permit and wake one waiter.

        Raises:
            OverRelease: If the counter went negative; it has been reset to 0
            StoreUnavailable: If every attempt failed to reach Redis
        """
        attempts = self._options.release_attempts
        for attempt in range(1, attempts + 1):
            try:
                current = await self._release_once()
                break
            except StoreUnavailable:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Release of semaphore %r failed (attempt %d/%d), retrying",
                    self._key,
                    attempt,
                    attempts,
                )
                await asyncio.sleep(
                    self._options.retry_delay_ms * attempt / 1000
                    + jitter_seconds(self._options.jitter_ms)
                )

        if current < 0:
            logger.warning(
                "Semaphore %r over-released (counter=%d), clamped to 0",
                self._key,
                current,
            )
            raise OverRelease(self._key, current)
        logger.debug("Released semaphore %r (held=%d)", self._key, current)

    async def _release_once(self) -> int:
        with store_errors(self._key):
            return int(
                await self._release(
                    keys=[self._keys.counter, self._keys.notify],
                    args=[notify_token(), self.permits, self._options.lease_arg],
                )
            )

    async def reset(self) -> None:
        """Forget every held permit and wake one waiter.

        Only safe once the previous holders are known to be gone.
        """
        logger.warning("Resetting semaphore %r", self._key)
        with store_errors(self._key):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._keys.counter, self._keys.notify)
                pipe.rpush(self._keys.notify, notify_token())
                await pipe.execute()

    async def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call ``fn`` while holding a permit, awaiting its result if needed."""
        async with self:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

    async def __aenter__(self) -> AIODistributedSemaphore:
        """Enter async context manager, acquiring a permit."""
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager, releasing the permit."""
        await self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self._key!r} "
            f"permits={self.permits}>"
        )
