"""Distributed counting semaphore backed by Redis.

This module implements a fleet-wide semaphore on top of a single Redis
server: a Lua script performs the bounded increment atomically, and a
notification list lets blocked processes sleep in BLPOP instead of polling.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

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
    from redis import Redis

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DistributedSemaphore:
    """Redis-powered semaphore shared by every process that uses the same key.

    At most ``permits`` holders run concurrently across the whole fleet.
    Waking is best-effort: a released permit goes to whichever waiter wins
    the next admission script, not to the one that waited longest.

    Usage:
        >>> from redis import Redis
        >>> redis = Redis()
        >>> sem = DistributedSemaphore(redis, 'verify-token', permits=1)
        >>> sem.acquire()
        >>> try:
        ...     # Critical section
        ...     pass
        ... finally:
        ...     sem.release()

        >>> # Or use as context manager
        >>> with sem:
        ...     # Critical section
        ...     pass

    Args:
        redis: Redis client reachable by every participating process
        key: A string that identifies this semaphore fleet-wide
        permits: Maximum concurrent holders (default: 1)
        timeout_ms: Budget for one acquire() call (default: 30000)
        retry_delay_ms: Base backoff between release retries (default: 100)
        jitter_ms: Maximum random pause after a wake-up (default: 50)
        lease_ms: If set, the held-permit counter expires after this long
            without any acquire or release, reclaiming permits of crashed
            holders (default: None, never expires)
        release_attempts: Attempts made by release() when the store is
            unreachable (default: 3)
    """

    def __init__(
        self,
        redis: Redis,
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
    ) -> DistributedSemaphore:
        """Create a semaphore with its own client for ``url``.

        When ``url`` is omitted, REDIS_URL or REDIS_URI from the environment
        is used.
        """
        from redis import Redis as RedisClient

        return cls(RedisClient.from_url(url or redis_url_from_env()), key, **options)

    @property
    def key(self) -> str:
        return self._key

    @property
    def permits(self) -> int:
        return self._options.permits

    @property
    def options(self) -> SemaphoreOptions:
        return self._options

    @property
    def held(self) -> int:
        """Return the number of permits currently held fleet-wide."""
        with store_errors(self._key):
            return parse_count(self._redis.get(self._keys.counter))

    def locked(self) -> bool:
        """Return True if no permits are available."""
        return self.held >= self.permits

    def try_acquire(self) -> bool:
        """Make a single non-blocking attempt to take a permit."""
        with store_errors(self._key):
            admitted = self._admit(
                keys=[self._keys.counter, self._keys.notify],
                args=[self.permits, self._options.lease_arg],
            )
        return admitted == 1

    def acquire(
        self,
        *,
        timeout_ms: int | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        """Block until a permit is taken.

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

                if self.try_acquire():
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

                if self._wait_for_signal(wait_ms):
                    # Spread out waiters that were woken together
                    time.sleep(jitter_seconds(self._options.jitter_ms))

    def _wait_for_signal(self, wait_ms: int) -> bool:
        """Block on the notify list; True if a token was popped.

        A token only means "try again": it carries no permit.
        """
        logger.debug("Waiting up to %dms on %r", wait_ms, self._keys.notify)
        with store_errors(self._key):
            popped = self._redis.blpop([self._keys.notify], timeout=wait_ms / 1000)
        return popped is not None

    def release(self) -> None:
        """Release one permit and wake one waiter.

        Raises:
            OverRelease: If the counter went negative; it has been reset to 0
            StoreUnavailable: If every attempt failed to reach Redis
        """
        attempts = self._options.release_attempts
        for attempt in range(1, attempts + 1):
            try:
                current = self._release_once()
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
                time.sleep(
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

    def _release_once(self) -> int:
        with store_errors(self._key):
            return int(
                self._release(
                    keys=[self._keys.counter, self._keys.notify],
                    args=[notify_token(), self.permits, self._options.lease_arg],
                )
            )

    def reset(self) -> None:
        """Forget every held permit and wake one waiter.

        Administrative recovery for holders that crashed without releasing.
        Only safe once those holders are known to be gone.
        """
        logger.warning("Resetting semaphore %r", self._key)
        with store_errors(self._key):
            pipe = self._redis.pipeline(transaction=True)
            pipe.delete(self._keys.counter, self._keys.notify)
            pipe.rpush(self._keys.notify, notify_token())
            pipe.execute()

    def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``fn(*args, **kwargs)`` while holding a permit."""
        with self:
            return fn(*args, **kwargs)

    def __enter__(self) -> DistributedSemaphore:
        """Enter context manager, acquiring a permit."""
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager, releasing the permit."""
        self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self._key!r} "
            f"permits={self.permits}>"
        )
