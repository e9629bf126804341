"""In-process counting semaphore keyed by name.

LocalSemaphore offers the same acquire/release surface as the distributed
semaphores for threads of a single process, without any network round trip.
Constructing it twice with the same key yields the same instance, so
unrelated modules converge on one permit cell.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, ClassVar

from .config import DEFAULT_PERMITS
from .exceptions import OverRelease

logger = logging.getLogger(__name__)


class LocalSemaphore:
    """Named thread semaphore, one instance per key per process.

    Usage:
        >>> sem = LocalSemaphore('verify-token', permits=1)
        >>> sem is LocalSemaphore('verify-token')
        True
        >>> sem.acquire(lambda: 'ran under the permit')
        'ran under the permit'

    There is no timeout; callers that must not block forever should bound the
    call themselves.
    """

    _registry: ClassVar[dict[str, LocalSemaphore]] = {}
    _registry_lock: ClassVar[threading.Lock] = threading.Lock()

    _key: str
    _permits: int
    _available: int
    _cond: threading.Condition

    def __new__(cls, key: str, permits: int = DEFAULT_PERMITS) -> LocalSemaphore:
        if permits < 1:
            raise ValueError("Semaphore permits must be >= 1")

        with cls._registry_lock:
            instance = cls._registry.get(key)
            if instance is None:
                instance = super().__new__(cls)
                instance._key = key
                instance._permits = permits
                instance._available = permits
                instance._cond = threading.Condition(threading.Lock())
                cls._registry[key] = instance
            elif instance._permits != permits:
                logger.warning(
                    "LocalSemaphore %r already exists with permits=%d, ignoring permits=%d",
                    key,
                    instance._permits,
                    permits,
                )
            return instance

    @property
    def key(self) -> str:
        return self._key

    @property
    def permits(self) -> int:
        return self._permits

    @property
    def available(self) -> int:
        """Return the number of free permits."""
        with self._cond:
            return self._available

    def locked(self) -> bool:
        """Return True if no permits are available."""
        return self.available == 0

    def try_acquire(self) -> bool:
        """Take a permit if one is free, without blocking."""
        with self._cond:
            if self._available == 0:
                return False
            self._available -= 1
            return True

    def acquire(
        self, critical_section: Callable[..., Any] | None = None, *args: Any, **kwargs: Any
    ) -> Any:
        """Take a permit, blocking while none is free.

        With ``critical_section``, the callable runs under the permit, the
        permit is released on every exit path, and its result is returned.
        Without one, True is returned and the caller must release().
        """
        with self._cond:
            while self._available == 0:
                self._cond.wait()
            self._available -= 1

        if critical_section is None:
            return True
        try:
            return critical_section(*args, **kwargs)
        finally:
            self.release()

    def release(self) -> None:
        """Return a permit and wake one waiter.

        Raises:
            OverRelease: If every permit is already free; the count is left
                         unchanged
        """
        with self._cond:
            if self._available >= self._permits:
                raise OverRelease(self._key, self._permits - self._available - 1)
            self._available += 1
            self._cond.notify()

    def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call ``fn(*args, **kwargs)`` while holding a permit."""
        return self.acquire(fn, *args, **kwargs)

    def __enter__(self) -> LocalSemaphore:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self._key!r} "
            f"available={self.available}/{self._permits}>"
        )
