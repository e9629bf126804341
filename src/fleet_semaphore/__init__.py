"""Fleet-wide counting semaphore on Redis.

This package bounds how many independent processes run a critical section
at once. Admission is a single Lua script on Redis, and blocked processes
sleep on a notification list until a release wakes them.

Example usage (sync):

    >>> from redis import Redis
    >>> from fleet_semaphore import DistributedSemaphore
    >>>
    >>> redis = Redis()
    >>> sem = DistributedSemaphore(redis, 'verify-token', permits=1, timeout_ms=10_000)
    >>>
    >>> with sem:
    ...     # At most one worker in the whole fleet runs this at a time
    ...     pass

Example usage (async):

    >>> import asyncio
    >>> from redis.asyncio import Redis
    >>> from fleet_semaphore import AIODistributedSemaphore
    >>>
    >>> async def main():
    ...     redis = Redis()
    ...     sem = AIODistributedSemaphore(redis, 'verify-token')
    ...     async with sem:
    ...         pass
    >>> asyncio.run(main())

Example usage (single process):

    >>> from fleet_semaphore import LocalSemaphore
    >>> LocalSemaphore('verify-token').acquire(lambda: 'done')
    'done'
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .aiosemaphore import AIODistributedSemaphore
from .base import PermitSemaphore
from .config import SemaphoreOptions
from .exceptions import (
    AcquireCancelled,
    AcquireTimeout,
    OverRelease,
    SemaphoreError,
    StoreUnavailable,
)
from .local import LocalSemaphore
from .semaphore import DistributedSemaphore

__all__: Final[tuple[str, ...]] = (
    "AIODistributedSemaphore",
    "AcquireCancelled",
    "AcquireTimeout",
    "DistributedSemaphore",
    "LocalSemaphore",
    "OverRelease",
    "PermitSemaphore",
    "SemaphoreError",
    "SemaphoreOptions",
    "StoreUnavailable",
)

try:
    __version__ = version("fleet-semaphore")
except PackageNotFoundError:
    __version__ = "unknown"
