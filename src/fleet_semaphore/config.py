"""Defaults and option validation shared by the semaphore implementations."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Final

DEFAULT_PERMITS: Final = 1
DEFAULT_TIMEOUT_MS: Final = 30_000
DEFAULT_RETRY_DELAY_MS: Final = 100
DEFAULT_JITTER_MS: Final = 50
DEFAULT_RELEASE_ATTEMPTS: Final = 3

# Below this much remaining budget a blocking wait is not worth starting.
MIN_WAIT_MS: Final = 500
# Upper bound for a single blocking pop on the notification list.
MAX_WAIT_MS: Final = 30_000
# Blocking pops are capped at this while a cancel event is being watched.
CANCEL_POLL_MS: Final = 1_000

REDIS_URL_ENV_VARS: Final[tuple[str, ...]] = ("REDIS_URL", "REDIS_URI")
DEFAULT_REDIS_URL: Final = "redis://localhost:6379/0"


def redis_url_from_env(default: str = DEFAULT_REDIS_URL) -> str:
    """Return the first Redis URL found in the environment, else ``default``."""
    for name in REDIS_URL_ENV_VARS:
        url = os.environ.get(name)
        if url:
            return url
    return default


@dataclass(frozen=True)
class SemaphoreOptions:
    """Validated tuning options for a distributed semaphore.

    Every client of a given key must be constructed with the same
    ``permits``; the store does not record it.

    Args:
        permits: Maximum number of concurrent holders (>= 1)
        timeout_ms: Total budget for one ``acquire()`` call
        retry_delay_ms: Base backoff between release retries
        jitter_ms: Upper bound of the random pause after a wake-up
        lease_ms: Expiry applied to the counter on every admission and
            release, or None to never expire
        release_attempts: Times ``release()`` is tried on store failures
    """

    permits: int = DEFAULT_PERMITS
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    jitter_ms: int = DEFAULT_JITTER_MS
    lease_ms: int | None = None
    release_attempts: int = DEFAULT_RELEASE_ATTEMPTS

    def __post_init__(self) -> None:
        if self.permits < 1:
            raise ValueError("Semaphore permits must be >= 1")
        if self.timeout_ms < 0:
            raise ValueError("timeout_ms must be non-negative")
        if self.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms must be non-negative")
        if self.jitter_ms < 0:
            raise ValueError("jitter_ms must be non-negative")
        if self.lease_ms is not None and self.lease_ms < 1:
            raise ValueError("lease_ms must be >= 1 or None")
        if self.release_attempts < 1:
            raise ValueError("release_attempts must be >= 1")

    @property
    def lease_arg(self) -> int:
        """Lease as passed to the store scripts (0 means no expiry)."""
        return self.lease_ms or 0

    def wait_cap_ms(self, *, watching_cancel: bool = False) -> int:
        """Longest single blocking pop while waiting for a permit.

        An expiring lease pushes no wake token, so with a lease set waiters
        re-check at least once per lease period.
        """
        cap = CANCEL_POLL_MS if watching_cancel else MAX_WAIT_MS
        if self.lease_ms is not None:
            cap = min(cap, self.lease_ms)
        return cap
