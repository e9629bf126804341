"""Store-side primitives shared by the sync and async semaphores.

Both semaphores talk to Redis through the same two Lua scripts and the same
key layout, so a sync worker and an async worker can share one semaphore:

- ``<key>`` holds the number of permits currently held
- ``<key>:notify`` is a list used only to wake blocked waiters; it never
  holds more tokens than there are free permits, so a waiter on a saturated
  semaphore blocks instead of draining stale wake-ups

The counter is never touched with a client-side GET followed by a write;
admission and release each run as one script on the server.
"""

from __future__ import annotations

import os
import random
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Final

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import MAX_WAIT_MS, MIN_WAIT_MS
from .exceptions import StoreUnavailable

ADMIT_SCRIPT: Final = """
local current = tonumber(redis.call("GET", KEYS[1]) or "0")
local permits = tonumber(ARGV[1])
if current < permits then
    current = redis.call("INCR", KEYS[1])
    if tonumber(ARGV[2]) > 0 then
        redis.call("PEXPIRE", KEYS[1], ARGV[2])
    end
    if current >= permits then
        redis.call("DEL", KEYS[2])
    else
        redis.call("LTRIM", KEYS[2], current - permits, -1)
    end
    return 1
end
return 0
"""

RELEASE_SCRIPT: Final = """
local current = redis.call("DECR", KEYS[1])
if current < 0 then
    redis.call("SET", KEYS[1], 0)
elseif current > 0 and tonumber(ARGV[3]) > 0 then
    redis.call("PEXPIRE", KEYS[1], ARGV[3])
end
local free = tonumber(ARGV[2]) - math.max(current, 0)
if free < 1 then
    free = 1
end
redis.call("RPUSH", KEYS[2], ARGV[1])
redis.call("LTRIM", KEYS[2], -free, -1)
if tonumber(ARGV[3]) > 0 then
    redis.call("PEXPIRE", KEYS[2], ARGV[3])
end
return current
"""


@dataclass(frozen=True)
class SemaphoreKeys:
    """Redis keys backing one semaphore."""

    counter: str
    notify: str

    @classmethod
    def for_key(cls, key: str) -> SemaphoreKeys:
        if not key:
            raise ValueError("Semaphore key must be a non-empty string")
        return cls(counter=key, notify=f"{key}:notify")


def notify_token() -> str:
    """Return a diagnostic wake token, ``<epoch_ms>:<pid>``."""
    return f"{int(time.time() * 1000)}:{os.getpid()}"


def jitter_seconds(jitter_ms: int) -> float:
    """Return a random pause in seconds, uniform in ``[0, jitter_ms]``."""
    if jitter_ms <= 0:
        return 0.0
    return random.uniform(0, jitter_ms) / 1000


def wait_budget_ms(remaining_ms: int, cap_ms: int = MAX_WAIT_MS) -> int | None:
    """Return how long to block on the notify list, or None to give up.

    A remaining budget under MIN_WAIT_MS is treated as exhausted rather than
    spent on a near-zero wait.
    """
    if remaining_ms < MIN_WAIT_MS:
        return None
    return min(remaining_ms, cap_ms)


def parse_count(raw: bytes | str | int | None) -> int:
    """Decode a counter value as returned by GET (bytes or str)."""
    if raw is None:
        return 0
    return int(raw)


@contextmanager
def store_errors(key: str) -> Iterator[None]:
    """Translate redis-py connectivity failures into StoreUnavailable."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as error:
        raise StoreUnavailable(key, error) from error
