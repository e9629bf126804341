"""Exceptions for fleet-semaphore."""

from __future__ import annotations


class SemaphoreError(Exception):
    """Base exception for semaphore errors."""

    pass


class AcquireTimeout(SemaphoreError, TimeoutError):
    """Raised when a permit could not be acquired within the timeout budget."""

    def __init__(self, key: str, timeout_ms: int, elapsed_ms: int) -> None:
        self.key = key
        self.timeout_ms = timeout_ms
        self.elapsed_ms = elapsed_ms
        super().__init__(
            f"Timed out acquiring semaphore '{key}': "
            f"elapsed={elapsed_ms}ms, timeout={timeout_ms}ms"
        )


class AcquireCancelled(SemaphoreError):
    """Raised when the caller's cancel event is set while waiting for a permit."""

    def __init__(self, key: str, elapsed_ms: int) -> None:
        self.key = key
        self.elapsed_ms = elapsed_ms
        super().__init__(
            f"Acquire of semaphore '{key}' cancelled after {elapsed_ms}ms"
        )


class OverRelease(SemaphoreError, ValueError):
    """Raised when a semaphore is released more times than it was acquired.

    The shared counter has already been clamped back to zero when this is
    raised, so other processes are unaffected; the error exists so the
    unmatched release in the caller is visible.
    """

    def __init__(self, key: str, current: int) -> None:
        self.key = key
        self.current = current
        super().__init__(
            f"Semaphore '{key}' released more times than it was acquired: "
            f"counter={current}"
        )


class StoreUnavailable(SemaphoreError, ConnectionError):
    """Raised when the coordination store cannot be reached."""

    def __init__(self, key: str, reason: object = None) -> None:
        self.key = key
        self.reason = reason
        message = f"Coordination store unavailable for semaphore '{key}'"
        if reason is not None:
            message = f"{message}: {reason}"
        super().__init__(message)
