"""Capability interface shared by the network and in-process semaphores."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")


@runtime_checkable
class PermitSemaphore(Protocol):
    """Anything callers can take a permit from and give it back to.

    DistributedSemaphore serves callers spread over several processes;
    LocalSemaphore serves threads of one process. Code written against this
    protocol can switch between them without changing call sites.
    """

    def try_acquire(self) -> bool: ...

    def acquire(self) -> Any: ...

    def release(self) -> None: ...

    def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T: ...

    def __enter__(self) -> Any: ...

    def __exit__(self, exc_type, exc_val, exc_tb) -> None: ...
