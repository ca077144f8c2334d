from __future__ import annotations

import threading
from collections.abc import Callable
from typing import TypeVar

from loguru import logger

_T = TypeVar("_T")


class Allocator:
    """
    Accounting capability handed to providers and injectable into services.

    Providers allocate resolution slots and slice backing lists through it,
    so the counters show whether storage is reused or created fresh.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.allocations = 0
        self.frees = 0

    @property
    def live(self) -> int:
        with self._lock:
            return self.allocations - self.frees

    def _before_allocate(self) -> None:
        """Hook for subclasses; raise to refuse the allocation."""

    def create(self, factory: Callable[..., _T], *args: object) -> _T:
        with self._lock:
            self._before_allocate()
            self.allocations += 1
        return factory(*args)

    def destroy(self, obj: object) -> None:
        _ = obj
        with self._lock:
            self.frees += 1


class FailingAllocator(Allocator):
    """
    Allocator that refuses every allocation after `fail_index` successful ones.
    """

    def __init__(self, fail_index: int = 0) -> None:
        super().__init__()
        self.fail_index = fail_index

    def _before_allocate(self) -> None:
        if self.allocations >= self.fail_index:
            msg = f"Allocation refused after {self.fail_index} allocation(s)."
            logger.error(msg)
            raise MemoryError(msg)
