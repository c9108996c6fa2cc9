"""Per-key FIFO async locks.

One in-flight critical section per key; waiters are released strictly in the
order they called :meth:`LockManager.acquire`. Different keys never block each
other.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

Release = Callable[[], None]


class LockManager:
    def __init__(self) -> None:
        self._holders: set[str] = set()
        self._waiters: dict[str, deque[asyncio.Future[None]]] = {}

    async def acquire(self, key: str) -> Release:
        if key in self._holders:
            future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._waiters.setdefault(key, deque()).append(future)
            try:
                await future
            except asyncio.CancelledError:
                if future.done() and not future.cancelled():
                    # Ownership was handed over before cancellation landed.
                    self._release(key)
                else:
                    self._discard_waiter(key, future)
                raise
        else:
            self._holders.add(key)

        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._release(key)

        return release

    def _discard_waiter(self, key: str, future: asyncio.Future[None]) -> None:
        queue = self._waiters.get(key)
        if queue is None:
            return
        try:
            queue.remove(future)
        except ValueError:
            pass
        if not queue:
            self._waiters.pop(key, None)

    def _release(self, key: str) -> None:
        queue = self._waiters.get(key)
        while queue:
            future = queue.popleft()
            if not future.done():
                # Ownership passes directly; the key stays held.
                future.set_result(None)
                if not queue:
                    self._waiters.pop(key, None)
                return
        self._waiters.pop(key, None)
        self._holders.discard(key)

    async def run_with_lock(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        release = await self.acquire(key)
        try:
            return await fn()
        finally:
            release()

    def is_locked(self, key: str) -> bool:
        return key in self._holders

    def get_queue_length(self, key: str) -> int:
        """Holder plus waiters for ``key``."""
        if key not in self._holders:
            return 0
        return 1 + sum(1 for future in self._waiters.get(key, ()) if not future.done())


lock_manager = LockManager()


async def run_with_lock(key: str, fn: Callable[[], Awaitable[T]]) -> T:
    return await lock_manager.run_with_lock(key, fn)


__all__ = [
    "Release",
    "LockManager",
    "lock_manager",
    "run_with_lock",
]
