from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from storyweave.modules.persistence.file_utils import (
    atomic_write_json,
    delete_file,
    ensure_directory,
    file_exists,
    read_json_file,
)
from storyweave.modules.persistence.lock_manager import LockManager, lock_manager

logger = logging.getLogger(__name__)

PathFn = Callable[[str], Path]
PrepareWrite = Callable[[Path], Awaitable[None]]


class EntityNotFoundError(LookupError):
    """Raised when an update targets a document that does not exist."""


async def ensure_parent_directory(path: Path) -> None:
    await ensure_directory(path.parent)


class LockingJsonStore:
    """One JSON document per key, located by ``path_fn``.

    ``write``, ``update`` and ``remove`` hold the per-key lock for their whole
    read-modify-write. ``read`` and ``exists`` do not lock; a concurrent
    reader sees either the old or the new document, never a partial one.
    """

    def __init__(
        self,
        path_fn: PathFn,
        *,
        lock_prefix: str = "",
        lock_key_fn: Callable[[str], str] | None = None,
        prepare_write: PrepareWrite | None = ensure_parent_directory,
        locks: LockManager | None = None,
    ) -> None:
        self._path_fn = path_fn
        self._lock_prefix = lock_prefix
        self._lock_key_fn = lock_key_fn
        self._prepare_write = prepare_write
        self._locks = locks or lock_manager

    @property
    def locks(self) -> LockManager:
        return self._locks

    def path_for(self, key: str) -> Path:
        return self._path_fn(key)

    def lock_key(self, key: str) -> str:
        base = self._lock_key_fn(key) if self._lock_key_fn is not None else key
        return f"{self._lock_prefix}{base}"

    async def write_unlocked(self, key: str, payload: object) -> None:
        """Write without taking the lock; the caller must already hold ``lock_key(key)``."""
        path = self.path_for(key)
        if self._prepare_write is not None:
            await self._prepare_write(path)
        await atomic_write_json(path, payload)

    async def write(self, key: str, payload: object) -> None:
        async def _write() -> None:
            await self.write_unlocked(key, payload)

        await self._locks.run_with_lock(self.lock_key(key), _write)

    async def create(self, key: str, payload: object) -> bool:
        """Write only if no document exists yet. Returns whether it was written."""

        async def _create() -> bool:
            if await file_exists(self.path_for(key)):
                return False
            await self.write_unlocked(key, payload)
            return True

        return await self._locks.run_with_lock(self.lock_key(key), _create)

    async def read(self, key: str) -> object | None:
        return await read_json_file(self.path_for(key))

    async def exists(self, key: str) -> bool:
        return await file_exists(self.path_for(key))

    async def update(self, key: str, updater: Callable[[object], object]) -> object:
        async def _update() -> object:
            existing = await read_json_file(self.path_for(key))
            if existing is None:
                raise EntityNotFoundError(f"document not found: {key}")
            updated = updater(existing)
            await self.write_unlocked(key, updated)
            return updated

        return await self._locks.run_with_lock(self.lock_key(key), _update)

    async def remove(self, key: str) -> None:
        async def _remove() -> None:
            await delete_file(self.path_for(key))
            logger.debug("removed document %s", key)

        await self._locks.run_with_lock(self.lock_key(key), _remove)


__all__ = [
    "PathFn",
    "PrepareWrite",
    "EntityNotFoundError",
    "ensure_parent_directory",
    "LockingJsonStore",
]
