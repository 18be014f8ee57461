"""Durable state document, its read cache, and per-peer locking."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Protocol

from projects_ux.errors import StoreFormatError, StoreWriteError
from projects_ux.models import Store

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 1.0


class StateBackend(Protocol):
    async def load(self) -> Store: ...

    async def write_atomic(self, store: Store) -> None: ...


def _atomic_write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as file_handle:
            json.dump(payload, file_handle, indent=2)
            file_handle.write("\n")
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            os.unlink(temp_path)


class StateStore:
    """Whole-document JSON store; every mutation rewrites the file atomically."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @property
    def root_dir(self) -> Path:
        return self.path.parent

    def _load_sync(self) -> Store:
        if not self.path.exists():
            return Store()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            # The next write replaces the document, so its bytes are kept aside first.
            self._move_aside(exc)
            return Store()
        try:
            return Store.from_dict(raw)
        except StoreFormatError as exc:
            logger.warning("store: state failed shape check, treated as empty", extra={"path": str(self.path), "error": exc.message})
            return Store()

    def _move_aside(self, exc: Exception) -> None:
        backup_path = self.path.with_name(self.path.name + ".bak")
        if backup_path.exists():
            backup_path = self.path.with_name(f"{self.path.name}.bak-{time.time_ns()}")
        try:
            self.path.replace(backup_path)
        except OSError:
            logger.exception("store: failed to move corrupt state aside", extra={"path": str(self.path)})
        logger.error(
            "store: corrupt state treated as empty",
            extra={"path": str(self.path), "backup": str(backup_path), "error": str(exc)},
        )

    def _write_sync(self, store: Store) -> None:
        try:
            _atomic_write_json(self.path, store.to_dict())
        except OSError as exc:
            logger.error("store: atomic write failed", extra={"path": str(self.path), "error": str(exc)})
            raise StoreWriteError(f"Failed to write state: {exc}", path=str(self.path)) from exc

    async def load(self) -> Store:
        return await asyncio.to_thread(self._load_sync)

    async def write_atomic(self, store: Store) -> None:
        await asyncio.to_thread(self._write_sync, store)


class CachedStateStore:
    """Read cache over a StateStore, bounded by a TTL and the file's mtime."""

    def __init__(self, backing: StateStore, ttl_seconds: float = CACHE_TTL_SECONDS) -> None:
        self._backing = backing
        self._ttl_seconds = ttl_seconds
        self._cached: Store | None = None
        self._loaded_at = 0.0
        self._mtime_ns = 0

    @property
    def backing(self) -> StateStore:
        return self._backing

    @property
    def path(self) -> Path:
        return self._backing.path

    def _stat_mtime_ns(self) -> int | None:
        try:
            return self._backing.path.stat().st_mtime_ns
        except OSError:
            return None

    async def load(self) -> Store:
        now = time.monotonic()
        if self._cached is not None and now - self._loaded_at < self._ttl_seconds:
            return self._cached

        mtime = await asyncio.to_thread(self._stat_mtime_ns)
        if mtime is not None and self._cached is not None and mtime == self._mtime_ns:
            self._loaded_at = now
            return self._cached

        store = await self._backing.load()
        self._cached = store
        self._loaded_at = now
        self._mtime_ns = mtime or 0
        return store

    async def write_atomic(self, store: Store) -> None:
        await self._backing.write_atomic(store)
        self._cached = store
        self._loaded_at = time.monotonic()
        self._mtime_ns = await asyncio.to_thread(self._stat_mtime_ns) or 0

    def invalidate(self) -> None:
        self._cached = None
        self._loaded_at = 0.0


class WriteThroughStore:
    """Backend for mutation paths: always reads from disk, writes refresh the cache."""

    def __init__(self, cache: CachedStateStore) -> None:
        self._cache = cache
        self._backing = cache.backing

    async def load(self) -> Store:
        return await self._backing.load()

    async def write_atomic(self, store: Store) -> None:
        await self._cache.write_atomic(store)


class MemoryStateStore:
    """In-memory StateBackend; copies on every load and write."""

    def __init__(self, store: Store | None = None) -> None:
        self._store = copy.deepcopy(store) if store is not None else Store()
        self.writes = 0

    async def load(self) -> Store:
        await asyncio.sleep(0)
        return copy.deepcopy(self._store)

    async def write_atomic(self, store: Store) -> None:
        await asyncio.sleep(0)
        self._store = copy.deepcopy(store)
        self.writes += 1


class PeerLocks:
    """asyncio locks keyed by peer identity, plus one lock for the shared document."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._document = asyncio.Lock()

    def _lock_for(self, peer_key: str) -> asyncio.Lock:
        lock = self._locks.get(peer_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[peer_key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, peer_key: str) -> AsyncIterator[None]:
        async with self._lock_for(peer_key):
            yield

    @asynccontextmanager
    async def hold_document(self) -> AsyncIterator[None]:
        async with self._document:
            yield
