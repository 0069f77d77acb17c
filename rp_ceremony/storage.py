"""Serialized JSON file storage.

Every operation on a backing file runs under a per-file FIFO lock so that
concurrent load -> mutate -> persist sequences never interleave.  Snapshots
are written to a temporary file and moved over the target, so a reader sees
either the previous or the new document, never a partial one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import weakref
from collections import deque
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Type, TypeVar

from .errors import StoreCorruptedError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class FifoLock:
    """Asyncio mutex that hands ownership to waiters in arrival order.

    ``release`` passes the lock straight to the oldest waiter, so an
    ``acquire`` issued afterwards queues behind everyone already waiting.
    """

    def __init__(self) -> None:
        self._locked = False
        self._waiters: Deque[asyncio.Future] = deque()

    def locked(self) -> bool:
        return self._locked

    async def acquire(self) -> None:
        if not self._locked and not self._waiters:
            self._locked = True
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # ownership arrived together with the cancellation
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        if not self._locked:
            raise RuntimeError("FifoLock released while not held")
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._locked = False

    async def __aenter__(self) -> "FifoLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


_LOCKS: "weakref.WeakValueDictionary[str, FifoLock]" = weakref.WeakValueDictionary()


def lock_for(resource_key: str) -> FifoLock:
    lock = _LOCKS.get(resource_key)
    if lock is None:
        lock = FifoLock()
        _LOCKS[resource_key] = lock
    return lock


async def with_lock(resource_key: str, fn: Callable[[], Awaitable[T]]) -> T:
    """Run ``fn`` while holding the lock for ``resource_key``."""
    async with lock_for(resource_key):
        return await fn()


class Snapshot:
    """Working copy handed out by :meth:`JsonFileStore.transaction`."""

    def __init__(self, data: Any) -> None:
        self.data = data
        self.dirty = False

    def mark_dirty(self) -> None:
        self.dirty = True


class JsonFileStore:
    """A single JSON document on disk guarded by a per-path lock."""

    def __init__(self, path: str | os.PathLike, document_type: Type = dict):
        self.path = Path(path).expanduser().resolve()
        self.document_type = document_type
        self.resource_key = str(self.path)
        # keep a strong reference so every store on this path shares one lock
        self._lock = lock_for(self.resource_key)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def read(self) -> Any:
        return await with_lock(self.resource_key, self._load)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Snapshot]:
        async with self._lock:
            snapshot = Snapshot(await self._load())
            yield snapshot
            if snapshot.dirty:
                await asyncio.to_thread(self._persist_sync, snapshot.data)

    async def _load(self) -> Any:
        return await asyncio.to_thread(self._load_sync)

    # Blocking helpers --------------------------------------------------
    def _load_sync(self) -> Any:
        if not self.path.exists():
            return self.document_type()
        try:
            text = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise StoreCorruptedError(f"{self.path} is not valid UTF-8") from exc
        except OSError as exc:
            raise StoreCorruptedError(f"{self.path} could not be read") from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StoreCorruptedError(f"{self.path} is not valid JSON") from exc
        if not isinstance(data, self.document_type):
            raise StoreCorruptedError(
                f"{self.path} holds a {type(data).__name__}, "
                f"expected {self.document_type.__name__}"
            )
        return data

    def _persist_sync(self, data: Any) -> None:
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        LOGGER.debug("Persisted snapshot to %s", self.path)
