"""Thread-safe snapshot cache for collected directory data.

Provides a reader/writer lock and a generic per-tenant cache. Background
refresh cycles replace a tenant's entry wholesale; scrapes read a consistent
copy of all entries without waiting on in-flight API calls.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ReadWriteLock:
    """Lock allowing many concurrent readers or a single writer.

    Writers are preferred: once a writer is waiting, new readers block until
    it has finished, so a steady stream of scrapes cannot starve a refresh.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        """Hold the lock in shared mode for the duration of the block."""
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        """Hold the lock in exclusive mode for the duration of the block."""
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class SnapshotCache(Generic[T]):
    """Map from tenant id to the most recent successfully collected value.

    Values are treated as immutable: ``replace`` swaps a tenant's entry in
    one step and ``snapshot`` hands out a shallow copy of the mapping, so a
    reader never observes a half-written entry.
    """

    def __init__(self):
        self._lock = ReadWriteLock()
        self._entries: dict[str, T] = {}

    def get(self, tenant_id: str) -> T | None:
        """Return the cached value for a tenant, or None if never collected."""
        with self._lock.read():
            return self._entries.get(tenant_id)

    def replace(self, tenant_id: str, value: T) -> None:
        """Atomically replace a tenant's cached value."""
        with self._lock.write():
            self._entries[tenant_id] = value
        logger.debug("Replaced snapshot", tenant_id=tenant_id)

    def snapshot(self) -> dict[str, T]:
        """Return a consistent copy of every tenant's cached value."""
        with self._lock.read():
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)
