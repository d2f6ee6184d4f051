"""Keyed in-memory tables and per-key locks shared by the ledger components."""

from __future__ import annotations

import threading
from typing import Callable, Generic, Iterator, Optional, TypeVar


T = TypeVar("T")


class KeyedTable(Generic[T]):
    """Insertion-ordered key -> row mapping with its own guard lock.

    Rows are mutable domain objects; callers serialize mutations of a single
    row through ``KeyedLocks``. The table lock only protects the mapping itself.
    """

    def __init__(self) -> None:
        self._rows: dict[str, T] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            return self._rows.get(key)

    def get_or_insert(self, key: str, factory: Callable[[], T]) -> tuple[T, bool]:
        with self._lock:
            row = self._rows.get(key)
            if row is not None:
                return row, False
            row = factory()
            self._rows[key] = row
            return row, True

    def put(self, key: str, row: T) -> None:
        with self._lock:
            self._rows[key] = row

    def values(self) -> list[T]:
        with self._lock:
            return list(self._rows.values())

    def clear(self) -> int:
        with self._lock:
            count = len(self._rows)
            self._rows.clear()
            return count

    def replace_all(self, rows: dict[str, T]) -> None:
        with self._lock:
            self._rows = dict(rows)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def __iter__(self) -> Iterator[T]:
        return iter(self.values())


class KeyedLocks:
    """Hands out one re-entrant lock per key (player id, match id, cashout id)."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def clear(self) -> None:
        with self._guard:
            self._locks.clear()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
