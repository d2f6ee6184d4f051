"""Write-behind snapshot persistence.

Mutations call ``request(name)`` and return immediately. A daemon thread
coalesces pending names and rewrites each collection once per wake-up. Write
failures are logged and dropped; the next mutation schedules a fresh write.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional


logger = logging.getLogger("staketap_api.snapshot_writer")

SnapshotSource = Callable[[], list[dict[str, Any]]]
SnapshotSink = Callable[[str, list[dict[str, Any]]], None]


class SnapshotWriter:
    def __init__(self, *, sink: SnapshotSink, background: bool = True) -> None:
        self._sink = sink
        self._background = background
        self._sources: dict[str, SnapshotSource] = {}
        self._pending: set[str] = set()
        self._in_flight = 0
        self._cond = threading.Condition()
        self._stop = False
        self._thread: Optional[threading.Thread] = None
        self._last_error: Optional[str] = None
        self._writes = 0

    def register(self, name: str, source: SnapshotSource) -> None:
        self._sources[name] = source

    def trigger(self, name: str) -> Callable[[], None]:
        return lambda: self.request(name)

    def request(self, name: str) -> None:
        if not self._background:
            self._write(name)
            return
        with self._cond:
            self._pending.add(name)
            self._ensure_thread()
            self._cond.notify_all()

    def _ensure_thread(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop = False
        thread = threading.Thread(target=self._run_loop, name="staketap-snapshot-writer", daemon=True)
        thread.start()
        self._thread = thread

    def _run_loop(self) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._stop:
                    self._cond.wait()
                if self._stop and not self._pending:
                    return
                names = sorted(self._pending)
                self._pending.clear()
                self._in_flight += 1
            try:
                for name in names:
                    self._write(name)
            finally:
                with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()

    def _write(self, name: str) -> None:
        source = self._sources.get(name)
        if source is None:
            logger.warning("[SNAPSHOT] No source registered for '%s'", name)
            return
        try:
            self._sink(name, source())
            self._writes += 1
        except Exception as exc:
            self._last_error = f"{exc.__class__.__name__}: {exc}"
            logger.warning("[SNAPSHOT] Failed to persist '%s': %s", name, exc)

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until every requested write has been attempted."""
        deadline = time.monotonic() + max(0.0, float(timeout))
        with self._cond:
            while self._pending or self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def stop(self, *, join_timeout_seconds: float = 3.0) -> None:
        self.flush(timeout=join_timeout_seconds)
        with self._cond:
            self._stop = True
            self._cond.notify_all()
            thread = self._thread
        if thread:
            thread.join(timeout=max(0.1, float(join_timeout_seconds)))
        self._thread = None

    def status(self) -> dict[str, object]:
        with self._cond:
            return {
                "background": self._background,
                "running": bool(self._thread and self._thread.is_alive()),
                "pending": sorted(self._pending),
                "writes": self._writes,
                "last_error": self._last_error,
            }
