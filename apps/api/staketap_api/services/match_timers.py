"""Cancellable one-shot deadline timers keyed by match id."""

from __future__ import annotations

import logging
import threading
from typing import Callable


logger = logging.getLogger("staketap_api.match_timers")

TimerCallback = Callable[[str], None]


class MatchDeadlineTimers:
    """At most one armed timer per match.

    Arming again replaces the previous timer. Each arm gets a generation
    number; a timer whose generation is no longer current never runs its
    callback, even if ``threading.Timer.cancel`` lost the race.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: dict[str, tuple[int, threading.Timer]] = {}
        self._generation = 0

    def arm(self, match_id: str, delay_ms: int, callback: TimerCallback) -> None:
        with self._lock:
            self._generation += 1
            generation = self._generation
            previous = self._timers.pop(match_id, None)
            timer = threading.Timer(
                max(0, int(delay_ms)) / 1000.0,
                self._fire,
                args=(match_id, generation, callback),
            )
            timer.daemon = True
            self._timers[match_id] = (generation, timer)
        if previous is not None:
            previous[1].cancel()
        timer.start()
        logger.info("[TIMER] Armed deadline for %s in %dms", match_id, delay_ms)

    def _fire(self, match_id: str, generation: int, callback: TimerCallback) -> None:
        with self._lock:
            current = self._timers.get(match_id)
            if current is None or current[0] != generation:
                return
            del self._timers[match_id]
        try:
            callback(match_id)
        except Exception as exc:
            logger.exception("[TIMER] Deadline callback failed for %s: %s", match_id, exc)

    def disarm(self, match_id: str) -> bool:
        with self._lock:
            entry = self._timers.pop(match_id, None)
        if entry is None:
            return False
        entry[1].cancel()
        logger.info("[TIMER] Disarmed deadline for %s", match_id)
        return True

    def is_armed(self, match_id: str) -> bool:
        with self._lock:
            return match_id in self._timers

    def armed_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)

    def cancel_all(self) -> int:
        with self._lock:
            entries = list(self._timers.values())
            self._timers.clear()
        for _, timer in entries:
            timer.cancel()
        return len(entries)
