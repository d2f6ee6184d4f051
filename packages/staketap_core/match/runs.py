"""Server-side verification and scoring of reaction-tap runs.

Client-reported scores are ignored; ``verify_run`` recomputes the score from
the raw counters after a fixed sequence of consistency checks.
"""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass
import math
import threading
from typing import Any, Mapping, Optional, Union
import uuid

from ..ledger.money import now_ms
from .lifecycle import DEFAULT_GAME_ID, normalize_game_id


Number = Union[int, float]

DEFAULT_RUN_HISTORY_LIMIT = 2000
MIN_REACTION_MS = 80
FAST_REACTION_MS = 250
HIT_POINTS = 10
MISS_PENALTY = 5
FAST_REACTION_BONUS = 200


def _finite(value: Any) -> Optional[Number]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        if not math.isfinite(value):
            return None
    except OverflowError:
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


@dataclass(frozen=True)
class RunVerdict:
    ok: bool
    server_score: Optional[Number] = None
    reason: Optional[str] = None


def compute_server_score(hits: Number, misses: Number, avg_reaction_ms: Optional[Number]) -> Number:
    bonus = FAST_REACTION_BONUS if avg_reaction_ms is not None and avg_reaction_ms < FAST_REACTION_MS else 0
    return hits * HIT_POINTS - misses * MISS_PENALTY + bonus


def verify_run(payload: Mapping[str, Any]) -> RunVerdict:
    game_id = payload.get("game_id")
    if game_id is not None and not _non_empty_str(game_id):
        return RunVerdict(ok=False, reason="bad_gameId")

    if _finite(payload.get("seed")) is None:
        return RunVerdict(ok=False, reason="bad_seed")

    if not _non_empty_str(payload.get("player_id")):
        return RunVerdict(ok=False, reason="bad_playerId")

    hits = _finite(payload.get("hits"))
    if hits is None or hits < 0:
        return RunVerdict(ok=False, reason="bad_hits")
    misses = _finite(payload.get("misses"))
    if misses is None or misses < 0:
        return RunVerdict(ok=False, reason="bad_misses")

    duration = _finite(payload.get("duration_ms"))
    if duration is None or duration <= 0:
        return RunVerdict(ok=False, reason="bad_duration")

    tap_count = _finite(payload.get("tap_count"))
    if tap_count is None or tap_count < 0:
        return RunVerdict(ok=False, reason="bad_tapCount")
    spawn_count = _finite(payload.get("spawn_count"))
    if spawn_count is None or spawn_count < 0:
        return RunVerdict(ok=False, reason="bad_spawnCount")

    if tap_count != hits + misses:
        return RunVerdict(ok=False, reason="bad_tapCount")
    if spawn_count != hits + 1:
        return RunVerdict(ok=False, reason="bad_spawnCount")

    raw_avg = payload.get("avg_reaction_ms")
    avg = None
    if raw_avg is not None:
        avg = _finite(raw_avg)
        if avg is None:
            return RunVerdict(ok=False, reason="bad_avgReactionMs")
        if avg < MIN_REACTION_MS:
            return RunVerdict(ok=False, reason="reaction_too_fast")

    return RunVerdict(ok=True, server_score=compute_server_score(hits, misses, avg))


@dataclass(frozen=True)
class StoredRun:
    id: str
    created_at: int
    game_id: str
    match_id: Optional[str]
    player_id: str
    seed: Number
    hits: Number
    misses: Number
    avg_reaction_ms: Optional[Number]
    duration_ms: Number
    spawn_count: Number
    tap_count: Number
    server_score: Number

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class RunHistory:
    """Global ring buffer of verified runs, oldest evicted first."""

    def __init__(self, capacity: int = DEFAULT_RUN_HISTORY_LIMIT) -> None:
        self.capacity = max(1, int(capacity))
        self._runs: deque[StoredRun] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()

    def store(self, payload: Mapping[str, Any], server_score: Number) -> StoredRun:
        """Persist a run that already passed ``verify_run``."""
        match_id = payload.get("match_id")
        hits = _finite(payload.get("hits")) or 0
        misses = _finite(payload.get("misses")) or 0
        run = StoredRun(
            id=uuid.uuid4().hex,
            created_at=now_ms(),
            game_id=normalize_game_id(payload.get("game_id")) if payload.get("game_id") else DEFAULT_GAME_ID,
            match_id=match_id if isinstance(match_id, str) and match_id else None,
            player_id=str(payload.get("player_id") or "").strip(),
            seed=_finite(payload.get("seed")) or 0,
            hits=hits,
            misses=misses,
            avg_reaction_ms=_finite(payload.get("avg_reaction_ms")),
            duration_ms=_finite(payload.get("duration_ms")) or 0,
            spawn_count=hits + 1,
            tap_count=hits + misses,
            server_score=server_score,
        )
        with self._lock:
            self._runs.append(run)
        return run

    def _for_match(self, match_id: str) -> list[StoredRun]:
        with self._lock:
            return [r for r in self._runs if r.match_id == match_id]

    def runs_for_match(self, match_id: str, limit: int = 50) -> list[StoredRun]:
        items = self._for_match(match_id)
        items.reverse()
        items.sort(key=lambda r: r.created_at, reverse=True)
        return items[: max(1, int(limit))]

    def best_run_for_match(self, match_id: str) -> Optional[StoredRun]:
        items = self._for_match(match_id)
        if not items:
            return None
        # Highest score; ties go to the earliest run (creation time, then arrival).
        best_idx = min(
            range(len(items)),
            key=lambda i: (-items[i].server_score, items[i].created_at, i),
        )
        return items[best_idx]

    def best_score_for_match(self, match_id: str) -> Optional[Number]:
        best = self.best_run_for_match(match_id)
        return best.server_score if best else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)

    def clear(self) -> None:
        with self._lock:
            self._runs.clear()
