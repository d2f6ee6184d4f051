"""Match state machine and escrow ledger-of-record.

created -> started -> ended, strictly forward. This module records stakes and
winner bookkeeping only; wallet debits and payouts belong to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import logging
import math
from typing import Any, Optional, Union
import uuid

from ..ledger import errors
from ..ledger.errors import Outcome
from ..ledger.money import (
    SUPPORTED_CURRENCY,
    ZERO,
    money_out,
    normalize_currency,
    normalize_player_id,
    now_ms,
    parse_amount,
)
from ..store import KeyedLocks, KeyedTable


logger = logging.getLogger("staketap_core.match.lifecycle")

CREATED = "created"
STARTED = "started"
ENDED = "ended"

DEFAULT_GAME_ID = "reaction-tap"
DEFAULT_DURATION_MS = 30_000
MIN_DURATION_MS = 5_000
MAX_DURATION_MS = 5 * 60_000

NEED_TWO_PLAYERS = "need_two_players"
BAD_AMOUNTS = "bad_amounts"
AMOUNTS_MUST_MATCH = "amounts_must_match"

Score = Union[int, float]


def clamp_duration(value: Any) -> int:
    try:
        ms = float(value)
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_DURATION_MS
    if isinstance(value, bool) or not math.isfinite(ms) or ms <= 0:
        return DEFAULT_DURATION_MS
    return int(min(max(MIN_DURATION_MS, ms), MAX_DURATION_MS))


def normalize_game_id(value: Any) -> str:
    if not isinstance(value, str):
        return DEFAULT_GAME_ID
    text = value.strip()
    return text or DEFAULT_GAME_ID


def _match_id() -> str:
    return f"m_{uuid.uuid4().hex[:16]}"


@dataclass
class Match:
    id: str
    status: str
    created_at: int
    duration_ms: int = DEFAULT_DURATION_MS
    game_id: str = DEFAULT_GAME_ID
    currency: str = SUPPORTED_CURRENCY
    stakes: dict[str, Decimal] = field(default_factory=dict)
    escrow_total: Decimal = ZERO
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    server_score: Optional[Score] = None
    winner_run_id: Optional[str] = None
    winner_player_id: Optional[str] = None
    paid_out_at: Optional[int] = None
    paid_out_to: Optional[str] = None
    paid_out_amount: Optional[Decimal] = None

    def stake_of(self, player_id: str) -> Decimal:
        return self.stakes.get(player_id, ZERO)

    def copy(self) -> "Match":
        clone = Match(**self.__dict__)
        clone.stakes = dict(self.stakes)
        return clone

    def as_dict(self) -> dict[str, Any]:
        out = dict(self.__dict__)
        out["stakes"] = {pid: money_out(v) for pid, v in self.stakes.items()}
        out["escrow_total"] = money_out(self.escrow_total)
        out["paid_out_amount"] = money_out(self.paid_out_amount) if self.paid_out_amount is not None else None
        return out


@dataclass(frozen=True)
class EscrowReadiness:
    ok: bool
    reason: Optional[str] = None
    entries: tuple[tuple[str, Decimal], ...] = ()
    amount: Optional[Decimal] = None
    players: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "ok": self.ok,
            "entries": [[pid, money_out(amt)] for pid, amt in self.entries],
        }
        if self.reason:
            out["reason"] = self.reason
        if self.amount is not None:
            out["amount"] = money_out(self.amount)
            out["players"] = list(self.players)
        return out


def escrow_ready(match: Match) -> EscrowReadiness:
    """1v1 readiness: two positive stakers whose amounts are exactly equal.

    Only the first two stakers in insertion order are compared; a third
    staker is neither required nor checked.
    """
    entries = tuple((pid, amt) for pid, amt in match.stakes.items() if amt > ZERO)
    if len(entries) < 2:
        return EscrowReadiness(ok=False, reason=NEED_TWO_PLAYERS, entries=entries)

    first, second = entries[0][1], entries[1][1]
    if not first.is_finite() or not second.is_finite():
        return EscrowReadiness(ok=False, reason=BAD_AMOUNTS, entries=entries)
    if first != second:
        return EscrowReadiness(ok=False, reason=AMOUNTS_MUST_MATCH, entries=entries)

    return EscrowReadiness(
        ok=True,
        entries=entries,
        amount=first,
        players=(entries[0][0], entries[1][0]),
    )


@dataclass(frozen=True)
class MatchStart:
    match: Match
    already_started: bool = False


@dataclass(frozen=True)
class EndPayload:
    server_score: Score
    winner_run_id: str
    winner_player_id: str


NO_WINNER = EndPayload(server_score=0, winner_run_id="none", winner_player_id="none")


class MatchLifecycle:
    def __init__(self, *, table: Optional[KeyedTable[Match]] = None, locks: Optional[KeyedLocks] = None) -> None:
        self._table: KeyedTable[Match] = table if table is not None else KeyedTable()
        self._locks = locks if locks is not None else KeyedLocks()

    def create(
        self,
        *,
        game_id: Any = DEFAULT_GAME_ID,
        currency: Any = SUPPORTED_CURRENCY,
        duration_ms: Any = None,
    ) -> Match:
        match = Match(
            id=_match_id(),
            status=CREATED,
            created_at=now_ms(),
            duration_ms=clamp_duration(duration_ms) if duration_ms is not None else DEFAULT_DURATION_MS,
            game_id=normalize_game_id(game_id),
            currency=normalize_currency(currency) or SUPPORTED_CURRENCY,
        )
        self._table.put(match.id, match)
        logger.info("[MATCH] Created %s game=%s", match.id, match.game_id)
        return match.copy()

    def get(self, match_id: str) -> Optional[Match]:
        match = self._table.get(str(match_id or ""))
        return match.copy() if match else None

    def place_stake(self, match_id: str, player_id: Any, amount: Any) -> Outcome[Match]:
        pid = normalize_player_id(player_id)
        if not pid:
            return Outcome.failure(errors.BAD_PLAYER_ID)
        amt = parse_amount(amount)
        if amt is None:
            return Outcome.failure(errors.BAD_AMOUNT)
        if self._table.get(match_id) is None:
            return Outcome.failure(errors.NOT_FOUND)
        with self._locks.lock_for(match_id):
            match = self._table.get(match_id)
            if match is None:
                return Outcome.failure(errors.NOT_FOUND)
            if match.status != CREATED:
                return Outcome.failure(errors.MATCH_NOT_ACCEPTING_STAKES, status=match.status)
            match.stakes[pid] = match.stake_of(pid) + amt
            match.escrow_total = sum(match.stakes.values(), ZERO)
            return Outcome.success(match.copy())

    def start(self, match_id: str) -> Outcome[MatchStart]:
        if self._table.get(match_id) is None:
            return Outcome.failure(errors.NOT_FOUND)
        with self._locks.lock_for(match_id):
            match = self._table.get(match_id)
            if match is None:
                return Outcome.failure(errors.NOT_FOUND)
            if match.status == ENDED:
                return Outcome.failure(errors.MATCH_ENDED, match=match.as_dict())
            if match.status == STARTED:
                return Outcome.success(MatchStart(match=match.copy(), already_started=True))

            ready = escrow_ready(match)
            if not ready.ok:
                return Outcome.failure(errors.ESCROW_NOT_READY, match=match.as_dict(), details=ready.as_dict())

            match.status = STARTED
            match.started_at = now_ms()
            match.duration_ms = clamp_duration(match.duration_ms)
            logger.info("[MATCH] Started %s escrow=%s duration_ms=%d", match.id, match.escrow_total, match.duration_ms)
            return Outcome.success(MatchStart(match=match.copy()))

    def end(self, match_id: str, payload: EndPayload) -> Outcome[Match]:
        """Record the decision. Repeat calls overwrite winner fields; callers guard payouts."""
        if self._table.get(match_id) is None:
            return Outcome.failure(errors.NOT_FOUND)
        with self._locks.lock_for(match_id):
            match = self._table.get(match_id)
            if match is None:
                return Outcome.failure(errors.NOT_FOUND)
            match.status = ENDED
            if match.ended_at is None:
                match.ended_at = now_ms()
            match.server_score = payload.server_score
            match.winner_run_id = str(payload.winner_run_id)
            match.winner_player_id = str(payload.winner_player_id)
            logger.info(
                "[MATCH] Ended %s winner=%s score=%s",
                match.id,
                match.winner_player_id,
                match.server_score,
            )
            return Outcome.success(match.copy())

    def record_payout(self, match_id: str, player_id: str, amount: Decimal) -> bool:
        """Write payout bookkeeping once. False when already paid or unknown."""
        if self._table.get(match_id) is None:
            return False
        with self._locks.lock_for(match_id):
            match = self._table.get(match_id)
            if match is None or match.paid_out_at is not None:
                return False
            match.paid_out_at = now_ms()
            match.paid_out_to = player_id
            match.paid_out_amount = amount
            return True

    def lock_for(self, match_id: str):
        return self._locks.lock_for(match_id)
