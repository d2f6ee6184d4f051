"""Cross-component match flows: stake, start, end, auto-end and run submission.

The lifecycle state machine records decisions but never moves money. This
module debits wallets into escrow, arms and disarms the deadline timer, and
pays the winner exactly once no matter how many paths end a match.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Any, Mapping, Optional

from packages.staketap_core.ledger import errors
from packages.staketap_core.ledger.errors import Outcome
from packages.staketap_core.ledger.money import (
    ZERO,
    money_out,
    normalize_currency,
    normalize_player_id,
    parse_amount,
)
from packages.staketap_core.ledger.wallets import Wallet, WalletLedger
from packages.staketap_core.match.lifecycle import (
    CREATED,
    ENDED,
    NO_WINNER,
    EndPayload,
    Match,
    MatchLifecycle,
    MatchStart,
)
from packages.staketap_core.match.runs import RunHistory, StoredRun, verify_run

from .match_timers import MatchDeadlineTimers


logger = logging.getLogger("staketap_api.match_orchestrator")

DEFAULT_GRACE_MS = 250
MIN_DEADLINE_MS = 1000


@dataclass(frozen=True)
class StakeReceipt:
    match: Match
    wallet: Optional[Wallet]


@dataclass(frozen=True)
class EndResult:
    match: Match
    already_ended: bool = False
    payout: Optional[dict[str, Any]] = None
    winner_wallet: Optional[Wallet] = None
    winner: Optional[StoredRun] = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "match": self.match.as_dict(),
            "payout": self.payout,
            "winner_wallet": self.winner_wallet.as_dict() if self.winner_wallet else None,
        }
        if self.already_ended:
            out["already_ended"] = True
        if self.winner is not None:
            out["winner"] = {
                "player_id": self.winner.player_id,
                "run_id": self.winner.id,
                "server_score": self.winner.server_score,
            }
        return out


@dataclass(frozen=True)
class RunSubmission:
    run: StoredRun
    best: Optional[StoredRun]


def _end_payload(run: Optional[StoredRun]) -> EndPayload:
    if run is None:
        return NO_WINNER
    return EndPayload(server_score=run.server_score, winner_run_id=run.id, winner_player_id=run.player_id)


class MatchOrchestrator:
    def __init__(
        self,
        *,
        ledger: WalletLedger,
        lifecycle: MatchLifecycle,
        runs: RunHistory,
        timers: MatchDeadlineTimers,
        grace_ms: int = DEFAULT_GRACE_MS,
    ) -> None:
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.runs = runs
        self.timers = timers
        self.grace_ms = max(0, int(grace_ms))

    def deadline_ms(self, match: Match) -> int:
        return max(MIN_DEADLINE_MS, int(match.duration_ms) + self.grace_ms)

    def stake(self, match_id: str, player_id: Any, amount: Any, currency: Any = "USD") -> Outcome[StakeReceipt]:
        """Debit the wallet, then credit the match escrow.

        The two writes are not one transaction: a crash between them loses
        the debit. A stake refused by the match after the debit is refunded.
        """
        match = self.lifecycle.get(match_id)
        if match is None:
            return Outcome.failure(errors.NOT_FOUND)
        if match.status != CREATED:
            return Outcome.failure(errors.MATCH_NOT_ACCEPTING_STAKES, match=match.as_dict())

        pid = normalize_player_id(player_id)
        if not pid:
            return Outcome.failure(errors.BAD_PLAYER_ID)
        amt = parse_amount(amount)
        if amt is None:
            return Outcome.failure(errors.BAD_AMOUNT)
        cur = normalize_currency(currency)
        if not cur:
            return Outcome.failure(errors.BAD_CURRENCY)

        if not self.ledger.take(pid, amt, cur):
            return Outcome.failure(errors.INSUFFICIENT_FUNDS)

        placed = self.lifecycle.place_stake(match_id, pid, amt)
        if not placed.ok or placed.value is None:
            logger.warning("[MATCH] Stake on %s refused after debit (%s); refunding %s", match_id, placed.code, pid)
            self.ledger.credit(pid, amt, cur)
            return Outcome(ok=False, error=placed.error)
        logger.info("[MATCH] %s staked %s on %s", pid, amt, match_id)
        return Outcome.success(StakeReceipt(match=placed.value, wallet=self.ledger.get(pid)))

    def start(self, match_id: str) -> Outcome[MatchStart]:
        started = self.lifecycle.start(match_id)
        if started.ok and started.value is not None and not started.value.already_started:
            self.timers.arm(match_id, self.deadline_ms(started.value.match), self.auto_end)
        return started

    def _settle(self, match: Match) -> Match:
        """Pay the escrow to the recorded winner once. Call with the match lock held."""
        winner = str(match.winner_player_id or "").strip()
        if not winner or winner == NO_WINNER.winner_player_id or match.escrow_total <= ZERO:
            return match
        if not self.lifecycle.record_payout(match.id, winner, match.escrow_total):
            return self.lifecycle.get(match.id) or match
        credited = self.ledger.credit(winner, match.escrow_total, match.currency)
        if not credited.ok:
            logger.error("[MATCH] Payout credit failed for %s to %s: %s", match.id, winner, credited.code)
        else:
            logger.info("[MATCH] Paid %s %s to %s for %s", match.escrow_total, match.currency, winner, match.id)
        return self.lifecycle.get(match.id) or match

    def _summary(self, match: Match) -> tuple[Optional[dict[str, Any]], Optional[Wallet]]:
        winner = str(match.paid_out_to or match.winner_player_id or "").strip()
        if winner == NO_WINNER.winner_player_id:
            winner = ""
        amount: Decimal = match.paid_out_amount if match.paid_out_amount is not None else match.escrow_total
        payout = None
        if winner and amount > ZERO:
            payout = {"player_id": winner, "amount": money_out(amount), "currency": match.currency}
        return payout, (self.ledger.get(winner) if winner else None)

    def end(self, match_id: str) -> Outcome[EndResult]:
        """Finalize with the best verified run. Repeat calls report, never re-pay."""
        if self.lifecycle.get(match_id) is None:
            return Outcome.failure(errors.NOT_FOUND)
        self.timers.disarm(match_id)

        with self.lifecycle.lock_for(match_id):
            current = self.lifecycle.get(match_id)
            if current is None:
                return Outcome.failure(errors.NOT_FOUND)
            if current.status == ENDED:
                payout, wallet = self._summary(current)
                return Outcome.success(EndResult(match=current, already_ended=True, payout=payout, winner_wallet=wallet))

            best = self.runs.best_run_for_match(match_id)
            if best is None:
                return Outcome.failure(errors.NO_VERIFIED_RUNS)

            ended = self.lifecycle.end(match_id, _end_payload(best))
            if not ended.ok or ended.value is None:
                return Outcome.failure(errors.END_FAILED)
            settled = self._settle(ended.value)

        payout, wallet = self._summary(settled)
        return Outcome.success(EndResult(match=settled, payout=payout, winner_wallet=wallet, winner=best))

    def auto_end(self, match_id: str) -> None:
        """Deadline callback: force-end a match that has not ended on its own."""
        try:
            with self.lifecycle.lock_for(match_id):
                match = self.lifecycle.get(match_id)
                if match is None or match.status == ENDED:
                    return
                best = self.runs.best_run_for_match(match_id)
                ended = self.lifecycle.end(match_id, _end_payload(best))
                if not ended.ok or ended.value is None:
                    logger.warning("[TIMER] Auto-end of %s refused: %s", match_id, ended.code)
                    return
                self._settle(ended.value)
            logger.info("[TIMER] Auto-ended %s (winner=%s)", match_id, best.player_id if best else "none")
        except Exception as exc:
            logger.exception("[TIMER] Auto-end failed for %s: %s", match_id, exc)
        finally:
            self.timers.disarm(match_id)

    def get_match(self, match_id: str) -> Optional[Match]:
        """Read a match; an ended match missing its score is finalized here."""
        match = self.lifecycle.get(match_id)
        if match is None or match.status != ENDED or match.server_score is not None:
            return match
        with self.lifecycle.lock_for(match_id):
            best = self.runs.best_run_for_match(match_id)
            if best is None:
                return self.lifecycle.get(match_id)
            ended = self.lifecycle.end(match_id, _end_payload(best))
            if not ended.ok or ended.value is None:
                return self.lifecycle.get(match_id)
            logger.info("[MATCH] Finalized %s on read", match_id)
            return self._settle(ended.value)

    def submit_run(self, payload: Mapping[str, Any]) -> Outcome[RunSubmission]:
        match_id = payload.get("match_id")
        if isinstance(match_id, str) and match_id:
            match = self.lifecycle.get(match_id)
            if match is None:
                return Outcome.failure(errors.MATCH_NOT_FOUND)
            if match.status == ENDED:
                return Outcome.failure(errors.MATCH_ENDED, match=match.as_dict())
            pid = normalize_player_id(payload.get("player_id"))
            if not pid or match.stake_of(pid) <= ZERO:
                return Outcome.failure(errors.PLAYER_NOT_STAKED, match=match.as_dict())

        verdict = verify_run(payload)
        if not verdict.ok or verdict.server_score is None:
            return Outcome.failure(errors.RUN_REJECTED, reason=verdict.reason)

        run = self.runs.store(payload, verdict.server_score)
        best = self.runs.best_run_for_match(run.match_id) if run.match_id else None
        return Outcome.success(RunSubmission(run=run, best=best))

    def shutdown(self) -> int:
        cancelled = self.timers.cancel_all()
        if cancelled:
            logger.info("[TIMER] Cancelled %d pending deadline timers", cancelled)
        return cancelled
