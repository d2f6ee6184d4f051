"""Cashout request workflow layered on wallet holds and the payout gateway.

pending -> approved (hold captured after the gateway pays out)
pending -> rejected (hold released back to the balance)

Both decisions are terminal.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import hmac
import logging
import os
from typing import Any, Callable, Iterable, Optional
import uuid

from ..store import KeyedLocks, KeyedTable
from . import errors
from .errors import Outcome
from .money import (
    SUPPORTED_CURRENCY,
    money_out,
    normalize_currency,
    normalize_player_id,
    now_ms,
    parse_amount,
    parse_stored_amount,
)
from .payouts import PayoutConfigError, PayoutProvider, PayoutRequest, get_payout_provider
from .wallets import ChangeHook, Wallet, WalletLedger


logger = logging.getLogger("staketap_core.ledger.cashouts")

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
CASHOUT_STATUSES = (PENDING, APPROVED, REJECTED)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 500


def _cashout_id() -> str:
    return f"co_{uuid.uuid4().hex[:16]}"


@dataclass
class CashoutRequest:
    id: str
    player_id: str
    amount: Decimal
    currency: str
    status: str
    created_at: int
    decided_at: Optional[int] = None
    decided_by: Optional[str] = None
    note: Optional[str] = None
    payout_ref: Optional[str] = None

    def copy(self) -> "CashoutRequest":
        return CashoutRequest(**self.__dict__)

    def as_dict(self) -> dict[str, Any]:
        out = dict(self.__dict__)
        out["amount"] = money_out(self.amount)
        return out

    def to_snapshot(self) -> dict[str, Any]:
        out = dict(self.__dict__)
        out["amount"] = str(self.amount)
        return out

    @classmethod
    def from_snapshot(cls, row: dict[str, Any]) -> Optional["CashoutRequest"]:
        cid = str(row.get("id") or "").strip()
        status = str(row.get("status") or "")
        if not cid or status not in CASHOUT_STATUSES:
            return None
        return cls(
            id=cid,
            player_id=normalize_player_id(row.get("player_id")),
            amount=parse_stored_amount(row.get("amount")),
            currency=normalize_currency(row.get("currency")) or SUPPORTED_CURRENCY,
            status=status,
            created_at=int(row.get("created_at") or 0),
            decided_at=int(row["decided_at"]) if row.get("decided_at") is not None else None,
            decided_by=row.get("decided_by"),
            note=row.get("note"),
            payout_ref=row.get("payout_ref"),
        )


@dataclass(frozen=True)
class CashoutDecision:
    request: CashoutRequest
    wallet: Optional[Wallet]

    def as_dict(self) -> dict[str, Any]:
        return {
            "request": self.request.as_dict(),
            "wallet": self.wallet.as_dict() if self.wallet else None,
        }


def check_admin_token(token: Optional[str], configured: Optional[str] = None) -> Outcome[bool]:
    """Compare a caller token with ``STAKETAP_CASHOUT_ADMIN_TOKEN``.

    With no secret configured every caller is allowed. That keeps local
    development friction-free and is the documented risk of this gate.
    """
    need = str(configured if configured is not None else os.environ.get("STAKETAP_CASHOUT_ADMIN_TOKEN") or "").strip()
    if not need:
        return Outcome.success(True)
    got = str(token or "").strip()
    if not got or not hmac.compare_digest(got.encode("utf-8"), need.encode("utf-8")):
        return Outcome.failure(errors.UNAUTHORIZED)
    return Outcome.success(True)


class CashoutWorkflow:
    def __init__(
        self,
        *,
        ledger: WalletLedger,
        table: Optional[KeyedTable[CashoutRequest]] = None,
        locks: Optional[KeyedLocks] = None,
        provider_lookup: Callable[[], PayoutProvider] = get_payout_provider,
        on_change: Optional[ChangeHook] = None,
    ) -> None:
        self._ledger = ledger
        self._table: KeyedTable[CashoutRequest] = table if table is not None else KeyedTable()
        self._locks = locks if locks is not None else KeyedLocks()
        self._provider_lookup = provider_lookup
        self._on_change = on_change

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception as exc:
            logger.warning("[CASHOUT] Snapshot trigger failed: %s", exc)

    def create(self, player_id: Any, amount: Any, currency: Any = SUPPORTED_CURRENCY) -> Outcome[CashoutDecision]:
        pid = normalize_player_id(player_id)
        if not pid:
            return Outcome.failure(errors.BAD_PLAYER_ID)
        cur = normalize_currency(currency)
        if not cur:
            return Outcome.failure(errors.BAD_CURRENCY)
        amt = parse_amount(amount)
        if amt is None:
            return Outcome.failure(errors.BAD_AMOUNT)

        held = self._ledger.hold(pid, amt, cur)
        if not held.ok or held.value is None:
            return Outcome(ok=False, error=held.error)

        req = CashoutRequest(
            id=_cashout_id(),
            player_id=pid,
            amount=held.value.amount,
            currency=held.value.currency,
            status=PENDING,
            created_at=now_ms(),
        )
        self._table.put(req.id, req)
        self._notify()
        logger.info("[CASHOUT] Created %s for player '%s' amount=%s %s", req.id, pid, req.amount, cur)
        return Outcome.success(CashoutDecision(request=req.copy(), wallet=self._ledger.get(pid)))

    def get(self, cashout_id: str) -> Optional[CashoutRequest]:
        req = self._table.get(str(cashout_id or "").strip())
        return req.copy() if req else None

    def list(self, *, player_id: Optional[str] = None, limit: Any = DEFAULT_LIST_LIMIT) -> list[CashoutRequest]:
        pid = normalize_player_id(player_id)
        try:
            bounded = int(limit or DEFAULT_LIST_LIMIT)
        except (TypeError, ValueError):
            bounded = DEFAULT_LIST_LIMIT
        bounded = max(1, min(MAX_LIST_LIMIT, bounded))
        items: list[CashoutRequest] = []
        for r in self._table.values():
            if pid and r.player_id != pid:
                continue
            with self._locks.lock_for(r.id):
                items.append(r.copy())
        items.sort(key=lambda r: r.created_at, reverse=True)
        return items[:bounded]

    def _pending(self, cashout_id: Any) -> Outcome[CashoutRequest]:
        cid = str(cashout_id or "").strip()
        if not cid:
            return Outcome.failure(errors.BAD_ID)
        req = self._table.get(cid)
        if req is None:
            return Outcome.failure(errors.NOT_FOUND)
        if req.status != PENDING:
            return Outcome.failure(errors.ALREADY_DECIDED, status=req.status)
        return Outcome.success(req)

    def approve(self, cashout_id: Any, decided_by: str = "admin") -> Outcome[CashoutDecision]:
        cid = str(cashout_id or "").strip()
        known = self._pending(cid)
        if not known.ok:
            return Outcome(ok=False, error=known.error)
        with self._locks.lock_for(cid):
            found = self._pending(cid)
            if not found.ok or found.value is None:
                return Outcome(ok=False, error=found.error)
            req = found.value

            try:
                provider = self._provider_lookup()
                result = provider.create_payout(
                    PayoutRequest(
                        cashout_id=req.id,
                        player_id=req.player_id,
                        amount=req.amount,
                        currency=req.currency,
                    )
                )
            except PayoutConfigError as exc:
                logger.error("[CASHOUT] Payout provider misconfigured: %s", exc)
                return Outcome.failure(errors.PAYOUT_FAILED, reason=exc.error_code)
            except Exception as exc:
                logger.exception("[CASHOUT] Payout provider crashed for %s: %s", req.id, exc)
                return Outcome.failure(errors.PAYOUT_FAILED, reason="payout_exception")
            if not result.ok or not result.payout_ref:
                logger.warning("[CASHOUT] Payout failed for %s: %s", req.id, result.error)
                return Outcome.failure(errors.PAYOUT_FAILED, reason=result.error or "payout_failed")

            captured = self._ledger.capture(req.player_id, req.amount, req.currency)
            if not captured.ok:
                logger.error(
                    "[CASHOUT] Capture failed after payout %s for %s: %s",
                    result.payout_ref,
                    req.id,
                    captured.code,
                )
                return Outcome(ok=False, error=captured.error)

            req.status = APPROVED
            req.decided_at = now_ms()
            req.decided_by = decided_by
            req.payout_ref = result.payout_ref
            snapshot = req.copy()
        self._notify()
        logger.info("[CASHOUT] Approved %s by %s ref=%s", cid, decided_by, snapshot.payout_ref)
        return Outcome.success(CashoutDecision(request=snapshot, wallet=self._ledger.get(snapshot.player_id)))

    def reject(self, cashout_id: Any, note: Optional[str] = None, decided_by: str = "admin") -> Outcome[CashoutDecision]:
        cid = str(cashout_id or "").strip()
        known = self._pending(cid)
        if not known.ok:
            return Outcome(ok=False, error=known.error)
        with self._locks.lock_for(cid):
            found = self._pending(cid)
            if not found.ok or found.value is None:
                return Outcome(ok=False, error=found.error)
            req = found.value

            released = self._ledger.release(req.player_id, req.amount, req.currency)
            if not released.ok:
                return Outcome(ok=False, error=released.error)

            req.status = REJECTED
            req.decided_at = now_ms()
            req.decided_by = decided_by
            req.note = note
            snapshot = req.copy()
        self._notify()
        logger.info("[CASHOUT] Rejected %s by %s", cid, decided_by)
        return Outcome.success(CashoutDecision(request=snapshot, wallet=self._ledger.get(snapshot.player_id)))

    def reset_all(self) -> int:
        """Drop every request. Holds stay where they are; dev use only."""
        cleared = self._table.clear()
        self._notify()
        logger.warning("[CASHOUT] Reset cleared %d cashout requests", cleared)
        return cleared

    def snapshot(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for r in self._table.values():
            with self._locks.lock_for(r.id):
                out.append(r.to_snapshot())
        return out

    def restore(self, items: Iterable[dict[str, Any]]) -> int:
        rows: dict[str, CashoutRequest] = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            req = CashoutRequest.from_snapshot(item)
            if req is not None:
                rows[req.id] = req
        self._table.replace_all(rows)
        return len(rows)
