"""Per-player wallet accounting: available balances and held (frozen) funds."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import logging
from typing import Any, Callable, Iterable, Optional

from ..store import KeyedLocks, KeyedTable
from . import errors
from .errors import Outcome
from .money import (
    SUPPORTED_CURRENCY,
    ZERO,
    money_out,
    normalize_currency,
    normalize_player_id,
    parse_amount,
    parse_stored_amount,
)


logger = logging.getLogger("staketap_core.ledger.wallets")

ChangeHook = Callable[[], None]


@dataclass
class Wallet:
    player_id: str
    balances: dict[str, Decimal] = field(default_factory=dict)
    held: dict[str, Decimal] = field(default_factory=dict)

    def balance(self, currency: str = SUPPORTED_CURRENCY) -> Decimal:
        return self.balances.get(currency, ZERO)

    def held_amount(self, currency: str = SUPPORTED_CURRENCY) -> Decimal:
        return self.held.get(currency, ZERO)

    def copy(self) -> "Wallet":
        return Wallet(player_id=self.player_id, balances=dict(self.balances), held=dict(self.held))

    def as_dict(self) -> dict[str, Any]:
        return {
            "player_id": self.player_id,
            "balances": {cur: money_out(v) for cur, v in self.balances.items()},
            "held": {cur: money_out(v) for cur, v in self.held.items()},
        }

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "player_id": self.player_id,
            "balances": {cur: str(v) for cur, v in self.balances.items()},
            "held": {cur: str(v) for cur, v in self.held.items()},
        }

    @classmethod
    def from_snapshot(cls, row: dict[str, Any]) -> Optional["Wallet"]:
        player_id = normalize_player_id(row.get("player_id"))
        if not player_id:
            return None
        balances = row.get("balances") if isinstance(row.get("balances"), dict) else {}
        held = row.get("held") if isinstance(row.get("held"), dict) else {}
        return cls(
            player_id=player_id,
            balances={str(k): parse_stored_amount(v) for k, v in balances.items()},
            held={str(k): parse_stored_amount(v) for k, v in held.items()},
        )


@dataclass(frozen=True)
class Movement:
    player_id: str
    amount: Decimal
    currency: str

    def as_dict(self) -> dict[str, Any]:
        return {"player_id": self.player_id, "amount": money_out(self.amount), "currency": self.currency}


class WalletLedger:
    """Primitive money operations keyed by (player, currency).

    Every mutation holds the player's lock for its whole read-check-write and
    calls ``on_change`` after it succeeds. ``on_change`` is a best-effort
    snapshot trigger; its failures are logged and never undo the mutation.
    """

    def __init__(
        self,
        *,
        table: Optional[KeyedTable[Wallet]] = None,
        locks: Optional[KeyedLocks] = None,
        on_change: Optional[ChangeHook] = None,
    ) -> None:
        self._table: KeyedTable[Wallet] = table if table is not None else KeyedTable()
        self._locks = locks if locks is not None else KeyedLocks()
        self._on_change = on_change

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception as exc:
            logger.warning("[LEDGER] Snapshot trigger failed: %s", exc)

    def _ensure(self, player_id: str) -> Wallet:
        wallet, created = self._table.get_or_insert(player_id, lambda: Wallet(player_id=player_id))
        if created:
            logger.info("[LEDGER] Created wallet for player '%s'", player_id)
        return wallet

    def get(self, player_id: str) -> Optional[Wallet]:
        wallet = self._table.get(normalize_player_id(player_id))
        return wallet.copy() if wallet else None

    def get_or_create(self, player_id: str) -> Wallet:
        pid = normalize_player_id(player_id)
        existed = self._table.get(pid) is not None
        with self._locks.lock_for(pid):
            wallet = self._ensure(pid).copy()
        if not existed:
            self._notify()
        return wallet

    def fund(self, player_id: str, amount: Any, currency: Any = SUPPORTED_CURRENCY) -> Outcome[Wallet]:
        pid = normalize_player_id(player_id)
        if not pid:
            return Outcome.failure(errors.BAD_PLAYER_ID)
        cur = normalize_currency(currency)
        if not cur:
            return Outcome.failure(errors.BAD_CURRENCY)
        amt = parse_amount(amount)
        if amt is None:
            return Outcome.failure(errors.BAD_AMOUNT)
        with self._locks.lock_for(pid):
            wallet = self._ensure(pid)
            wallet.balances[cur] = wallet.balance(cur) + amt
            snapshot = wallet.copy()
        self._notify()
        return Outcome.success(snapshot)

    def take(self, player_id: str, amount: Any, currency: Any = SUPPORTED_CURRENCY) -> bool:
        """Debit available funds for a stake. False means nothing changed."""
        pid = normalize_player_id(player_id)
        cur = normalize_currency(currency)
        amt = parse_amount(amount)
        if not pid or not cur or amt is None:
            return False
        with self._locks.lock_for(pid):
            wallet = self._ensure(pid)
            balance = wallet.balance(cur)
            if balance < amt:
                return False
            wallet.balances[cur] = balance - amt
        self._notify()
        return True

    def credit(self, player_id: str, amount: Any, currency: Any = SUPPORTED_CURRENCY) -> Outcome[Movement]:
        """Return escrowed money to a wallet (winner payout)."""
        pid = normalize_player_id(player_id)
        if not pid:
            return Outcome.failure(errors.BAD_PLAYER_ID)
        cur = normalize_currency(currency)
        if not cur:
            return Outcome.failure(errors.BAD_CURRENCY)
        amt = parse_amount(amount)
        if amt is None:
            return Outcome.failure(errors.BAD_AMOUNT)
        with self._locks.lock_for(pid):
            wallet = self._ensure(pid)
            wallet.balances[cur] = wallet.balance(cur) + amt
        self._notify()
        return Outcome.success(Movement(player_id=pid, amount=amt, currency=cur))

    def _validate(self, player_id: Any, amount: Any, currency: Any) -> tuple[Optional[Movement], Optional[str]]:
        pid = normalize_player_id(player_id)
        if not pid:
            return None, errors.BAD_PLAYER_ID
        cur = normalize_currency(currency)
        if not cur:
            return None, errors.BAD_CURRENCY
        amt = parse_amount(amount)
        if amt is None:
            return None, errors.BAD_AMOUNT
        return Movement(player_id=pid, amount=amt, currency=cur), None

    def hold(self, player_id: str, amount: Any, currency: Any = SUPPORTED_CURRENCY) -> Outcome[Movement]:
        move, code = self._validate(player_id, amount, currency)
        if move is None:
            return Outcome.failure(code or errors.BAD_AMOUNT)
        with self._locks.lock_for(move.player_id):
            wallet = self._ensure(move.player_id)
            balance = wallet.balance(move.currency)
            if balance < move.amount:
                return Outcome.failure(
                    errors.INSUFFICIENT_FUNDS,
                    balance=money_out(balance),
                    requested=money_out(move.amount),
                )
            wallet.balances[move.currency] = balance - move.amount
            wallet.held[move.currency] = wallet.held_amount(move.currency) + move.amount
        self._notify()
        return Outcome.success(move)

    def release(self, player_id: str, amount: Any, currency: Any = SUPPORTED_CURRENCY) -> Outcome[Movement]:
        move, code = self._validate(player_id, amount, currency)
        if move is None:
            return Outcome.failure(code or errors.BAD_AMOUNT)
        with self._locks.lock_for(move.player_id):
            wallet = self._ensure(move.player_id)
            held = wallet.held_amount(move.currency)
            if held < move.amount:
                return Outcome.failure(errors.INSUFFICIENT_HELD, held=money_out(held))
            wallet.held[move.currency] = held - move.amount
            wallet.balances[move.currency] = wallet.balance(move.currency) + move.amount
        self._notify()
        return Outcome.success(move)

    def capture(self, player_id: str, amount: Any, currency: Any = SUPPORTED_CURRENCY) -> Outcome[Movement]:
        move, code = self._validate(player_id, amount, currency)
        if move is None:
            return Outcome.failure(code or errors.BAD_AMOUNT)
        with self._locks.lock_for(move.player_id):
            wallet = self._ensure(move.player_id)
            held = wallet.held_amount(move.currency)
            if held < move.amount:
                return Outcome.failure(errors.INSUFFICIENT_HELD, held=money_out(held))
            wallet.held[move.currency] = held - move.amount
        self._notify()
        return Outcome.success(move)

    def snapshot(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for wallet in self._table.values():
            with self._locks.lock_for(wallet.player_id):
                out.append(wallet.to_snapshot())
        return out

    def restore(self, items: Iterable[dict[str, Any]]) -> int:
        rows: dict[str, Wallet] = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            wallet = Wallet.from_snapshot(item)
            if wallet is not None:
                rows[wallet.player_id] = wallet
        self._table.replace_all(rows)
        return len(rows)
