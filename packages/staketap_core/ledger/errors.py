"""Error taxonomy and result values returned across the money-movement boundary.

Ledger, cashout and match operations never raise for expected failures.
They return an ``Outcome`` whose ``error`` carries a stable code (the string
clients see) and the ``ErrorKind`` the HTTP layer maps to a status code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar


T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    UPSTREAM = "upstream"
    INTERNAL = "internal"


BAD_PLAYER_ID = "bad_player_id"
BAD_AMOUNT = "bad_amount"
BAD_CURRENCY = "bad_currency"
BAD_ID = "bad_id"
INSUFFICIENT_FUNDS = "insufficient_funds"
INSUFFICIENT_HELD = "insufficient_held"
ALREADY_DECIDED = "already_decided"
NOT_FOUND = "not_found"
UNAUTHORIZED = "unauthorized"
PAYOUT_FAILED = "payout_failed"
MATCH_NOT_ACCEPTING_STAKES = "match_not_accepting_stakes"
ESCROW_NOT_READY = "escrow_not_ready"
MATCH_ENDED = "match_ended"
MATCH_NOT_FOUND = "match_not_found"
PLAYER_NOT_STAKED = "player_not_staked"
NO_VERIFIED_RUNS = "no_verified_runs"
END_FAILED = "end_failed"
RUN_REJECTED = "run_rejected"


ERROR_KINDS: dict[str, ErrorKind] = {
    BAD_PLAYER_ID: ErrorKind.VALIDATION,
    BAD_AMOUNT: ErrorKind.VALIDATION,
    BAD_CURRENCY: ErrorKind.VALIDATION,
    BAD_ID: ErrorKind.VALIDATION,
    INSUFFICIENT_FUNDS: ErrorKind.CONFLICT,
    INSUFFICIENT_HELD: ErrorKind.CONFLICT,
    ALREADY_DECIDED: ErrorKind.CONFLICT,
    MATCH_NOT_ACCEPTING_STAKES: ErrorKind.CONFLICT,
    ESCROW_NOT_READY: ErrorKind.CONFLICT,
    MATCH_ENDED: ErrorKind.CONFLICT,
    PLAYER_NOT_STAKED: ErrorKind.CONFLICT,
    NO_VERIFIED_RUNS: ErrorKind.CONFLICT,
    NOT_FOUND: ErrorKind.NOT_FOUND,
    MATCH_NOT_FOUND: ErrorKind.NOT_FOUND,
    RUN_REJECTED: ErrorKind.VALIDATION,
    UNAUTHORIZED: ErrorKind.UNAUTHORIZED,
    PAYOUT_FAILED: ErrorKind.UPSTREAM,
    END_FAILED: ErrorKind.INTERNAL,
}


def kind_for(code: str) -> ErrorKind:
    return ERROR_KINDS.get(code, ErrorKind.INTERNAL)


@dataclass(frozen=True)
class LedgerError:
    code: str
    kind: ErrorKind
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, code: str, **details: Any) -> "LedgerError":
        return cls(code=code, kind=kind_for(code), details=dict(details))

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.code, "kind": self.kind.value, **self.details}


@dataclass(frozen=True)
class Outcome(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[LedgerError] = None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, code: str, **details: Any) -> "Outcome[T]":
        return cls(ok=False, error=LedgerError.of(code, **details))

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None
