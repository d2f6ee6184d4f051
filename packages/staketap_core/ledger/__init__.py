"""Money-safety ledger: wallets, holds, cashouts and payout adapters."""

from .cashouts import CashoutDecision, CashoutRequest, CashoutWorkflow, check_admin_token
from .errors import ErrorKind, LedgerError, Outcome
from .money import SUPPORTED_CURRENCY
from .payouts import (
    HttpPayoutProvider,
    ManualPayoutProvider,
    PayoutConfigError,
    PayoutProvider,
    PayoutRequest,
    PayoutResult,
    get_payout_provider,
)
from .wallets import Movement, Wallet, WalletLedger

__all__ = [
    "CashoutDecision",
    "CashoutRequest",
    "CashoutWorkflow",
    "check_admin_token",
    "ErrorKind",
    "LedgerError",
    "Outcome",
    "SUPPORTED_CURRENCY",
    "HttpPayoutProvider",
    "ManualPayoutProvider",
    "PayoutConfigError",
    "PayoutProvider",
    "PayoutRequest",
    "PayoutResult",
    "get_payout_provider",
    "Movement",
    "Wallet",
    "WalletLedger",
]
