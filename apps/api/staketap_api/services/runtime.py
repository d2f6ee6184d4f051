"""Process-wide component wiring.

One ``Runtime`` owns the in-memory tables, the write-behind snapshot writer
and the deadline timers. Routers reach it through ``get_runtime()``; tests
rebuild it with ``reset_runtime_for_tests()`` after changing the environment.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
import os

from packages.staketap_core.ledger.cashouts import CashoutWorkflow
from packages.staketap_core.ledger.wallets import WalletLedger
from packages.staketap_core.match.lifecycle import MatchLifecycle
from packages.staketap_core.match.runs import DEFAULT_RUN_HISTORY_LIMIT, RunHistory

from ..storage.snapshots import CASHOUTS, WALLETS, load_snapshot, reset_backend_cache_for_tests, save_snapshot
from .match_orchestrator import DEFAULT_GRACE_MS, MatchOrchestrator
from .match_timers import MatchDeadlineTimers
from .snapshot_writer import SnapshotWriter


logger = logging.getLogger("staketap_api.runtime")


def _int_env(name: str, default: int) -> int:
    raw = str(os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[CONFIG] Ignoring non-integer %s=%r", name, raw)
        return default


def is_production() -> bool:
    return str(os.environ.get("STAKETAP_ENV") or "").strip().lower() == "production"


@dataclass
class Runtime:
    writer: SnapshotWriter
    ledger: WalletLedger
    cashouts: CashoutWorkflow
    matches: MatchOrchestrator

    def load_snapshots(self) -> dict[str, int]:
        """Restore wallets and cashouts from the snapshot store, best effort."""
        loaded: dict[str, int] = {}
        wallets = load_snapshot(WALLETS)
        if wallets is not None:
            loaded[WALLETS] = self.ledger.restore(wallets)
        cashouts = load_snapshot(CASHOUTS)
        if cashouts is not None:
            loaded[CASHOUTS] = self.cashouts.restore(cashouts)
        for name, count in loaded.items():
            logger.info("[SNAPSHOT] Restored %d %s", count, name)
        return loaded

    def shutdown(self) -> None:
        self.matches.shutdown()
        if not self.writer.flush(timeout=3.0):
            logger.warning("[SNAPSHOT] Shutdown flush timed out: %s", self.writer.status())
        self.writer.stop()


def build_runtime() -> Runtime:
    background = str(os.environ.get("STAKETAP_SNAPSHOT_MODE") or "background").strip().lower() != "sync"
    writer = SnapshotWriter(sink=save_snapshot, background=background)

    ledger = WalletLedger(on_change=writer.trigger(WALLETS))
    cashouts = CashoutWorkflow(ledger=ledger, on_change=writer.trigger(CASHOUTS))
    writer.register(WALLETS, ledger.snapshot)
    writer.register(CASHOUTS, cashouts.snapshot)

    matches = MatchOrchestrator(
        ledger=ledger,
        lifecycle=MatchLifecycle(),
        runs=RunHistory(capacity=_int_env("STAKETAP_RUN_HISTORY_LIMIT", DEFAULT_RUN_HISTORY_LIMIT)),
        timers=MatchDeadlineTimers(),
        grace_ms=_int_env("STAKETAP_AUTO_END_GRACE_MS", DEFAULT_GRACE_MS),
    )
    return Runtime(writer=writer, ledger=ledger, cashouts=cashouts, matches=matches)


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    return build_runtime()


def reset_runtime_for_tests() -> Runtime:
    """Tear down the current runtime and build a fresh one from the environment."""
    if get_runtime.cache_info().currsize:
        get_runtime().shutdown()
    get_runtime.cache_clear()
    reset_backend_cache_for_tests()
    return get_runtime()
