"""Match lifecycle, escrow readiness and run verification."""

from .lifecycle import (
    CREATED,
    ENDED,
    NO_WINNER,
    STARTED,
    EndPayload,
    EscrowReadiness,
    Match,
    MatchLifecycle,
    MatchStart,
    clamp_duration,
    escrow_ready,
)
from .runs import RunHistory, RunVerdict, StoredRun, compute_server_score, verify_run

__all__ = [
    "CREATED",
    "ENDED",
    "NO_WINNER",
    "STARTED",
    "EndPayload",
    "EscrowReadiness",
    "Match",
    "MatchLifecycle",
    "MatchStart",
    "clamp_duration",
    "escrow_ready",
    "RunHistory",
    "RunVerdict",
    "StoredRun",
    "compute_server_score",
    "verify_run",
]
