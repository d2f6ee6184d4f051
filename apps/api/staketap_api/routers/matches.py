"""Match endpoints: create, stake, start, end and the per-match run feed."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from packages.staketap_core.ledger import errors
from packages.staketap_core.ledger.errors import LedgerError
from packages.staketap_core.ledger.money import SUPPORTED_CURRENCY
from packages.staketap_core.match.lifecycle import DEFAULT_GAME_ID

from ..services.runtime import get_runtime
from .responses import error_response


router = APIRouter(prefix="/api/v1/match", tags=["match"])

RUN_FEED_LIMIT = 50


class CreateMatchRequest(BaseModel):
    game_id: Optional[str] = DEFAULT_GAME_ID
    duration_ms: Optional[int] = None


class StakeRequest(BaseModel):
    player_id: Optional[str] = None
    amount: Any = None
    currency: Optional[str] = SUPPORTED_CURRENCY


@router.post("/create")
def create_match(req: Optional[CreateMatchRequest] = None) -> dict:
    body = req or CreateMatchRequest()
    match = get_runtime().matches.lifecycle.create(
        game_id=body.game_id,
        currency=SUPPORTED_CURRENCY,
        duration_ms=body.duration_ms,
    )
    return {"ok": True, "match": match.as_dict()}


@router.get("/{match_id}")
def get_match(match_id: str) -> Any:
    match = get_runtime().matches.get_match(match_id)
    if match is None:
        return error_response(LedgerError.of(errors.NOT_FOUND))
    return {"ok": True, "match": match.as_dict()}


@router.post("/{match_id}/stake")
def stake(match_id: str, req: StakeRequest) -> Any:
    placed = get_runtime().matches.stake(match_id, req.player_id, req.amount, req.currency or SUPPORTED_CURRENCY)
    if not placed.ok or placed.value is None:
        return error_response(placed.error)
    receipt = placed.value
    return {
        "ok": True,
        "match": receipt.match.as_dict(),
        "wallet": receipt.wallet.as_dict() if receipt.wallet else None,
    }


@router.post("/{match_id}/start")
def start_match(match_id: str) -> Any:
    started = get_runtime().matches.start(match_id)
    if not started.ok or started.value is None:
        return error_response(started.error)
    return {
        "ok": True,
        "match": started.value.match.as_dict(),
        "already_started": started.value.already_started,
    }


@router.post("/{match_id}/end")
def end_match(match_id: str) -> Any:
    ended = get_runtime().matches.end(match_id)
    if not ended.ok or ended.value is None:
        return error_response(ended.error)
    return {"ok": True, **ended.value.as_dict()}


@router.get("/{match_id}/runs")
def match_runs(match_id: str) -> dict:
    items = get_runtime().matches.runs.runs_for_match(match_id, limit=RUN_FEED_LIMIT)
    return {"ok": True, "count": len(items), "items": [run.as_dict() for run in items]}
