"""Cashout queue endpoints. Decisions require the admin token when one is configured."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Header, Query
from pydantic import BaseModel

from packages.staketap_core.ledger.cashouts import DEFAULT_LIST_LIMIT, check_admin_token

from ..services.runtime import get_runtime
from .responses import error_response
from .wallet import MoneyRequest, create_cashout_response


router = APIRouter(prefix="/api/v1/cashout", tags=["cashout"])


class RejectRequest(BaseModel):
    note: Optional[str] = None


def _admin_denied(token: Optional[str]) -> Any:
    guard = check_admin_token(token)
    if guard.ok:
        return None
    return error_response(guard.error)


@router.post("/create")
def create_cashout(req: MoneyRequest) -> Any:
    return create_cashout_response(req)


@router.get("/list")
def list_cashouts(
    player_id: Optional[str] = Query(default=None),
    limit: int = Query(default=DEFAULT_LIST_LIMIT),
) -> dict:
    items = get_runtime().cashouts.list(player_id=player_id, limit=limit)
    return {"ok": True, "count": len(items), "items": [item.as_dict() for item in items]}


@router.post("/reset")
def reset_cashouts(x_admin_token: Optional[str] = Header(default=None)) -> Any:
    denied = _admin_denied(x_admin_token)
    if denied is not None:
        return denied
    return {"ok": True, "cleared": get_runtime().cashouts.reset_all()}


@router.post("/{cashout_id}/approve")
def approve_cashout(cashout_id: str, x_admin_token: Optional[str] = Header(default=None)) -> Any:
    denied = _admin_denied(x_admin_token)
    if denied is not None:
        return denied
    decided = get_runtime().cashouts.approve(cashout_id)
    if not decided.ok or decided.value is None:
        return error_response(decided.error)
    return {"ok": True, **decided.value.as_dict()}


@router.post("/{cashout_id}/reject")
def reject_cashout(
    cashout_id: str,
    req: Optional[RejectRequest] = None,
    x_admin_token: Optional[str] = Header(default=None),
) -> Any:
    denied = _admin_denied(x_admin_token)
    if denied is not None:
        return denied
    note = req.note if req is not None else None
    decided = get_runtime().cashouts.reject(cashout_id, note=note)
    if not decided.ok or decided.value is None:
        return error_response(decided.error)
    return {"ok": True, **decided.value.as_dict()}
