"""Wallet endpoints: dev funding, balance lookup and withdrawal requests."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from packages.staketap_core.ledger import errors
from packages.staketap_core.ledger.errors import LedgerError
from packages.staketap_core.ledger.money import SUPPORTED_CURRENCY, money_out, normalize_player_id

from ..services.runtime import get_runtime, is_production
from .responses import error_response


logger = logging.getLogger("staketap_api.wallet")

router = APIRouter(prefix="/api/v1/wallet", tags=["wallet"])


class MoneyRequest(BaseModel):
    player_id: Optional[str] = None
    amount: Any = None
    currency: Optional[str] = SUPPORTED_CURRENCY


def create_cashout_response(req: MoneyRequest) -> Any:
    created = get_runtime().cashouts.create(req.player_id, req.amount, req.currency or SUPPORTED_CURRENCY)
    if not created.ok or created.value is None:
        return error_response(created.error)
    return {"ok": True, **created.value.as_dict()}


@router.post("/fund")
def fund_wallet(req: MoneyRequest) -> Any:
    if is_production():
        logger.warning("[WALLET] Refused fund request for '%s' in production", req.player_id)
        return JSONResponse(status_code=403, content={"ok": False, "error": "forbidden"})

    funded = get_runtime().ledger.fund(req.player_id, req.amount, req.currency or SUPPORTED_CURRENCY)
    if not funded.ok or funded.value is None:
        return error_response(funded.error)
    wallet = funded.value
    currency = SUPPORTED_CURRENCY
    return {
        "ok": True,
        "player_id": wallet.player_id,
        "currency": currency,
        "balance": money_out(wallet.balance(currency)),
        "wallet": wallet.as_dict(),
    }


@router.get("/{player_id}")
def get_wallet(player_id: str) -> Any:
    pid = normalize_player_id(player_id)
    if not pid:
        return error_response(LedgerError.of(errors.BAD_PLAYER_ID))
    return {"ok": True, "wallet": get_runtime().ledger.get_or_create(pid).as_dict()}


@router.post("/withdraw")
def withdraw(req: MoneyRequest) -> Any:
    return create_cashout_response(req)
