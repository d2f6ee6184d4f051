"""Run submission: eligibility gate, server-side verification and scoring."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..middleware.rate_limit import SlidingWindowLimiter, runs_per_minute_from_env
from ..services.runtime import get_runtime
from .responses import error_response


logger = logging.getLogger("staketap_api.runs")

router = APIRouter(prefix="/api/v1/run", tags=["run"])

_run_limiter = SlidingWindowLimiter(max_requests=runs_per_minute_from_env(), window_seconds=60)


class RunSubmitRequest(BaseModel):
    match_id: Optional[str] = None
    game_id: Any = None
    player_id: Any = None
    seed: Any = None
    hits: Any = None
    misses: Any = None
    duration_ms: Any = None
    tap_count: Any = None
    spawn_count: Any = None
    avg_reaction_ms: Any = None


@router.post("/verify")
def verify(req: RunSubmitRequest) -> Any:
    limiter_key = str(req.player_id or "").strip() or "anonymous"
    if not _run_limiter.check(limiter_key):
        retry_after = _run_limiter.retry_after(limiter_key)
        logger.warning("[RUN] Rate limited submissions for '%s'", limiter_key)
        return JSONResponse(
            status_code=429,
            content={"ok": False, "verified": False, "error": "rate_limited", "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )

    submitted = get_runtime().matches.submit_run(req.model_dump())
    if not submitted.ok or submitted.value is None:
        reason = (submitted.error.details.get("reason") if submitted.error else None) or submitted.code
        return error_response(submitted.error, verified=False, reason=reason)

    run = submitted.value.run
    return {
        "ok": True,
        "verified": True,
        "server_score": run.server_score,
        "run_id": run.id,
        "player_id": run.player_id,
        "match_id": run.match_id,
        "run": run.as_dict(),
        "best": submitted.value.best.as_dict() if submitted.value.best else None,
    }


def reset_run_rate_limiter_for_tests() -> None:
    _run_limiter.reset()
