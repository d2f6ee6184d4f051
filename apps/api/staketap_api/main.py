"""FastAPI entrypoint for StakeTap."""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers.cashouts import router as cashouts_router
from .routers.matches import router as matches_router
from .routers.runs import router as runs_router
from .routers.wallet import router as wallet_router
from .services.runtime import get_runtime

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("staketap_api")

app = FastAPI(title="StakeTap API", version="0.1.0")

_cors_origins = [o.strip() for o in os.environ.get("STAKETAP_CORS_ORIGINS", "*").split(",")]
_cors_allow_credentials = "*" not in _cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(wallet_router)
app.include_router(cashouts_router)
app.include_router(matches_router)
app.include_router(runs_router)


@app.on_event("startup")
def startup() -> None:
    logger.info("[STARTUP] StakeTap API starting up at %s", datetime.now(timezone.utc).isoformat())
    runtime = get_runtime()
    try:
        restored = runtime.load_snapshots()
        logger.info("[STARTUP] Snapshot restore complete: %s", restored or "nothing to restore")
    except Exception as e:
        logger.error("[STARTUP] Snapshot restore failed, starting empty: %s", e)
    logger.info("[STARTUP] StakeTap API startup complete")


@app.on_event("shutdown")
def shutdown() -> None:
    get_runtime().shutdown()
    logger.info("[SHUTDOWN] StakeTap API stopped")


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


@app.get("/healthz")
def healthz() -> dict[str, object]:
    logger.debug("[HEALTH] Health check requested")
    return {"status": "ok", "snapshots": get_runtime().writer.status()}


def run() -> None:
    import uvicorn

    uvicorn.run(
        "apps.api.staketap_api.main:app",
        host=os.environ.get("STAKETAP_HOST", "127.0.0.1"),
        port=int(os.environ.get("STAKETAP_PORT", "8080")),
    )
