"""Shared JSON encoding of ledger errors for the routers."""

from __future__ import annotations

from typing import Any, Optional

from fastapi.responses import JSONResponse

from packages.staketap_core.ledger.errors import ErrorKind, LedgerError


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.UPSTREAM: 502,
    ErrorKind.INTERNAL: 500,
}


def error_response(error: Optional[LedgerError], **extra: Any) -> JSONResponse:
    if error is None:
        error = LedgerError.of("internal_error")
    body = {"ok": False, **error.as_dict(), **extra}
    return JSONResponse(status_code=STATUS_BY_KIND.get(error.kind, 500), content=body)
