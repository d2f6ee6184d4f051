"""Payout gateway adapters for approved cashouts.

The ``manual`` provider only mints a traceable reference; an operator moves
the money by hand. The ``stripe`` and ``crypto`` providers share one generic
JSON-over-HTTP contract so a processor-side bridge can be swapped in through
configuration without touching the cashout workflow.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional
from urllib import error, request
import json
import logging
import os

from .money import money_out, now_ms


logger = logging.getLogger("staketap_core.ledger.payouts")

DEFAULT_PROVIDER = "manual"
HTTP_PROVIDERS = {"stripe", "crypto"}
SUPPORTED_PROVIDERS = {DEFAULT_PROVIDER} | HTTP_PROVIDERS
DEFAULT_TIMEOUT_MS = 10_000


def _first_non_empty(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value and value.strip():
            return value.strip()
    return None


@dataclass(frozen=True)
class PayoutRequest:
    cashout_id: str
    player_id: str
    amount: Decimal
    currency: str

    def as_payload(self) -> dict[str, Any]:
        return {
            "cashout_id": self.cashout_id,
            "player_id": self.player_id,
            "amount": money_out(self.amount),
            "currency": self.currency,
        }


@dataclass(frozen=True)
class PayoutResult:
    ok: bool
    payout_ref: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def succeeded(cls, payout_ref: str) -> "PayoutResult":
        return cls(ok=True, payout_ref=payout_ref)

    @classmethod
    def failed(cls, error_code: str) -> "PayoutResult":
        return cls(ok=False, error=error_code)


class PayoutConfigError(RuntimeError):
    def __init__(self, message: str, *, error_code: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class PayoutProvider(ABC):
    name: str = ""

    @abstractmethod
    def create_payout(self, payout: PayoutRequest) -> PayoutResult:
        raise NotImplementedError


class ManualPayoutProvider(PayoutProvider):
    name = "manual"

    def create_payout(self, payout: PayoutRequest) -> PayoutResult:
        return PayoutResult.succeeded(f"manual_{payout.cashout_id}_{now_ms()}")


class HttpPayoutProvider(PayoutProvider):
    def __init__(self, *, name: str, url: str, api_key: Optional[str], timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self.name = name
        self.url = url
        self.api_key = api_key
        self.timeout_ms = max(100, int(timeout_ms))

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json", "Idempotency-Key": str(payload["cashout_id"])}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = request.Request(
            self.url,
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        with request.urlopen(req, timeout=self.timeout_ms / 1000.0) as resp:
            raw = resp.read().decode("utf-8")
        parsed = json.loads(raw) if raw.strip() else {}
        if not isinstance(parsed, dict):
            raise ValueError("Payout response is not a JSON object")
        return parsed

    def create_payout(self, payout: PayoutRequest) -> PayoutResult:
        payload = {"provider": self.name, **payout.as_payload()}
        try:
            body = self._post(payload)
        except error.HTTPError as exc:
            logger.warning("[PAYOUT] %s rejected cashout %s: HTTP %s", self.name, payout.cashout_id, exc.code)
            return PayoutResult.failed("payout_http_error")
        except (error.URLError, TimeoutError, OSError) as exc:
            logger.warning("[PAYOUT] %s unreachable for cashout %s: %s", self.name, payout.cashout_id, exc)
            return PayoutResult.failed("payout_unreachable")
        except ValueError as exc:
            logger.warning("[PAYOUT] %s returned invalid JSON for cashout %s: %s", self.name, payout.cashout_id, exc)
            return PayoutResult.failed("payout_bad_response")

        ref = _first_non_empty(str(body.get("payout_ref") or ""), str(body.get("id") or ""))
        if not ref:
            return PayoutResult.failed("payout_bad_response")
        return PayoutResult.succeeded(f"{self.name}_{ref}")


def _timeout_ms() -> int:
    raw = str(os.environ.get("STAKETAP_PAYOUT_TIMEOUT_MS") or "").strip()
    try:
        return int(raw) if raw else DEFAULT_TIMEOUT_MS
    except ValueError:
        return DEFAULT_TIMEOUT_MS


def get_payout_provider(name: Optional[str] = None) -> PayoutProvider:
    """Build the provider named by ``STAKETAP_PAYOUT_PROVIDER`` (default manual)."""
    provider = (_first_non_empty(name, os.environ.get("STAKETAP_PAYOUT_PROVIDER")) or DEFAULT_PROVIDER).lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise PayoutConfigError(f"Unsupported payout provider: {provider}", error_code="unsupported_provider")
    if provider == DEFAULT_PROVIDER:
        return ManualPayoutProvider()

    env_kind = provider.upper()
    url = _first_non_empty(os.environ.get(f"STAKETAP_PAYOUT_{env_kind}_URL"))
    if not url:
        raise PayoutConfigError(
            f"No payout URL configured for provider: {provider}",
            error_code="missing_payout_url",
        )
    api_key = _first_non_empty(
        os.environ.get(f"STAKETAP_PAYOUT_{env_kind}_API_KEY"),
        os.environ.get("STAKETAP_PAYOUT_API_KEY"),
    )
    return HttpPayoutProvider(name=provider, url=url, api_key=api_key, timeout_ms=_timeout_ms())
