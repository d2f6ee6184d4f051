#!/usr/bin/env python3

from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

TEST_DATA_DIR = tempfile.TemporaryDirectory()
os.environ["STAKETAP_DATA_DIR"] = TEST_DATA_DIR.name
os.environ["STAKETAP_SNAPSHOT_MODE"] = "sync"
os.environ.pop("DATABASE_URL", None)

from apps.api.staketap_api.main import app
from apps.api.staketap_api.routers.runs import reset_run_rate_limiter_for_tests
from apps.api.staketap_api.services.runtime import get_runtime, reset_runtime_for_tests


def _run(player_id: str, match_id: str, hits: int = 5, misses: int = 1, **extra: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "game_id": "reaction-tap",
        "seed": 7,
        "player_id": player_id,
        "match_id": match_id,
        "hits": hits,
        "misses": misses,
        "duration_ms": 30_000,
        "tap_count": hits + misses,
        "spawn_count": hits + 1,
    }
    payload.update(extra)
    return payload


class StakeTapApiTests(unittest.TestCase):
    _env_keys = ("STAKETAP_ENV", "STAKETAP_CASHOUT_ADMIN_TOKEN", "STAKETAP_PAYOUT_PROVIDER")

    def setUp(self) -> None:
        self._env_backup = {k: os.environ.get(k) for k in self._env_keys}
        for key in self._env_keys:
            os.environ.pop(key, None)
        os.environ["STAKETAP_DATA_DIR"] = TEST_DATA_DIR.name
        os.environ["STAKETAP_SNAPSHOT_MODE"] = "sync"
        for path in Path(TEST_DATA_DIR.name).glob("*.json"):
            path.unlink()
        reset_runtime_for_tests()
        reset_run_rate_limiter_for_tests()
        self.client = TestClient(app)

    def tearDown(self) -> None:
        for key, value in self._env_backup.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _fund(self, player_id: str, amount: object) -> dict:
        resp = self.client.post("/api/v1/wallet/fund", json={"player_id": player_id, "amount": amount})
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def _started_match(self, stake: int = 10) -> str:
        created = self.client.post("/api/v1/match/create", json={})
        self.assertEqual(created.status_code, 200)
        match_id = created.json()["match"]["id"]
        for pid in ("alice", "bob"):
            self._fund(pid, 50)
            staked = self.client.post(f"/api/v1/match/{match_id}/stake", json={"player_id": pid, "amount": stake})
            self.assertEqual(staked.status_code, 200, staked.text)
        started = self.client.post(f"/api/v1/match/{match_id}/start")
        self.assertEqual(started.status_code, 200, started.text)
        self.assertFalse(started.json()["already_started"])
        return match_id

    def test_health_endpoints(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"ok": True})
        healthz = self.client.get("/healthz")
        self.assertEqual(healthz.status_code, 200)
        self.assertEqual(healthz.json()["status"], "ok")

    def test_fund_and_read_wallet(self) -> None:
        funded = self._fund("alice", 25.5)
        self.assertEqual(funded["balance"], 25.5)
        self.assertEqual(funded["currency"], "USD")

        wallet = self.client.get("/api/v1/wallet/alice").json()["wallet"]
        self.assertEqual(wallet["balances"], {"USD": 25.5})

        fresh = self.client.get("/api/v1/wallet/newbie").json()["wallet"]
        self.assertEqual(fresh, {"player_id": "newbie", "balances": {}, "held": {}})

    def test_fund_validation_errors(self) -> None:
        resp = self.client.post("/api/v1/wallet/fund", json={"player_id": "alice", "amount": -1})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "bad_amount")
        self.assertFalse(resp.json()["ok"])

        resp = self.client.post("/api/v1/wallet/fund", json={"player_id": "alice", "amount": 1, "currency": "EUR"})
        self.assertEqual(resp.json()["error"], "bad_currency")

    def test_fund_is_forbidden_in_production(self) -> None:
        os.environ["STAKETAP_ENV"] = "production"
        resp = self.client.post("/api/v1/wallet/fund", json={"player_id": "alice", "amount": 10})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json(), {"ok": False, "error": "forbidden"})

    def test_withdraw_then_reject_restores_balance(self) -> None:
        self._fund("alice", 10)
        created = self.client.post("/api/v1/wallet/withdraw", json={"player_id": "alice", "amount": 10})
        self.assertEqual(created.status_code, 200, created.text)
        body = created.json()
        self.assertEqual(body["request"]["status"], "pending")
        self.assertEqual(body["wallet"]["balances"], {"USD": 0})
        self.assertEqual(body["wallet"]["held"], {"USD": 10})

        cid = body["request"]["id"]
        rejected = self.client.post(f"/api/v1/cashout/{cid}/reject", json={"note": "duplicate"})
        self.assertEqual(rejected.status_code, 200)
        self.assertEqual(rejected.json()["request"]["status"], "rejected")
        self.assertEqual(rejected.json()["wallet"]["balances"], {"USD": 10})
        self.assertEqual(rejected.json()["wallet"]["held"], {"USD": 0})

        again = self.client.post(f"/api/v1/cashout/{cid}/approve")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"], "already_decided")

    def test_withdraw_insufficient_funds_is_conflict(self) -> None:
        self._fund("alice", 5)
        resp = self.client.post("/api/v1/cashout/create", json={"player_id": "alice", "amount": 6})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "insufficient_funds")

    def test_approve_with_manual_provider(self) -> None:
        self._fund("alice", 10)
        cid = self.client.post("/api/v1/cashout/create", json={"player_id": "alice", "amount": 4}).json()["request"]["id"]
        approved = self.client.post(f"/api/v1/cashout/{cid}/approve")
        self.assertEqual(approved.status_code, 200, approved.text)
        request = approved.json()["request"]
        self.assertEqual(request["status"], "approved")
        self.assertTrue(request["payout_ref"].startswith(f"manual_{cid}_"))
        self.assertEqual(approved.json()["wallet"]["balances"], {"USD": 6})
        self.assertEqual(approved.json()["wallet"]["held"], {"USD": 0})

        self.assertEqual(self.client.post("/api/v1/cashout/co_nope/approve").status_code, 404)

    def test_misconfigured_gateway_is_bad_gateway(self) -> None:
        os.environ["STAKETAP_PAYOUT_PROVIDER"] = "paypal"
        self._fund("alice", 10)
        cid = self.client.post("/api/v1/cashout/create", json={"player_id": "alice", "amount": 4}).json()["request"]["id"]
        resp = self.client.post(f"/api/v1/cashout/{cid}/approve")
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json()["error"], "payout_failed")
        self.assertEqual(resp.json()["reason"], "unsupported_provider")
        self.assertEqual(self.client.get("/api/v1/wallet/alice").json()["wallet"]["held"], {"USD": 4})

    def test_admin_token_guards_decisions(self) -> None:
        os.environ["STAKETAP_CASHOUT_ADMIN_TOKEN"] = "letmein"
        self._fund("alice", 10)
        cid = self.client.post("/api/v1/cashout/create", json={"player_id": "alice", "amount": 4}).json()["request"]["id"]

        denied = self.client.post(f"/api/v1/cashout/{cid}/approve", headers={"X-Admin-Token": "wrong"})
        self.assertEqual(denied.status_code, 401)
        self.assertEqual(denied.json()["error"], "unauthorized")
        self.assertEqual(self.client.post("/api/v1/cashout/reset").status_code, 401)

        allowed = self.client.post(f"/api/v1/cashout/{cid}/approve", headers={"X-Admin-Token": "letmein"})
        self.assertEqual(allowed.status_code, 200)

        reset = self.client.post("/api/v1/cashout/reset", headers={"X-Admin-Token": "letmein"})
        self.assertEqual(reset.json(), {"ok": True, "cleared": 1})

    def test_cashout_list_filters_by_player(self) -> None:
        self._fund("alice", 10)
        self._fund("bob", 10)
        self.client.post("/api/v1/cashout/create", json={"player_id": "alice", "amount": 1})
        self.client.post("/api/v1/cashout/create", json={"player_id": "bob", "amount": 1})
        listed = self.client.get("/api/v1/cashout/list", params={"player_id": "alice", "limit": 9999}).json()
        self.assertEqual(listed["count"], 1)
        self.assertEqual(listed["items"][0]["player_id"], "alice")
        self.assertEqual(self.client.get("/api/v1/cashout/list").json()["count"], 2)

    def test_full_match_flow_pays_once(self) -> None:
        match_id = self._started_match()
        match = self.client.get(f"/api/v1/match/{match_id}").json()["match"]
        self.assertEqual(match["status"], "started")
        self.assertEqual(match["escrow_total"], 20)
        self.assertEqual(match["duration_ms"], 30_000)

        verified = self.client.post("/api/v1/run/verify", json=_run("alice", match_id))
        self.assertEqual(verified.status_code, 200, verified.text)
        self.assertTrue(verified.json()["verified"])
        self.assertEqual(verified.json()["server_score"], 45)
        self.assertEqual(verified.json()["best"]["player_id"], "alice")

        ended = self.client.post(f"/api/v1/match/{match_id}/end")
        self.assertEqual(ended.status_code, 200, ended.text)
        body = ended.json()
        self.assertEqual(body["match"]["status"], "ended")
        self.assertEqual(body["match"]["winner_player_id"], "alice")
        self.assertEqual(body["payout"], {"player_id": "alice", "amount": 20, "currency": "USD"})
        self.assertEqual(body["winner_wallet"]["balances"], {"USD": 60})
        self.assertEqual(body["winner"]["server_score"], 45)

        again = self.client.post(f"/api/v1/match/{match_id}/end")
        self.assertEqual(again.status_code, 200)
        self.assertTrue(again.json()["already_ended"])
        self.assertEqual(self.client.get("/api/v1/wallet/alice").json()["wallet"]["balances"], {"USD": 60})
        self.assertEqual(self.client.get("/api/v1/wallet/bob").json()["wallet"]["balances"], {"USD": 40})
        self.assertFalse(get_runtime().matches.timers.is_armed(match_id))

    def test_start_requires_equal_stakes(self) -> None:
        match_id = self.client.post("/api/v1/match/create", json={"duration_ms": 1}).json()["match"]["id"]
        self._fund("alice", 50)
        self._fund("bob", 50)
        self.client.post(f"/api/v1/match/{match_id}/stake", json={"player_id": "alice", "amount": 10})
        self.client.post(f"/api/v1/match/{match_id}/stake", json={"player_id": "bob", "amount": 5})
        resp = self.client.post(f"/api/v1/match/{match_id}/start")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "escrow_not_ready")
        self.assertEqual(resp.json()["details"]["reason"], "amounts_must_match")
        self.assertEqual(resp.json()["match"]["duration_ms"], 5_000)

    def test_stake_errors(self) -> None:
        match_id = self._started_match()
        late = self.client.post(f"/api/v1/match/{match_id}/stake", json={"player_id": "alice", "amount": 1})
        self.assertEqual(late.status_code, 409)
        self.assertEqual(late.json()["error"], "match_not_accepting_stakes")

        missing = self.client.post("/api/v1/match/m_nope/stake", json={"player_id": "alice", "amount": 1})
        self.assertEqual(missing.status_code, 404)

        fresh = self.client.post("/api/v1/match/create").json()["match"]["id"]
        broke = self.client.post(f"/api/v1/match/{fresh}/stake", json={"player_id": "zed", "amount": 1})
        self.assertEqual(broke.status_code, 409)
        self.assertEqual(broke.json()["error"], "insufficient_funds")

        self._fund("zed", 5)
        fractional = self.client.post(f"/api/v1/match/{fresh}/stake", json={"player_id": "zed", "amount": "0.001"})
        self.assertEqual(fractional.status_code, 400)
        self.assertEqual(fractional.json()["error"], "bad_amount")
        self.assertEqual(self.client.get("/api/v1/wallet/zed").json()["wallet"]["balances"]["USD"], 5)

    def test_end_without_runs_and_unknown_match(self) -> None:
        match_id = self._started_match()
        resp = self.client.post(f"/api/v1/match/{match_id}/end")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "no_verified_runs")
        self.assertEqual(self.client.post("/api/v1/match/m_nope/end").status_code, 404)
        self.assertEqual(self.client.get("/api/v1/match/m_nope").status_code, 404)
        self.assertEqual(self.client.post("/api/v1/match/m_nope/start").status_code, 404)

    def test_run_verify_gate_and_rejections(self) -> None:
        match_id = self._started_match()

        not_found = self.client.post("/api/v1/run/verify", json=_run("alice", "m_nope"))
        self.assertEqual(not_found.status_code, 404)
        self.assertEqual(not_found.json()["reason"], "match_not_found")
        self.assertFalse(not_found.json()["verified"])

        outsider = self.client.post("/api/v1/run/verify", json=_run("carol", match_id))
        self.assertEqual(outsider.status_code, 409)
        self.assertEqual(outsider.json()["reason"], "player_not_staked")

        cheater = self.client.post("/api/v1/run/verify", json=_run("alice", match_id, avg_reaction_ms=50))
        self.assertEqual(cheater.status_code, 400)
        self.assertEqual(cheater.json()["reason"], "reaction_too_fast")

        miscount = self.client.post("/api/v1/run/verify", json=_run("alice", match_id, tap_count=1))
        self.assertEqual(miscount.json()["reason"], "bad_tapCount")

        huge_seed = self.client.post("/api/v1/run/verify", json=_run("alice", match_id, seed=10**400))
        self.assertEqual(huge_seed.status_code, 400)
        self.assertEqual(huge_seed.json()["reason"], "bad_seed")

        self.client.post("/api/v1/run/verify", json=_run("alice", match_id))
        self.client.post(f"/api/v1/match/{match_id}/end")
        late = self.client.post("/api/v1/run/verify", json=_run("alice", match_id))
        self.assertEqual(late.status_code, 409)
        self.assertEqual(late.json()["reason"], "match_ended")

    def test_match_runs_feed(self) -> None:
        match_id = self._started_match()
        self.client.post("/api/v1/run/verify", json=_run("alice", match_id))
        self.client.post("/api/v1/run/verify", json=_run("bob", match_id, hits=9, misses=0))
        feed = self.client.get(f"/api/v1/match/{match_id}/runs").json()
        self.assertEqual(feed["count"], 2)
        self.assertEqual({item["player_id"] for item in feed["items"]}, {"alice", "bob"})

    def test_run_submissions_are_rate_limited(self) -> None:
        from apps.api.staketap_api.routers import runs as runs_router

        limiter = runs_router._run_limiter
        original = limiter.max_requests
        limiter.max_requests = 2
        try:
            payload = _run("solo", "")
            payload.pop("match_id")
            self.assertEqual(self.client.post("/api/v1/run/verify", json=payload).status_code, 200)
            self.assertEqual(self.client.post("/api/v1/run/verify", json=payload).status_code, 200)
            limited = self.client.post("/api/v1/run/verify", json=payload)
            self.assertEqual(limited.status_code, 429)
            self.assertEqual(limited.json()["error"], "rate_limited")
            self.assertGreaterEqual(int(limited.headers["Retry-After"]), 1)
        finally:
            limiter.max_requests = original

    def test_wallets_are_snapshotted_and_restored(self) -> None:
        self._fund("alice", 12)
        self.client.post("/api/v1/cashout/create", json={"player_id": "alice", "amount": 2})
        snapshot = json.loads((Path(TEST_DATA_DIR.name) / "wallets.json").read_text(encoding="utf-8"))
        self.assertEqual(snapshot["items"][0]["balances"], {"USD": "10.00"})
        self.assertTrue((Path(TEST_DATA_DIR.name) / "cashouts.json").exists())

        runtime = reset_runtime_for_tests()
        self.assertIsNone(runtime.ledger.get("alice"))
        restored = runtime.load_snapshots()
        self.assertEqual(restored, {"wallets": 1, "cashouts": 1})
        wallet = self.client.get("/api/v1/wallet/alice").json()["wallet"]
        self.assertEqual(wallet["balances"], {"USD": 10})
        self.assertEqual(wallet["held"], {"USD": 2})


if __name__ == "__main__":
    unittest.main()
