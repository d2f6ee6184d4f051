#!/usr/bin/env python3

from __future__ import annotations

from decimal import Decimal
import unittest

from packages.staketap_core.match.lifecycle import (
    EndPayload,
    MatchLifecycle,
    clamp_duration,
    escrow_ready,
)
from packages.staketap_core.store import KeyedLocks


class MatchLifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.lifecycle = MatchLifecycle()

    def _ready_match(self, a: object = 10, b: object = 10) -> str:
        match = self.lifecycle.create()
        self.lifecycle.place_stake(match.id, "alice", a)
        self.lifecycle.place_stake(match.id, "bob", b)
        return match.id

    def test_create_defaults(self) -> None:
        match = self.lifecycle.create()
        self.assertEqual(match.status, "created")
        self.assertEqual(match.duration_ms, 30_000)
        self.assertEqual(match.game_id, "reaction-tap")
        self.assertEqual(match.currency, "USD")
        self.assertEqual(match.escrow_total, Decimal("0"))
        self.assertEqual(match.stakes, {})

    def test_duration_is_clamped(self) -> None:
        self.assertEqual(clamp_duration(1), 5_000)
        self.assertEqual(clamp_duration(10_000_000), 300_000)
        self.assertEqual(clamp_duration("abc"), 30_000)
        self.assertEqual(clamp_duration(float("nan")), 30_000)
        self.assertEqual(clamp_duration(10**400), 30_000)
        self.assertEqual(self.lifecycle.create(duration_ms=10**400).duration_ms, 30_000)
        self.assertEqual(self.lifecycle.create(duration_ms=1_000).duration_ms, 5_000)

    def test_stakes_accumulate_and_recompute_escrow(self) -> None:
        match = self.lifecycle.create()
        self.lifecycle.place_stake(match.id, "alice", 5)
        self.lifecycle.place_stake(match.id, "bob", 10)
        placed = self.lifecycle.place_stake(match.id, "alice", 5)
        self.assertTrue(placed.ok)
        self.assertEqual(placed.value.stakes, {"alice": Decimal("10"), "bob": Decimal("10")})
        self.assertEqual(placed.value.escrow_total, Decimal("20"))

    def test_place_stake_errors(self) -> None:
        match = self.lifecycle.create()
        self.assertEqual(self.lifecycle.place_stake("m_missing", "alice", 1).code, "not_found")
        self.assertEqual(self.lifecycle.place_stake(match.id, "", 1).code, "bad_player_id")
        self.assertEqual(self.lifecycle.place_stake(match.id, "alice", -1).code, "bad_amount")

    def test_escrow_readiness_rules(self) -> None:
        match = self.lifecycle.create()
        self.lifecycle.place_stake(match.id, "alice", 10)
        one = escrow_ready(self.lifecycle.get(match.id))
        self.assertFalse(one.ok)
        self.assertEqual(one.reason, "need_two_players")

        self.lifecycle.place_stake(match.id, "bob", 7)
        unequal = escrow_ready(self.lifecycle.get(match.id))
        self.assertFalse(unequal.ok)
        self.assertEqual(unequal.reason, "amounts_must_match")
        self.assertEqual(len(unequal.entries), 2)

        self.lifecycle.place_stake(match.id, "bob", 3)
        ready = escrow_ready(self.lifecycle.get(match.id))
        self.assertTrue(ready.ok)
        self.assertEqual(ready.amount, Decimal("10"))
        self.assertEqual(ready.players, ("alice", "bob"))

    def test_third_staker_is_not_compared(self) -> None:
        match_id = self._ready_match()
        self.lifecycle.place_stake(match_id, "carol", 99)
        self.assertTrue(escrow_ready(self.lifecycle.get(match_id)).ok)

    def test_start_requires_ready_escrow(self) -> None:
        match = self.lifecycle.create()
        self.lifecycle.place_stake(match.id, "alice", 10)
        refused = self.lifecycle.start(match.id)
        self.assertEqual(refused.code, "escrow_not_ready")
        self.assertEqual(refused.error.details["details"]["reason"], "need_two_players")
        self.assertEqual(self.lifecycle.get(match.id).status, "created")

    def test_start_is_idempotent(self) -> None:
        match_id = self._ready_match()
        first = self.lifecycle.start(match_id)
        self.assertTrue(first.ok)
        self.assertFalse(first.value.already_started)
        self.assertEqual(first.value.match.status, "started")
        self.assertEqual(first.value.match.escrow_total, Decimal("20"))

        second = self.lifecycle.start(match_id)
        self.assertTrue(second.ok)
        self.assertTrue(second.value.already_started)
        self.assertEqual(second.value.match.started_at, first.value.match.started_at)

    def test_stakes_refused_after_start(self) -> None:
        match_id = self._ready_match()
        self.lifecycle.start(match_id)
        refused = self.lifecycle.place_stake(match_id, "alice", 1)
        self.assertEqual(refused.code, "match_not_accepting_stakes")
        self.assertEqual(self.lifecycle.get(match_id).escrow_total, Decimal("20"))

    def test_end_is_terminal_and_keeps_first_end_time(self) -> None:
        match_id = self._ready_match()
        self.lifecycle.start(match_id)
        ended = self.lifecycle.end(match_id, EndPayload(server_score=45, winner_run_id="r1", winner_player_id="alice"))
        self.assertEqual(ended.value.status, "ended")
        self.assertEqual(ended.value.winner_player_id, "alice")
        first_end = ended.value.ended_at

        again = self.lifecycle.end(match_id, EndPayload(server_score=50, winner_run_id="r2", winner_player_id="bob"))
        self.assertEqual(again.value.ended_at, first_end)
        self.assertEqual(again.value.winner_player_id, "bob")

        self.assertEqual(self.lifecycle.start(match_id).code, "match_ended")
        self.assertEqual(self.lifecycle.end("m_missing", EndPayload(0, "none", "none")).code, "not_found")

    def test_record_payout_writes_once(self) -> None:
        match_id = self._ready_match()
        self.assertTrue(self.lifecycle.record_payout(match_id, "alice", Decimal("20")))
        self.assertFalse(self.lifecycle.record_payout(match_id, "bob", Decimal("20")))
        match = self.lifecycle.get(match_id)
        self.assertEqual(match.paid_out_to, "alice")
        self.assertEqual(match.paid_out_amount, Decimal("20"))
        self.assertFalse(self.lifecycle.record_payout("m_missing", "alice", Decimal("1")))

    def test_unknown_match_ids_do_not_allocate_locks(self) -> None:
        locks = KeyedLocks()
        lifecycle = MatchLifecycle(locks=locks)
        for i in range(500):
            self.assertEqual(lifecycle.start(f"nope_{i}").code, "not_found")
            self.assertEqual(lifecycle.place_stake(f"nope_{i}", "alice", 1).code, "not_found")
            self.assertEqual(lifecycle.end(f"nope_{i}", EndPayload(1, "r", "alice")).code, "not_found")
            self.assertFalse(lifecycle.record_payout(f"nope_{i}", "alice", Decimal("1")))
        self.assertEqual(len(locks), 0)

        match = lifecycle.create()
        lifecycle.start(match.id)
        self.assertEqual(len(locks), 1)

    def test_as_dict_renders_money(self) -> None:
        match_id = self._ready_match("2.5", "2.5")
        payload = self.lifecycle.get(match_id).as_dict()
        self.assertEqual(payload["escrow_total"], 5)
        self.assertEqual(payload["stakes"], {"alice": 2.5, "bob": 2.5})
        self.assertIsNone(payload["paid_out_amount"])


if __name__ == "__main__":
    unittest.main()
