"""Integration tests for MatchmakingEngine — end-to-end session lifecycle."""
import random
from unittest.mock import MagicMock

import pytest

from tandem.models import LifecycleState
from tandem.services.events import (
    CALL_ENDED,
    INIT,
    MATCH_FOUND,
    PARTNER_LEFT,
    PROFILE_UPDATED,
    REPORT_SUBMITTED,
    SEARCH_CANCELLED,
    SEARCHING,
    SESSION_ENDED,
    USER_BLOCKED,
    USER_DISCONNECTED,
)
from tandem.services.pairing_service import EndReason

from conftest import connect, events_for, payload_for


def _state(engine, connection_id):
    return engine.sessions.get(connection_id).state


class TestConnect:
    def test_init_notice(self, engine):
        out = engine.connect("a")
        payload = payload_for(out, "a", INIT)
        assert payload["user"]["id"] == "a"
        assert payload["preferences"]["genderInterest"] == "any"
        assert "europe" in payload["regions"]
        assert _state(engine, "a") is LifecycleState.IDLE

    def test_duplicate_connect_ignored(self, engine):
        engine.connect("a")
        assert engine.connect("a") == []
        assert engine.stats()["online_count"] == 1


class TestScenarios:
    """Lifecycle walk-throughs; invariants are re-checked after each step."""

    def test_two_default_searchers_are_bound(self, engine):
        connect(engine, "a", "b")
        out_a = engine.find_match("a")
        assert events_for(out_a, "a") == [SEARCHING]
        assert payload_for(out_a, "a", SEARCHING) == {"queuePosition": 1}
        assert engine.invariant_violations() == []

        out_b = engine.find_match("b")
        assert engine.invariant_violations() == []

        assert _state(engine, "a") is LifecycleState.BOUND
        assert _state(engine, "b") is LifecycleState.BOUND
        assert engine.sessions.get("a").partner_id == "b"

        to_a = payload_for(out_b, "a", MATCH_FOUND)
        to_b = payload_for(out_b, "b", MATCH_FOUND)
        assert to_b["isInitiator"] is True
        assert to_a["isInitiator"] is False
        assert to_b["partnerId"] == "a"
        assert to_a["partnerPublicProfile"]["id"] == "b"

    def test_gender_filter_waits_for_compatible_searcher(self, engine):
        connect(engine, "a", "b", gender="male")
        connect(engine, "c", gender="female")

        engine.find_match("a", {"genderInterest": "female"})
        engine.find_match("b", {"genderInterest": "any"})
        assert _state(engine, "a") is LifecycleState.SEARCHING
        assert _state(engine, "b") is LifecycleState.SEARCHING
        assert engine.queues.category_of("a") == "prefers-female"
        assert engine.invariant_violations() == []

        engine.find_match("c")
        assert engine.sessions.get("c").partner_id == "a"
        assert _state(engine, "b") is LifecycleState.SEARCHING
        assert engine.invariant_violations() == []

    def test_skip_requeues_only_the_skipper(self, engine):
        connect(engine, "a", "b")
        engine.find_match("a")
        engine.find_match("b")

        out = engine.skip("a")

        assert payload_for(out, "b", PARTNER_LEFT) == {"reason": "skipped"}
        assert SEARCHING in events_for(out, "a")
        assert _state(engine, "a") is LifecycleState.SEARCHING
        assert _state(engine, "b") is LifecycleState.IDLE
        assert "b" not in engine.queues
        assert engine.invariant_violations() == []

    def test_skip_rematches_with_waiting_third_party(self, engine):
        connect(engine, "a", "b", "c")
        engine.find_match("a")
        engine.find_match("b")
        engine.find_match("c")

        out = engine.skip("a")

        assert engine.sessions.get("a").partner_id == "c"
        assert payload_for(out, "a", MATCH_FOUND)["isInitiator"] is True
        assert engine.invariant_violations() == []

    def test_search_times_out(self, engine, clock):
        connect(engine, "a")
        engine.find_match("a")
        clock.advance(200)

        out = engine.sweep()

        assert events_for(out, "a") == ["search-timeout"]
        assert _state(engine, "a") is LifecycleState.IDLE
        assert "a" not in engine.queues
        assert engine.invariant_violations() == []


class TestFindMatch:
    def test_ignored_while_bound(self, engine):
        connect(engine, "a", "b")
        engine.find_match("a")
        engine.find_match("b")
        assert engine.find_match("a") == []
        assert engine.sessions.get("a").partner_id == "b"

    def test_repeat_request_resends_position(self, engine, clock):
        connect(engine, "a", "b")
        engine.update_profile("a", {"gender": "male"})
        engine.update_profile("b", {"gender": "male"})
        engine.find_match("a", {"genderInterest": "female"})
        engine.find_match("b", {"genderInterest": "female"})
        started = engine.sessions.get("b").search_started_at
        clock.advance(3)

        out = engine.find_match("b")
        assert payload_for(out, "b", SEARCHING) == {"queuePosition": 2}
        assert engine.sessions.get("b").search_started_at == started

    def test_new_preferences_while_searching_rerun_search(self, engine):
        connect(engine, "a", gender="male")
        connect(engine, "b", gender="female")
        engine.find_match("a", {"genderInterest": "female", "regionFilter": "asia"})
        engine.find_match("b")
        assert _state(engine, "b") is LifecycleState.SEARCHING

        out = engine.find_match("a", {"regionFilter": "any"})

        assert engine.sessions.get("a").partner_id == "b"
        assert payload_for(out, "a", MATCH_FOUND)["isInitiator"] is True
        assert engine.invariant_violations() == []

    def test_unknown_connection_is_noop(self, engine):
        assert engine.find_match("ghost") == []
        assert engine.cancel_search("ghost") == []
        assert engine.skip("ghost") == []
        assert engine.end_call("ghost") == []
        assert engine.disconnect("ghost") == []

    def test_cancel_search(self, engine):
        connect(engine, "a")
        engine.find_match("a")
        out = engine.cancel_search("a")
        assert events_for(out, "a") == [SEARCH_CANCELLED]
        assert _state(engine, "a") is LifecycleState.IDLE
        assert len(engine.queues) == 0


class TestEndingSessions:
    @pytest.fixture
    def pair(self, engine):
        connect(engine, "a", "b")
        engine.find_match("a")
        engine.find_match("b")
        return engine

    def test_end_call(self, pair):
        out = pair.end_call("a")
        assert payload_for(out, "b", PARTNER_LEFT) == {"reason": "ended"}
        assert events_for(out, "a") == [CALL_ENDED]
        assert _state(pair, "a") is LifecycleState.IDLE
        assert _state(pair, "b") is LifecycleState.IDLE
        assert pair.invariant_violations() == []

    def test_disconnect_tears_down_immediately(self, pair):
        disconnected = MagicMock()
        pair.events.subscribe(USER_DISCONNECTED, disconnected)

        out = pair.disconnect("a")

        assert payload_for(out, "b", PARTNER_LEFT) == {"reason": "disconnected"}
        assert pair.sessions.get("a") is None
        assert not pair.registry.is_live("a")
        assert _state(pair, "b") is LifecycleState.IDLE
        disconnected.assert_called_once_with({"connectionId": "a"})
        assert pair.invariant_violations() == []

    def test_ping_timeout_disconnect_reason(self, pair):
        out = pair.disconnect("b", EndReason.TIMEOUT)
        assert payload_for(out, "a", PARTNER_LEFT) == {"reason": "timeout"}

    def test_disconnect_twice_single_session_ended(self, pair):
        ended = MagicMock()
        pair.events.subscribe(SESSION_ENDED, ended)
        pair.disconnect("a")
        assert pair.disconnect("a") == []
        assert ended.call_count == 1

    def test_disconnect_while_searching_leaves_queue(self, engine):
        connect(engine, "a")
        engine.find_match("a")
        engine.disconnect("a")
        assert len(engine.queues) == 0
        assert engine.invariant_violations() == []


class TestModeration:
    @pytest.fixture
    def pair(self, engine):
        connect(engine, "a", "b")
        engine.find_match("a")
        engine.find_match("b")
        return engine

    def test_block_ends_session_and_prevents_rematch(self, pair):
        out = pair.block_partner("a")
        assert events_for(out, "a") == [USER_BLOCKED]
        assert payload_for(out, "b", PARTNER_LEFT) == {"reason": "blocked"}

        pair.find_match("a")
        pair.find_match("b")
        assert _state(pair, "a") is LifecycleState.SEARCHING
        assert _state(pair, "b") is LifecycleState.SEARCHING
        assert pair.invariant_violations() == []

    def test_report_records_blocks_and_ends(self, pair):
        out = pair.report_partner("b", {"reason": "spam" * 30, "details": "x" * 900})
        assert events_for(out, "b") == [REPORT_SUBMITTED]
        assert payload_for(out, "a", PARTNER_LEFT) == {"reason": "reported"}

        [report] = pair.reports.for_user("a")
        assert len(report.reason) == 50
        assert len(report.details) == 500
        assert pair.block_list.is_blocked("a", "b")

    def test_block_when_unbound_is_noop(self, engine):
        connect(engine, "a")
        assert engine.block_partner("a") == []
        assert engine.report_partner("a", {"reason": "spam"}) == []


class TestUpdateProfile:
    def test_profile_updated_notice(self, engine):
        connect(engine, "a")
        out = engine.update_profile("a", {"name": "Zed", "gender": "male", "regionFilter": "europe"})
        payload = payload_for(out, "a", PROFILE_UPDATED)
        assert payload["user"]["name"] == "Zed"
        assert payload["user"]["gender"] == "male"
        assert payload["preferences"]["regionFilter"] == "europe"

    def test_partner_sees_updated_name_in_chat(self, engine):
        connect(engine, "a", "b")
        engine.find_match("a")
        engine.find_match("b")
        engine.update_profile("a", {"name": "Nova"})
        out = engine.relay_chat("a", {"text": "hey"})
        assert payload_for(out, "b", "chat-message")["from"] == "Nova"


class TestStats:
    def test_counters(self, engine):
        connect(engine, "a", "b", "c")
        engine.find_match("a")
        engine.find_match("b")
        engine.find_match("c")
        assert engine.stats() == {
            "online_count": 3,
            "searching_count": 1,
            "active_session_count": 1,
        }


class TestRandomisedInvariants:
    """Random operation sequences never break the session invariants."""

    @pytest.mark.parametrize("seed", range(8))
    def test_random_walk(self, engine, clock, seed):
        rng = random.Random(seed)
        ids = [f"c{i}" for i in range(8)]
        partners_seen = {}

        for _ in range(300):
            cid = rng.choice(ids)
            op = rng.choice([
                "connect", "find", "find_filtered", "cancel", "skip",
                "end", "disconnect", "block", "profile", "sweep",
            ])
            if op == "connect":
                engine.connect(cid)
            elif op == "find":
                engine.find_match(cid)
            elif op == "find_filtered":
                engine.find_match(cid, {"genderInterest": rng.choice(["male", "female", "any"])})
            elif op == "cancel":
                engine.cancel_search(cid)
            elif op == "skip":
                engine.skip(cid)
            elif op == "end":
                engine.end_call(cid)
            elif op == "disconnect":
                engine.disconnect(cid)
            elif op == "block":
                engine.block_partner(cid)
            elif op == "profile":
                engine.update_profile(cid, {"gender": rng.choice(["male", "female", None])})
            else:
                clock.advance(rng.choice([1, 60, 200]))
                engine.sweep()

            assert engine.invariant_violations() == [], (seed, op, cid)

            # A partner link only changes through an unbind back to None;
            # skip unbinds and may rebind within the same call.
            if op == "skip":
                partners_seen.pop(cid, None)
            for session in engine.sessions.values():
                previous = partners_seen.get(session.id)
                if session.partner_id is not None and previous is not None:
                    assert session.partner_id == previous
                partners_seen[session.id] = session.partner_id
            for gone in set(partners_seen) - {s.id for s in engine.sessions.values()}:
                del partners_seen[gone]


class TestQueuePositionKept:
    """Re-sending unchanged settings while waiting keeps the queue place."""

    @pytest.fixture
    def waiting(self, engine):
        connect(engine, "a", "b", gender="male")
        engine.find_match("a", {"genderInterest": "female"})
        engine.find_match("b", {"genderInterest": "female"})
        return engine

    def test_same_preferences_resent(self, waiting):
        out = waiting.find_match("a", {"genderInterest": "female"})
        assert payload_for(out, "a", SEARCHING) == {"queuePosition": 1}
        assert waiting.queues.position("a") == 1

    def test_same_profile_resent(self, waiting):
        out = waiting.update_profile("a", {"gender": "male", "genderInterest": "female"})
        assert events_for(out, "a") == [PROFILE_UPDATED]
        assert waiting.queues.position("a") == 1

    def test_changed_preferences_move_to_new_queue(self, waiting):
        waiting.find_match("a", {"genderInterest": "any"})
        assert waiting.queues.category_of("a") == "any"
        assert waiting.queues.position("b") == 1
        assert waiting.invariant_violations() == []
