from __future__ import annotations

import json
import logging

import pytest

from concierge.errors import ApiError
from concierge.guard_state import InMemoryGuardStateStore
from concierge.recursion_guard import RecursionGuard, TriggerEvent


def _guard(monotonic, **kwargs) -> RecursionGuard:
    kwargs.setdefault("rng", lambda: 0.99)
    return RecursionGuard(InMemoryGuardStateStore(clock=monotonic), **kwargs)


def test_depth_one_and_two_allowed_third_halts(monotonic):
    guard = _guard(monotonic)
    first = guard.check("evt_1", trigger_name="onJobWrite", document_path="jobs/j1")
    second = guard.check("evt_1", trigger_name="onJobWrite", document_path="jobs/j1")
    third = guard.check("evt_1", trigger_name="onJobWrite", document_path="jobs/j1")

    assert (first.halt, first.depth) == (False, 1)
    assert (second.halt, second.depth) == (False, 2)
    assert third.halt is True
    assert third.depth == 3
    assert third.reason == "Recursion depth 3 exceeds maximum 2"


def test_distinct_events_are_tracked_separately(monotonic):
    guard = _guard(monotonic)
    guard.check("evt_a", trigger_name="t", document_path="jobs/a")
    guard.check("evt_a", trigger_name="t", document_path="jobs/a")
    other = guard.check("evt_b", trigger_name="t", document_path="jobs/b")
    assert other.depth == 1
    assert guard.cache_size() == 2


def test_expired_entry_is_a_fresh_start(monotonic):
    guard = _guard(monotonic, ttl_s=60)
    for _ in range(3):
        guard.check("evt_ttl", trigger_name="t", document_path="jobs/x")
    monotonic.advance(61)
    again = guard.check("evt_ttl", trigger_name="t", document_path="jobs/x")
    assert again.halt is False
    assert again.depth == 1


def test_sweep_removes_expired_entries_when_sampled(monotonic):
    state = InMemoryGuardStateStore(clock=monotonic)
    guard = RecursionGuard(state, ttl_s=10, rng=lambda: 0.0)
    guard.check("evt_old", trigger_name="t", document_path="jobs/x")
    monotonic.advance(11)
    guard.check("evt_new", trigger_name="t", document_path="jobs/y")
    assert state.size() == 1


def test_exhausted_compare_and_swap_counts_as_fresh_start_without_writing():
    class RacingState(InMemoryGuardStateStore):
        attempts = 0

        def compare_and_swap(self, key, *, expected, new, ttl_s):
            self.attempts += 1
            return False

    state = RacingState()
    state.set("recursion:evt_race", {"depth": 5, "last_seen": 0}, ttl_s=60)
    guard = RecursionGuard(state, rng=lambda: 0.99, max_cas_attempts=3)
    result = guard.check("evt_race", trigger_name="t", document_path="jobs/r")
    assert result.halt is False
    assert result.depth == 1
    assert state.attempts == 3
    assert state.get("recursion:evt_race")["depth"] == 5


def test_concurrent_increment_is_retried_not_reset():
    class InterleavedState(InMemoryGuardStateStore):
        interfered = False

        def compare_and_swap(self, key, *, expected, new, ttl_s):
            if not self.interfered:
                # Another handler observes the same event between our read and write.
                self.interfered = True
                self.set(key, {"depth": 2, "last_seen": 0}, ttl_s=ttl_s)
            return super().compare_and_swap(key, expected=expected, new=new, ttl_s=ttl_s)

    state = InterleavedState()
    state.set("recursion:evt_pair", {"depth": 1, "last_seen": 0}, ttl_s=60)
    guard = RecursionGuard(state, rng=lambda: 0.99)
    result = guard.check("evt_pair", trigger_name="t", document_path="jobs/p")
    assert result.depth == 3
    assert result.halt is True
    assert state.get("recursion:evt_pair")["depth"] == 3


def test_halt_is_logged_at_error_with_trigger_and_path(monotonic, caplog):
    caplog.set_level(logging.DEBUG, logger="concierge.recursion_guard")
    guard = _guard(monotonic)
    for _ in range(3):
        guard.check("evt_log", trigger_name="onListingWrite", document_path="listings/l9", trace_id="tr_1")
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    event = json.loads(errors[0].getMessage())
    assert event["event"] == "recursion_guard_halt"
    assert event["trigger"] == "onListingWrite"
    assert event["document_path"] == "listings/l9"
    assert event["depth"] == 3


def test_assert_safe_raises_when_halted(monotonic):
    guard = _guard(monotonic, max_depth=1)
    guard.assert_safe("evt_x", trigger_name="t", document_path="jobs/x")
    with pytest.raises(ApiError) as exc_info:
        guard.assert_safe("evt_x", trigger_name="t", document_path="jobs/x")
    assert exc_info.value.code == "RECURSION_LIMIT_EXCEEDED"
    assert exc_info.value.retryable is False


def test_guarded_decorator_skips_handler_once_halted(monotonic):
    guard = _guard(monotonic)
    calls: list[str] = []

    @guard.guarded("onJobWrite")
    def handler(event: TriggerEvent) -> str:
        calls.append(event.document_path)
        return "handled"

    event = TriggerEvent(event_id="evt_dec", document_path="jobs/j7", data={"status": "collecting"})
    assert handler(event) == "handled"
    assert handler(event) == "handled"
    assert handler(event) is None
    assert calls == ["jobs/j7", "jobs/j7"]


def test_reset_clears_cache(monotonic):
    guard = _guard(monotonic)
    guard.check("evt_r", trigger_name="t", document_path="jobs/r")
    guard.reset()
    assert guard.cache_size() == 0
