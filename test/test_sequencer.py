#!/usr/bin/env python3
"""Unit tests for the CounterSequencer and PendingBuffer."""

import pytest

from conftest import OTHER_DELEGATE, make_event
from delegation_reconciler.errors import CounterConflict, SequenceGapTimeout
from delegation_reconciler.models import DelegationState
from delegation_reconciler.sequencer import CounterSequencer, Decision, PendingBuffer


def known(_event) -> bool:
    return True


def unknown(_event) -> bool:
    return False


@pytest.fixture
def sequencer(clock):
    """Create a CounterSequencer with a small buffer and a fake clock."""
    return CounterSequencer(max_pending_per_tuple=3, pending_ttl=60.0, clock=clock)


class TestEvaluate:
    """Ordering and chained-expiry rules."""

    def test_first_event_applies_on_empty_state(self, sequencer):
        assert sequencer.evaluate(make_event(1, 0, 1000), DelegationState(), unknown) is Decision.APPLY

    def test_next_counter_with_matching_expiry_applies(self, sequencer):
        state = DelegationState(last_counter=1, expiry=1000)
        assert sequencer.evaluate(make_event(2, 1000, 2000), state, unknown) is Decision.APPLY

    def test_old_expiry_mismatch_conflicts(self, sequencer):
        state = DelegationState(last_counter=1, expiry=1000)
        with pytest.raises(CounterConflict) as exc_info:
            sequencer.evaluate(make_event(2, 0, 2000), state, unknown)

        assert exc_info.value.expected_counter == 2
        assert exc_info.value.expected_old_expiry == 1000
        assert exc_info.value.to_dict()["kind"] == "counter_conflict"

    def test_known_replay_is_duplicate(self, sequencer):
        state = DelegationState(last_counter=2, expiry=2000)
        assert sequencer.evaluate(make_event(1, 0, 1000), state, known) is Decision.DUPLICATE

    def test_unknown_past_counter_conflicts(self, sequencer):
        state = DelegationState(last_counter=2, expiry=2000)
        with pytest.raises(CounterConflict, match="already applied"):
            sequencer.evaluate(make_event(2, 1000, 3000), state, unknown)

    def test_future_counter_is_held(self, sequencer):
        state = DelegationState(last_counter=1, expiry=1000)
        assert sequencer.evaluate(make_event(3, 2000, 3000), state, unknown) is Decision.HOLD

    def test_revocation_follows_same_rules(self, sequencer):
        state = DelegationState(last_counter=1, expiry=1000)
        revoke = make_event(2, 1000, 0)

        assert sequencer.evaluate(revoke, state, unknown) is Decision.APPLY
        revoked = sequencer.advance(state, revoke)
        assert revoked.revoked is True
        assert revoked.is_effective(now=0) is False

    def test_regrant_after_revocation(self, sequencer):
        state = DelegationState(last_counter=2, expiry=0, revoked=True)
        regrant = make_event(3, 0, 5000)

        assert sequencer.evaluate(regrant, state, unknown) is Decision.APPLY
        new_state = sequencer.advance(state, regrant)
        assert new_state.revoked is False
        assert new_state.is_effective(now=4999) is True
        assert new_state.is_effective(now=5000) is False


class TestPendingBuffer:
    """Holding out-of-order events."""

    def test_hold_and_release(self, clock):
        buffer = PendingBuffer(max_per_tuple=4, ttl=60.0, clock=clock)
        event = make_event(3, 2000, 3000)

        assert buffer.hold(event, expected_counter=2) is True
        assert buffer.release(event.key, 2) == []
        assert buffer.release(event.key, 3) == [event]
        assert buffer.size() == 0

    def test_identical_event_held_once(self, clock):
        buffer = PendingBuffer(max_per_tuple=4, ttl=60.0, clock=clock)
        event = make_event(3, 2000, 3000)

        assert buffer.hold(event, 2) is True
        assert buffer.hold(event, 2) is False
        assert buffer.size(event.key) == 1

    def test_full_buffer_raises(self, clock):
        buffer = PendingBuffer(max_per_tuple=2, ttl=60.0, clock=clock)
        buffer.hold(make_event(3, 2000, 3000), 2)
        buffer.hold(make_event(4, 3000, 4000), 2)

        with pytest.raises(SequenceGapTimeout, match="pending buffer full"):
            buffer.hold(make_event(5, 4000, 5000), 2)
        assert buffer.size() == 2

    def test_buffers_are_per_tuple(self, clock):
        buffer = PendingBuffer(max_per_tuple=1, ttl=60.0, clock=clock)
        buffer.hold(make_event(3, 2000, 3000), 2)
        buffer.hold(make_event(3, 2000, 3000, delegate=OTHER_DELEGATE), 2)
        assert buffer.size() == 2

    def test_expired(self, clock):
        buffer = PendingBuffer(max_per_tuple=4, ttl=60.0, clock=clock)
        old = make_event(3, 2000, 3000)
        buffer.hold(old, 2)
        clock.advance(30)
        recent = make_event(4, 3000, 4000)
        buffer.hold(recent, 2)

        clock.advance(30)
        assert buffer.expired() == [old]
        assert buffer.size() == 1

    def test_drain_in_counter_order(self, clock):
        buffer = PendingBuffer(max_per_tuple=4, ttl=60.0, clock=clock)
        fifth = make_event(5, 4000, 5000)
        third = make_event(3, 2000, 3000)
        buffer.hold(fifth, 2)
        buffer.hold(third, 2)

        assert buffer.drain(third.key) == [third, fifth]
        assert buffer.size() == 0

    def test_purge_branch(self, clock):
        buffer = PendingBuffer(max_per_tuple=4, ttl=60.0, clock=clock)
        below = make_event(3, 2000, 3000, block_number=9)
        above = make_event(4, 3000, 4000, block_number=10)
        buffer.hold(below, 2)
        buffer.hold(above, 2)

        assert buffer.purge_branch(above.host_chain_id, 10) == [above]
        assert buffer.purge_branch(above.host_chain_id + 1, 0) == []
        assert buffer.size() == 1


class TestCounterSequencer:
    """State cache and release behaviour."""

    def test_commit_then_release(self, sequencer):
        first = make_event(1, 0, 1000)
        second = make_event(2, 1000, 2000)
        sequencer.hold(second, DelegationState())

        assert sequencer.release(first.key) == []
        state = sequencer.commit(first, DelegationState())

        assert state.last_counter == 1
        assert sequencer.cached_state(first.key) == state
        assert sequencer.release(first.key) == [second]

    def test_forget(self, sequencer):
        event = make_event(1, 0, 1000)
        sequencer.commit(event, DelegationState())
        sequencer.forget(event.key)
        assert sequencer.cached_state(event.key) is None

    def test_state_cache_is_bounded(self, sequencer):
        sequencer.MAX_CACHED_STATES = 1
        first = make_event(1, 0, 1000)
        other = make_event(1, 0, 1000, delegate=OTHER_DELEGATE)

        sequencer.remember(first.key, DelegationState(last_counter=1))
        sequencer.remember(other.key, DelegationState(last_counter=1))

        assert sequencer.cached_state(first.key) is None
        assert sequencer.cached_state(other.key) is not None

    def test_get_stats(self, sequencer):
        sequencer.hold(make_event(3, 2000, 3000), DelegationState())
        stats = sequencer.get_stats()
        assert stats["pending_events"] == 1
        assert stats["cached_states"] == 0
