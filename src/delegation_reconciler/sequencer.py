"""
Counter sequencing for delegation tuples.

Decides whether an event applies now, is a replay of something already
applied, or must wait for a missing predecessor. Events that wait are held
in a bounded pending buffer keyed by tuple and counter.
"""

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .errors import CounterConflict, SequenceGapTimeout
from .models import DelegationEvent, DelegationKey, DelegationState

logger = logging.getLogger(__name__)


class Decision(Enum):
    """Outcome of evaluating an event against its tuple's state."""
    APPLY = "apply"
    DUPLICATE = "duplicate"
    HOLD = "hold"


@dataclass(slots=True)
class _HeldEvent:
    event: DelegationEvent
    held_at: float


class PendingBuffer:
    """
    Events waiting for an earlier counter, grouped by tuple.

    Bounded per tuple by size and globally by a time-to-live. Within a tuple,
    entries are keyed by counter so the next expected counter is an O(1)
    lookup.
    """

    def __init__(self, max_per_tuple: int, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        """
        Initialize the pending buffer.

        Args:
            max_per_tuple: Maximum number of events held for one tuple
            ttl: Seconds an event may wait before it is escalated
            clock: Monotonic time source
        """
        self.max_per_tuple = max_per_tuple
        self.ttl = ttl
        self.clock = clock
        self._held: dict[DelegationKey, dict[int, list[_HeldEvent]]] = {}

    def hold(self, event: DelegationEvent, expected_counter: int) -> bool:
        """
        Hold an event until its predecessor arrives.

        Returns:
            False if an identical event was already held, True otherwise

        Raises:
            SequenceGapTimeout: If the tuple's buffer is already full
        """
        by_counter = self._held.setdefault(event.key, {})
        held = by_counter.setdefault(event.delegation_counter, [])
        if any(h.event.unique_key == event.unique_key for h in held):
            return False

        if self.size(event.key) >= self.max_per_tuple:
            if not held:
                del by_counter[event.delegation_counter]
            raise SequenceGapTimeout(
                event, expected_counter, f"pending buffer full ({self.max_per_tuple} events)"
            )

        held.append(_HeldEvent(event, self.clock()))
        return True

    def release(self, key: DelegationKey, counter: int) -> list[DelegationEvent]:
        """Remove and return the events held for a tuple at the given counter."""
        by_counter = self._held.get(key)
        if not by_counter or counter not in by_counter:
            return []
        held = by_counter.pop(counter)
        if not by_counter:
            del self._held[key]
        return [h.event for h in held]

    def expired(self) -> list[DelegationEvent]:
        """Remove and return every event whose hold exceeded the TTL."""
        now = self.clock()
        expired: list[DelegationEvent] = []
        for key in list(self._held):
            by_counter = self._held[key]
            for counter in list(by_counter):
                keep = []
                for held in by_counter[counter]:
                    if now - held.held_at >= self.ttl:
                        expired.append(held.event)
                    else:
                        keep.append(held)
                if keep:
                    by_counter[counter] = keep
                else:
                    del by_counter[counter]
            if not by_counter:
                del self._held[key]
        return expired

    def drain(self, key: DelegationKey) -> list[DelegationEvent]:
        """Remove and return every event held for a tuple, in counter order."""
        by_counter = self._held.pop(key, {})
        return [h.event for counter in sorted(by_counter) for h in by_counter[counter]]

    def purge_branch(self, host_chain_id: int, from_block: int) -> list[DelegationEvent]:
        """Remove and return held events at or above a height that was replaced by a reorg."""
        purged: list[DelegationEvent] = []
        for key in list(self._held):
            by_counter = self._held[key]
            for counter in list(by_counter):
                keep = []
                for held in by_counter[counter]:
                    event = held.event
                    if event.host_chain_id == host_chain_id and event.block_number >= from_block:
                        purged.append(event)
                    else:
                        keep.append(held)
                if keep:
                    by_counter[counter] = keep
                else:
                    del by_counter[counter]
            if not by_counter:
                del self._held[key]
        return purged

    def size(self, key: DelegationKey | None = None) -> int:
        """Number of held events for one tuple, or for all tuples."""
        if key is not None:
            return sum(len(held) for held in self._held.get(key, {}).values())
        return sum(self.size(k) for k in self._held)


class CounterSequencer:
    """
    Enforces per-tuple monotonic ordering of delegation counters.

    The sequencer also caches each tuple's state. A cached state only moves
    when the coordinator commits an event that was durably written, so the
    cache never runs ahead of the ledger.
    """

    MAX_CACHED_STATES: int = 100_000

    def __init__(
        self,
        max_pending_per_tuple: int = 64,
        pending_ttl: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pending = PendingBuffer(max_pending_per_tuple, pending_ttl, clock)
        # LRU of tuple states; evicted entries are reloaded from the ledger
        self._states: OrderedDict[DelegationKey, DelegationState] = OrderedDict()

    def evaluate(
        self,
        event: DelegationEvent,
        current_state: DelegationState,
        is_known: Callable[[DelegationEvent], bool],
    ) -> Decision:
        """
        Decide what to do with an event given its tuple's current state.

        Args:
            event: The normalized event
            current_state: State folded from the tuple's non-superseded rows
            is_known: Returns True if the event's full uniqueness key is stored

        Returns:
            APPLY, DUPLICATE or HOLD

        Raises:
            CounterConflict: If the event diverges from the applied history
        """
        counter = event.delegation_counter
        expected = current_state.next_counter

        if counter == expected:
            if event.old_expiry_date != current_state.expiry:
                raise CounterConflict(
                    event,
                    expected,
                    current_state.expiry,
                    f"old expiry {event.old_expiry_date} does not match "
                    f"current expiry {current_state.expiry}",
                )
            return Decision.APPLY

        if counter < expected:
            if is_known(event):
                return Decision.DUPLICATE
            raise CounterConflict(
                event,
                expected,
                current_state.expiry,
                f"counter {counter} already applied (last {current_state.last_counter}) "
                f"with a different history",
            )

        return Decision.HOLD

    def hold(self, event: DelegationEvent, current_state: DelegationState) -> bool:
        """Hold an event in the pending buffer; see PendingBuffer.hold."""
        held = self.pending.hold(event, current_state.next_counter)
        if held:
            logger.info(
                f"Holding counter {event.delegation_counter} for {event.key}, "
                f"waiting for {current_state.next_counter}"
            )
        return held

    def release(self, key: DelegationKey) -> list[DelegationEvent]:
        """Pop buffered events that became applicable for a tuple's cached state."""
        state = self._states.get(key)
        if state is None:
            return []
        return self.pending.release(key, state.next_counter)

    # =========================================================
    # STATE CACHE
    # =========================================================

    def cached_state(self, key: DelegationKey) -> DelegationState | None:
        """Return the cached state for a tuple, or None if it must be loaded."""
        state = self._states.get(key)
        if state is not None:
            self._states.move_to_end(key)
        return state

    @staticmethod
    def advance(current_state: DelegationState, event: DelegationEvent) -> DelegationState:
        """Return the state after applying an accepted event."""
        return current_state.apply(event)

    def commit(self, event: DelegationEvent, current_state: DelegationState) -> DelegationState:
        """Advance a tuple's cached state after its event was persisted."""
        state = self.advance(current_state, event)
        self.remember(event.key, state)
        return state

    def forget(self, key: DelegationKey) -> None:
        """Drop a tuple's cached state so the next access reloads it."""
        self._states.pop(key, None)

    def remember(self, key: DelegationKey, state: DelegationState) -> None:
        """Cache a tuple's state loaded from the ledger."""
        if key in self._states:
            self._states.move_to_end(key)
        elif len(self._states) >= self.MAX_CACHED_STATES:
            self._states.popitem(last=False)
        self._states[key] = state

    def get_stats(self) -> dict[str, int]:
        return {
            "cached_states": len(self._states),
            "pending_events": self.pending.size(),
        }
