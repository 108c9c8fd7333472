"""
Reconciliation coordinator.

This module drives the ingestion pipeline: normalize, classify, sequence and
write each delegation event, handle reorg notifications and head updates,
and escalate anything that cannot be applied automatically.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import Any, Protocol, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .alerts import Alert, AlertSink, LoggingAlertSink, ParkingLot, Severity
from .config import ReconcilerConfig, RetryConfig
from .errors import (
    CounterConflict,
    MalformedEvent,
    ReconciliationError,
    ReorgDetected,
    SequenceGapTimeout,
    StorageError,
    StorageTransient,
)
from .finality import FinalityTracker
from .ledger import LedgerWriter
from .models import DelegationEvent, DelegationKey, DelegationState, Finality, ReorgNotice
from .normalizer import EventNormalizer
from .sequencer import CounterSequencer, Decision

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Outcome(Enum):
    """What happened to one submitted record."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    HELD = "held"
    PARKED = "parked"
    ORPHANED = "orphaned"
    MALFORMED = "malformed"


class BlockHashSource(Protocol):
    """Host chain lookup of the canonical hash at a height."""

    async def get_block_hash(self, host_chain_id: int, block_number: int) -> bytes: ...


class ReconciliationCoordinator:
    """
    Orchestrates the reconciliation pipeline per event and per batch.

    Events for distinct tuples are processed concurrently. Events for the
    same tuple go through a per-tuple lock held only for the evaluate-and-
    write critical section, and the sequencer's pending buffer decides the
    order in which they apply.
    """

    def __init__(
        self,
        ledger: LedgerWriter,
        normalizer: EventNormalizer | None = None,
        sequencer: CounterSequencer | None = None,
        tracker: FinalityTracker | None = None,
        alert_sink: AlertSink | None = None,
        retry: RetryConfig | None = None,
        block_hash_source: BlockHashSource | None = None,
        parking: ParkingLot | None = None,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            ledger: Persistence for accepted events
            normalizer: Raw record decoder
            sequencer: Counter sequencing and pending buffer
            tracker: Chain heads and canonical hashes
            alert_sink: Consumer of structured alerts (logs by default)
            retry: Backoff policy for transient storage failures
            block_hash_source: Optional host chain lookup used before promoting rows
            parking: Store for events needing operator inspection
        """
        self.ledger = ledger
        self.normalizer = normalizer or EventNormalizer()
        self.sequencer = sequencer or CounterSequencer()
        self.tracker = tracker or FinalityTracker()
        self.alert_sink: AlertSink = alert_sink or LoggingAlertSink()
        self.retry = retry or RetryConfig()
        self.block_hash_source = block_hash_source
        self.parking = parking or ParkingLot()

        self._tuple_locks: dict[DelegationKey, asyncio.Lock] = {}
        self._paused: set[DelegationKey] = set()

        self.stats: dict[str, int] = {outcome.value: 0 for outcome in Outcome}
        self.stats["reorgs_handled"] = 0
        self.stats["alerts_emitted"] = 0

    @classmethod
    def from_config(
        cls,
        config: ReconcilerConfig,
        alert_sink: AlertSink | None = None,
        block_hash_source: BlockHashSource | None = None,
    ) -> "ReconciliationCoordinator":
        """Build a coordinator and its components from configuration."""
        ledger = LedgerWriter.from_url(config.database.url, echo=config.database.echo)
        return cls(
            ledger=ledger,
            normalizer=EventNormalizer(default_host_chain_id=config.default_host_chain_id),
            sequencer=CounterSequencer(
                max_pending_per_tuple=config.sequencing.max_pending_per_tuple,
                pending_ttl=config.sequencing.pending_ttl,
            ),
            tracker=FinalityTracker(
                default_depth=config.finality.default_depth,
                depths=config.finality.depths,
                max_tracked_blocks=config.finality.max_tracked_blocks,
            ),
            alert_sink=alert_sink,
            retry=config.retry,
            block_hash_source=block_hash_source,
        )

    # =========================================================
    # EVENT INGESTION
    # =========================================================

    async def submit(self, raw: Any) -> Outcome:
        """
        Reconcile one raw chain-log record.

        Held events past their TTL are escalated before the record is
        processed.

        Args:
            raw: Record shaped like a web3 log (see EventNormalizer)

        Returns:
            The outcome for this record
        """
        self.sweep_pending()
        try:
            event = self.normalizer.normalize(raw)
        except MalformedEvent:
            return self._count(Outcome.MALFORMED)
        return await self.reconcile(event)

    async def submit_batch(self, raws: Iterable[Any]) -> list[Outcome]:
        """
        Reconcile a batch of raw records.

        Tuples are processed concurrently; records of one tuple keep their
        arrival order.

        Returns:
            Outcomes aligned with the input order
        """
        self.sweep_pending()
        raws = list(raws)
        outcomes: list[Outcome | None] = [None] * len(raws)
        groups: dict[DelegationKey, list[tuple[int, DelegationEvent]]] = {}

        for index, raw in enumerate(raws):
            try:
                event = self.normalizer.normalize(raw)
            except MalformedEvent:
                outcomes[index] = self._count(Outcome.MALFORMED)
                continue
            groups.setdefault(event.key, []).append((index, event))

        async def run_group(items: list[tuple[int, DelegationEvent]]) -> None:
            for index, event in items:
                outcomes[index] = await self.reconcile(event)

        await asyncio.gather(*(run_group(items) for items in groups.values()))
        return [outcome for outcome in outcomes if outcome is not None]

    async def reconcile(self, event: DelegationEvent) -> Outcome:
        """Run a normalized event through classification, sequencing and persistence."""
        if await self._classify(event) is Finality.ORPHANED:
            return self._count(Outcome.ORPHANED)
        async with self._lock_for(event.key):
            return await self._reconcile_locked(event)

    async def _reconcile_locked(self, event: DelegationEvent) -> Outcome:
        """Sequence and write a classified event. Caller holds the tuple lock."""
        if event.key in self._paused:
            self.parking.park(event, "tuple_paused")
            return self._count(Outcome.PARKED)
        # A reorg may have replaced the block since it was classified
        finality = self.tracker.status(event)
        if finality is Finality.ORPHANED:
            return self._count(Outcome.ORPHANED)
        outcome = await self._apply(event, finality)
        if outcome is Outcome.APPLIED:
            await self._apply_released(event.key)
        return outcome

    async def _classify(self, event: DelegationEvent) -> Finality:
        chain_id = event.host_chain_id
        try:
            async with self.tracker.lock_for(chain_id):
                return self.tracker.classify(event)
        except ReorgDetected as e:
            logger.warning(f"{e.message}: {event} disagrees with the recorded block hash")
            await self.handle_reorg(ReorgNotice(chain_id, event.block_number, event.block_hash))
            async with self.tracker.lock_for(chain_id):
                return self.tracker.classify(event)

    async def _apply(self, event: DelegationEvent, finality: Finality) -> Outcome:
        """Evaluate and write one event. Caller holds the tuple lock."""
        key = event.key
        try:
            state = await self._state(key)
            known = False
            if event.delegation_counter < state.next_counter:
                known = await self._with_retry(self.ledger.contains, event)
            decision = self.sequencer.evaluate(event, state, lambda _: known)
        except CounterConflict as e:
            self._escalate(e, event)
            return self._count(Outcome.PARKED)
        except StorageError as e:
            self._park_on_storage_error(e, event)
            return self._count(Outcome.PARKED)

        match decision:
            case Decision.DUPLICATE:
                logger.debug(f"Duplicate delivery ignored: {event}")
                return self._count(Outcome.DUPLICATE)
            case Decision.HOLD:
                try:
                    self.sequencer.hold(event, state)
                except SequenceGapTimeout as e:
                    self._escalate(e, event)
                    return self._count(Outcome.PARKED)
                return self._count(Outcome.HELD)

        try:
            written = await self._with_retry(self.ledger.append, event, finality)
        except asyncio.CancelledError:
            # The write may have committed; reload the tuple from the ledger next time
            self.sequencer.forget(key)
            raise
        except StorageError as e:
            self._park_on_storage_error(e, event)
            return self._count(Outcome.PARKED)
        if not written:
            logger.debug(f"Live row already stored for {event}")

        # append returned, so a live row for the event exists; no await until the state is updated
        new_state = self.sequencer.commit(event, state)
        logger.info(
            f"Applied {finality.value} {event} "
            f"(expiry={new_state.expiry}, revoked={new_state.revoked})"
        )
        return self._count(Outcome.APPLIED)

    async def _apply_released(self, key: DelegationKey) -> None:
        """Apply buffered successors that became applicable. Caller holds the tuple lock."""
        while key not in self._paused:
            released = self.sequencer.release(key)
            if not released:
                return
            applied = False
            for event in released:
                finality = self.tracker.status(event)
                if finality is Finality.ORPHANED:
                    logger.warning(f"Dropping held event from a replaced block: {event}")
                    self._count(Outcome.ORPHANED)
                    continue
                if await self._apply(event, finality) is Outcome.APPLIED:
                    applied = True
            if not applied:
                return

    async def _state(self, key: DelegationKey) -> DelegationState:
        state = self.sequencer.cached_state(key)
        if state is None:
            state = await self._with_retry(self.ledger.state, key)
            self.sequencer.remember(key, state)
        return state

    # =========================================================
    # REORGS AND FINALITY
    # =========================================================

    async def handle_reorg(self, notice: ReorgNotice) -> list[DelegationKey]:
        """
        Apply a reorg notification.

        Rows at the height whose hash differs, and every live row above it,
        are marked superseded. Affected tuples have their cached state
        dropped so replays on the new branch apply as a fresh chain.

        Returns:
            Tuples whose rows were superseded

        Raises:
            StorageError: If supersession fails after retries
        """
        chain_id, number, new_hash = notice.host_chain_id, notice.block_number, notice.new_block_hash

        # Classification on this chain waits until the old branch is superseded
        async with self.tracker.lock_for(chain_id):
            invalidated = self.tracker.apply_reorg(chain_id, number, new_hash)
            if invalidated is None:
                logger.debug(f"No-op reorg announcement: {notice}")
                return []

            try:
                affected = await self._with_retry(self.ledger.supersede, chain_id, number, new_hash)
                affected += await self._with_retry(self.ledger.supersede_above, chain_id, number)
            except StorageError as e:
                self._emit(Alert(
                    kind=ReorgDetected.kind,
                    severity=Severity.CRITICAL,
                    message=f"Supersession failed for {notice}: {e.message}",
                    details={"host_chain_id": chain_id, "block_number": number, **e.details},
                ))
                raise

        for event in self.sequencer.pending.purge_branch(chain_id, number):
            logger.warning(f"Dropping held event from a replaced block: {event}")
            self._count(Outcome.ORPHANED)

        affected = list(dict.fromkeys(affected))
        for key in affected:
            async with self._lock_for(key):
                self.sequencer.forget(key)

        self.stats["reorgs_handled"] += 1
        reorg = ReorgDetected(chain_id, number, new_hash, invalidated.get(number))
        self._emit(Alert(
            kind=reorg.kind,
            severity=Severity.WARNING,
            message=f"{reorg.message}, {len(affected)} tuples rewound",
            details={**reorg.details, "invalidated_heights": sorted(invalidated)},
        ))
        return affected

    async def observe_head(self, host_chain_id: int, block_number: int, block_hash: bytes | None = None) -> int:
        """
        Record a new host chain head and promote rows that became final.

        Returns:
            Number of rows promoted to final
        """
        try:
            async with self.tracker.lock_for(host_chain_id):
                self.tracker.observe_head(host_chain_id, block_number, block_hash)
        except ReorgDetected:
            await self.handle_reorg(ReorgNotice(host_chain_id, block_number, block_hash))
            async with self.tracker.lock_for(host_chain_id):
                self.tracker.observe_head(host_chain_id, block_number, block_hash)
        return await self.finalize(host_chain_id)

    async def finalize(self, host_chain_id: int) -> int:
        """
        Promote provisional rows at or below the finalized height.

        With a block hash source configured, each provisional height is
        checked against the host chain first: a stable hash is promoted, a
        dismissed one triggers reorg handling, and an unreachable one holds
        back promotion from that height until the next head.

        Returns:
            Number of rows promoted
        """
        finalized = self.tracker.finalized_height(host_chain_id)
        if finalized < 0:
            return 0

        up_to = finalized
        if self.block_hash_source is not None:
            heights = await self._with_retry(self.ledger.provisional_heights, host_chain_id, finalized)
            checked: dict[int, bytes] = {}
            for number, stored_hash in heights:
                if number not in checked:
                    try:
                        checked[number] = await self.block_hash_source.get_block_hash(host_chain_id, number)
                    except Exception as e:
                        logger.error(
                            f"Cannot get block hash for block {number} on chain {host_chain_id}, "
                            f"will retry on next head: {e}"
                        )
                        up_to = number - 1
                        break
                if checked[number] != stored_hash:
                    logger.warning(f"Block {number} on chain {host_chain_id} was dismissed by the host chain")
                    await self.handle_reorg(ReorgNotice(host_chain_id, number, checked[number]))
                    # Every live row above this height was superseded
                    break

        if up_to < 0:
            return 0
        return await self._with_retry(self.ledger.promote, host_chain_id, up_to)

    # =========================================================
    # ESCALATION AND OPERATOR ACTIONS
    # =========================================================

    def sweep_pending(self) -> int:
        """
        Escalate held events whose predecessor never arrived within the TTL.

        Returns:
            Number of events escalated
        """
        expired = self.sequencer.pending.expired()
        for event in expired:
            state = self.sequencer.cached_state(event.key) or DelegationState()
            self._escalate(SequenceGapTimeout(event, state.next_counter, "hold TTL exceeded"), event)
            self._count(Outcome.PARKED)
        return len(expired)

    async def resume(self, key: DelegationKey) -> list[Outcome]:
        """
        Resume automatic processing of a paused tuple and replay its parked events.

        The tuple lock is held from unpausing until the last replay, so
        events arriving meanwhile wait and apply after the parked ones.

        Returns:
            Outcomes of the replayed events, ordered by counter
        """
        async with self._lock_for(key):
            self._paused.discard(key)
            self.sequencer.forget(key)
            parked = self.parking.take(key)
            logger.info(f"Resuming {key}, replaying {len(parked)} parked events")
            return [await self._reconcile_locked(p.event) for p in parked]

    def is_paused(self, key: DelegationKey) -> bool:
        return key in self._paused

    def _escalate(self, error: ReconciliationError, event: DelegationEvent) -> None:
        """Alert on an error, park the event and pause the tuple."""
        self._emit(Alert.from_error(error))
        self.parking.park(event, error.kind, error.details)
        self._pause(event.key)

    def _park_on_storage_error(self, error: StorageError, event: DelegationEvent) -> None:
        self._emit(Alert.from_error(error))
        self.parking.park(event, error.kind, error.details)

    def _pause(self, key: DelegationKey) -> None:
        if key in self._paused:
            return
        self._paused.add(key)
        for event in self.sequencer.pending.drain(key):
            self.parking.park(event, "tuple_paused")
        logger.error(f"Automatic processing paused for {key}")

    def _emit(self, alert: Alert) -> None:
        self.stats["alerts_emitted"] += 1
        self.alert_sink.emit(alert)

    # =========================================================
    # HELPERS
    # =========================================================

    def _lock_for(self, key: DelegationKey) -> asyncio.Lock:
        if key not in self._tuple_locks:
            self._tuple_locks[key] = asyncio.Lock()
        return self._tuple_locks[key]

    async def _with_retry(self, operation: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Await a storage operation, retrying transient failures with backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry.attempts),
            wait=wait_random_exponential(multiplier=self.retry.initial_backoff, max=self.retry.max_backoff),
            retry=retry_if_exception_type(StorageTransient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await operation(*args)
        raise RuntimeError("Retrying loop exited unexpectedly")

    def _count(self, outcome: Outcome) -> Outcome:
        self.stats[outcome.value] += 1
        return outcome

    def get_stats(self) -> dict[str, int]:
        """
        Get current reconciliation statistics.

        Returns:
            Dictionary with outcome counters and component metrics
        """
        return {
            **self.stats,
            **self.normalizer.get_metrics(),
            **self.sequencer.get_stats(),
            **self.tracker.get_stats(),
            **self.ledger.get_stats(),
            "parked_events": len(self.parking),
            "paused_tuples": len(self._paused),
        }

    def log_stats(self) -> None:
        """Log current reconciliation statistics."""
        stats = self.get_stats()
        logger.info(
            f"Reconciler Stats: "
            f"Applied={stats['applied']}, "
            f"Duplicates={stats['duplicate']}, "
            f"Held={stats['pending_events']}, "
            f"Parked={stats['parked_events']}, "
            f"Orphaned={stats['orphaned']}, "
            f"Malformed={stats['malformed']}, "
            f"Reorgs={stats['reorgs_handled']}"
        )
