#!/usr/bin/env python3
"""Finality tracking for host chains.

This module keeps, per host chain, the highest block seen and a bounded
window of block hashes considered canonical. It classifies each event's
block as final, provisional or orphaned and detects reorganizations when a
block hash disagrees with the recorded one.
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass

from .errors import ReorgDetected
from .models import ChainHead, DelegationEvent, Finality

# Get logger for this module
logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _RecordedHash:
    block_hash: bytes
    # True when the hash came from a head observation or reorg notice
    authoritative: bool


class FinalityTracker:
    """Tracks chain heads and canonical block hashes per host chain.

    The tracker is the single writer of ChainHead values. Callers that mutate
    it concurrently must hold lock_for(host_chain_id). The advertised head
    block number never decreases.
    """

    MAX_TRACKED_BLOCKS: int = 10_000

    def __init__(
        self,
        default_depth: int = 12,
        depths: Mapping[int, int] | None = None,
        max_tracked_blocks: int | None = None,
    ) -> None:
        """
        Initialize the FinalityTracker.

        Args:
            default_depth: Confirmations required before a block is final
            depths: Per-chain overrides of the finality depth
            max_tracked_blocks: Canonical hashes kept per chain (lowest heights evicted)
        """
        self.default_depth = default_depth
        self.depths: dict[int, int] = dict(depths or {})
        self.max_tracked_blocks = max_tracked_blocks or self.MAX_TRACKED_BLOCKS

        self._heads: dict[int, ChainHead] = {}
        self._canonical: dict[int, dict[int, _RecordedHash]] = {}
        # Hashes replaced by a reorg, mapped to the reorg that replaced them,
        # so late deliveries from the old branch stay orphaned
        self._dismissed: dict[int, OrderedDict[tuple[int, bytes], int]] = {}
        self._reorg_seq = 0
        self._locks: dict[int, asyncio.Lock] = {}

        self.reorgs_detected = 0
        self.events_orphaned = 0

    def depth_for(self, host_chain_id: int) -> int:
        return self.depths.get(host_chain_id, self.default_depth)

    def lock_for(self, host_chain_id: int) -> asyncio.Lock:
        """Lock serializing updates to one chain's head and hashes."""
        if host_chain_id not in self._locks:
            self._locks[host_chain_id] = asyncio.Lock()
        return self._locks[host_chain_id]

    def head(self, host_chain_id: int) -> ChainHead:
        """Return the chain's head, creating an empty one on first use."""
        if host_chain_id not in self._heads:
            self._heads[host_chain_id] = ChainHead(
                host_chain_id=host_chain_id,
                finality_depth=self.depth_for(host_chain_id),
            )
        return self._heads[host_chain_id]

    def finalized_height(self, host_chain_id: int) -> int:
        return self.head(host_chain_id).finalized_height

    def canonical_hash(self, host_chain_id: int, block_number: int) -> bytes | None:
        recorded = self._canonical.get(host_chain_id, {}).get(block_number)
        return recorded.block_hash if recorded else None

    def observe_head(self, host_chain_id: int, block_number: int, block_hash: bytes | None = None) -> bool:
        """
        Record a new head observation from the host chain.

        Args:
            host_chain_id: Chain the head belongs to
            block_number: Head block number
            block_hash: Head block hash, if known

        Returns:
            True if the advertised head moved forward

        Raises:
            ReorgDetected: If the hash differs from the one recorded at that height
        """
        if block_hash is not None:
            recorded = self._recorded(host_chain_id, block_number)
            if recorded is not None and recorded.block_hash != block_hash:
                self.reorgs_detected += 1
                raise ReorgDetected(host_chain_id, block_number, block_hash, recorded.block_hash)
            self._record(host_chain_id, block_number, block_hash, authoritative=True)
        return self._advance(host_chain_id, block_number, block_hash)

    def classify(self, event: DelegationEvent) -> Finality:
        """
        Classify the block containing an event.

        Returns:
            PROVISIONAL while the block has fewer confirmations than the
            finality depth, FINAL afterwards, ORPHANED if the block hash was
            replaced by an authoritative canonical hash

        Raises:
            ReorgDetected: If the block hash differs from a hash previously
                recorded from another event at the same height
        """
        chain_id = event.host_chain_id
        recorded = self._recorded(chain_id, event.block_number)

        if (event.block_number, event.block_hash) in self._dismissed.get(chain_id, {}):
            self.events_orphaned += 1
            logger.warning(f"Event from a block replaced by a reorg: {event}")
            return Finality.ORPHANED

        if recorded is not None and recorded.block_hash != event.block_hash:
            if recorded.authoritative:
                self.events_orphaned += 1
                logger.warning(
                    f"Event at block {event.block_number} on chain {chain_id} "
                    f"belongs to an orphaned block: {event}"
                )
                return Finality.ORPHANED
            self.reorgs_detected += 1
            raise ReorgDetected(chain_id, event.block_number, event.block_hash, recorded.block_hash)

        if recorded is None:
            self._record(chain_id, event.block_number, event.block_hash, authoritative=False)
        self._advance(chain_id, event.block_number, event.block_hash)

        head = self.head(chain_id)
        if head.block_number - event.block_number < head.finality_depth:
            return Finality.PROVISIONAL
        return Finality.FINAL

    def status(self, event: DelegationEvent) -> Finality:
        """Classify an already-tracked event without recording anything.

        Used for events leaving the pending buffer: any disagreement with
        the recorded hash means their block was replaced while they waited.
        """
        chain_id = event.host_chain_id
        recorded = self._recorded(chain_id, event.block_number)
        dismissed = (event.block_number, event.block_hash) in self._dismissed.get(chain_id, {})
        if dismissed or (recorded is not None and recorded.block_hash != event.block_hash):
            return Finality.ORPHANED
        head = self.head(chain_id)
        if head.block_number - event.block_number < head.finality_depth:
            return Finality.PROVISIONAL
        return Finality.FINAL

    def apply_reorg(self, host_chain_id: int, block_number: int, new_hash: bytes) -> dict[int, bytes] | None:
        """
        Replace the canonical hash at a height.

        Invalidates every tracked hash at and above the height, then records
        the new hash there as authoritative. The head number is kept. When
        the new hash was itself dismissed by an earlier reorg, that branch is
        canonical again, so its descendants dismissed by the same reorg are
        accepted again.

        Returns:
            Invalidated heights mapped to their previous hashes, or None when
            the recorded hash already matches (no-op announcement)
        """
        recorded = self._recorded(host_chain_id, block_number)
        if recorded is not None and recorded.block_hash == new_hash:
            recorded.authoritative = True
            return None

        self._reorg_seq += 1
        dismissed = self._dismissed.setdefault(host_chain_id, OrderedDict())
        restored_by = dismissed.pop((block_number, new_hash), None)
        if restored_by is not None:
            for height, block_hash in [
                entry for entry, reorg in dismissed.items()
                if reorg == restored_by and entry[0] > block_number
            ]:
                del dismissed[(height, block_hash)]

        hashes = self._canonical.setdefault(host_chain_id, {})
        invalidated = {
            height: entry.block_hash
            for height, entry in hashes.items()
            if height >= block_number
        }
        for height, old_hash in invalidated.items():
            del hashes[height]
            self.dismiss(host_chain_id, height, old_hash, self._reorg_seq)
        self._record(host_chain_id, block_number, new_hash, authoritative=True)

        head = self.head(host_chain_id)
        if head.block_number == block_number:
            head.block_hash = new_hash
        elif head.block_number > block_number:
            # Descendants of the replaced block are unknown until observed again
            head.block_hash = None

        logger.info(
            f"Canonical hash at block {block_number} on chain {host_chain_id} replaced, "
            f"{len(invalidated)} tracked heights invalidated"
        )
        return invalidated

    def dismiss(self, host_chain_id: int, block_number: int, block_hash: bytes, reorg: int = 0) -> None:
        """Remember that a block hash at a height is no longer canonical."""
        dismissed = self._dismissed.setdefault(host_chain_id, OrderedDict())
        if (block_number, block_hash) in dismissed:
            return
        if len(dismissed) >= self.max_tracked_blocks:
            dismissed.popitem(last=False)
        dismissed[(block_number, block_hash)] = reorg

    def _recorded(self, host_chain_id: int, block_number: int) -> _RecordedHash | None:
        return self._canonical.get(host_chain_id, {}).get(block_number)

    def _record(self, host_chain_id: int, block_number: int, block_hash: bytes, authoritative: bool) -> None:
        hashes = self._canonical.setdefault(host_chain_id, {})
        existing = hashes.get(block_number)
        if existing is not None:
            existing.block_hash = block_hash
            existing.authoritative = existing.authoritative or authoritative
            return
        if len(hashes) >= self.max_tracked_blocks:
            # The window keeps the highest heights
            lowest = min(hashes)
            if block_number < lowest:
                return
            del hashes[lowest]
        hashes[block_number] = _RecordedHash(block_hash, authoritative)

    def _advance(self, host_chain_id: int, block_number: int, block_hash: bytes | None) -> bool:
        head = self.head(host_chain_id)
        if block_number > head.block_number:
            head.block_number = block_number
            head.block_hash = block_hash
            return True
        if block_number == head.block_number and block_hash is not None:
            head.block_hash = block_hash
        return False

    def get_stats(self) -> dict[str, int]:
        return {
            "tracked_chains": len(self._heads),
            "tracked_blocks": sum(len(h) for h in self._canonical.values()),
            "reorgs_detected": self.reorgs_detected,
            "events_orphaned": self.events_orphaned,
        }
