#!/usr/bin/env python3
"""Tests for the JSON-lines replay entry point."""

import io
import json

import pytest
import pytest_asyncio

from conftest import CHAIN_ID, block_hash, make_event, make_raw
from delegation_reconciler.coordinator import ReconciliationCoordinator
from delegation_reconciler.finality import FinalityTracker
from delegation_reconciler.ledger import LedgerWriter
from main import replay


def _lines(*records) -> io.StringIO:
    return io.StringIO("\n".join(json.dumps(r) for r in records) + "\n")


@pytest_asyncio.fixture
async def coordinator():
    coordinator = ReconciliationCoordinator(
        ledger=LedgerWriter.from_url("sqlite://"),
        tracker=FinalityTracker(default_depth=2),
    )
    yield coordinator
    await coordinator.ledger.dispose()


class TestReplay:
    """Replay of event, reorg and head lines."""

    @pytest.mark.asyncio
    async def test_replay_stream(self, coordinator):
        stream = _lines(
            {"type": "event", **make_raw(2, 1000, 2000)},
            {"type": "event", **make_raw(1, 0, 1000)},
            {"type": "head", "hostChainId": CHAIN_ID, "blockNumber": 4},
            {"type": "event", **make_raw(3, 2000, 3000)},
            {"type": "reorg", "hostChainId": CHAIN_ID, "blockNumber": 3, "blockHash": "0x" + block_hash(3, "b").hex()},
        )

        await replay(coordinator, stream)

        key = make_event(1, 0, 1000).key
        live = await coordinator.ledger.rows(key, include_superseded=False)
        assert [r.delegation_counter for r in live] == [1, 2]
        assert [r.is_final for r in live] == [True, True]
        stats = coordinator.get_stats()
        assert stats["applied"] == 3
        assert stats["reorgs_handled"] == 1

    @pytest.mark.asyncio
    async def test_bad_lines_are_skipped(self, coordinator):
        stream = io.StringIO("not json\n\n" + json.dumps({"type": "unknown"}) + "\n")

        await replay(coordinator, stream)

        assert coordinator.get_stats()["applied"] == 0
