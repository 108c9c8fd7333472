#!/usr/bin/env python3
"""Unit tests for the LedgerWriter module (in-memory SQLite)."""

from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError, ProgrammingError

from conftest import CHAIN_ID, OTHER_DELEGATE, block_hash, make_event
from delegation_reconciler.errors import StorageFatal, StorageTransient
from delegation_reconciler.ledger import LedgerWriter, async_url
from delegation_reconciler.models import Finality


@pytest_asyncio.fixture
async def ledger():
    """Create a LedgerWriter on an in-memory database."""
    ledger = LedgerWriter.from_url("sqlite://")
    yield ledger
    await ledger.dispose()


class TestAsyncUrl:
    """Driver selection for plain database URLs."""

    def test_dialect_only_urls_get_async_driver(self):
        assert async_url("sqlite:///delegations.db") == "sqlite+aiosqlite:///delegations.db"
        assert async_url("postgresql://u:p@db/ledger") == "postgresql+asyncpg://u:p@db/ledger"

    def test_explicit_driver_is_kept(self):
        assert async_url("sqlite+aiosqlite://") == "sqlite+aiosqlite://"


class TestAppend:
    """Idempotent appends."""

    @pytest.mark.asyncio
    async def test_append_inserts_row(self, ledger):
        event = make_event(1, 0, 1000)

        assert await ledger.append(event, Finality.PROVISIONAL) is True

        rows = await ledger.rows(event.key)
        assert len(rows) == 1
        assert rows[0].to_event() == event
        assert rows[0].finality == "provisional"
        assert rows[0].superseded is False

    @pytest.mark.asyncio
    async def test_same_event_twice_stores_one_row(self, ledger):
        event = make_event(1, 0, 1000)

        assert await ledger.append(event, Finality.PROVISIONAL) is True
        assert await ledger.append(event, Finality.FINAL) is False

        assert len(await ledger.rows(event.key)) == 1
        assert ledger.get_stats()["duplicates_ignored"] == 1

    @pytest.mark.asyncio
    async def test_null_transaction_ids_never_collide(self, ledger):
        event = make_event(1, 0, 1000, transaction_id=None)

        assert await ledger.append(event, Finality.PROVISIONAL) is True
        assert await ledger.append(event, Finality.PROVISIONAL) is True
        assert await ledger.contains(event) is False

    @pytest.mark.asyncio
    async def test_contains(self, ledger):
        event = make_event(1, 0, 1000)
        assert await ledger.contains(event) is False

        await ledger.append(event, Finality.PROVISIONAL)
        assert await ledger.contains(event) is True
        assert await ledger.contains(make_event(1, 0, 1000, branch="b")) is False

    @pytest.mark.asyncio
    async def test_contains_ignores_superseded_rows(self, ledger):
        event = make_event(1, 0, 1000)
        await ledger.append(event, Finality.PROVISIONAL)
        await ledger.supersede(CHAIN_ID, 1, block_hash(1, "b"))

        assert await ledger.contains(event) is False

    @pytest.mark.asyncio
    async def test_orphaned_events_are_rejected(self, ledger):
        with pytest.raises(ValueError):
            await ledger.append(make_event(1, 0, 1000), Finality.ORPHANED)


class TestReinstate:
    """A block that becomes canonical again brings its rows back."""

    @pytest.mark.asyncio
    async def test_append_reinstates_superseded_row(self, ledger):
        event = make_event(1, 0, 1000)
        await ledger.append(event, Finality.PROVISIONAL)
        await ledger.supersede(CHAIN_ID, 1, block_hash(1, "b"))

        assert await ledger.append(event, Finality.PROVISIONAL) is True

        rows = await ledger.rows(event.key)
        assert len(rows) == 1
        assert rows[0].superseded is False
        assert rows[0].superseded_at is None
        assert ledger.get_stats()["rows_reinstated"] == 1
        assert ledger.get_stats()["duplicates_ignored"] == 0
        assert (await ledger.state(event.key)).last_counter == 1

    @pytest.mark.asyncio
    async def test_reinstate_without_superseded_row(self, ledger):
        event = make_event(1, 0, 1000)
        assert await ledger.reinstate(event, Finality.PROVISIONAL) is False

        await ledger.append(event, Finality.PROVISIONAL)
        assert await ledger.reinstate(event, Finality.PROVISIONAL) is False


class TestSupersession:
    """Reorg supersession never deletes rows."""

    @pytest.mark.asyncio
    async def test_supersede_only_mismatching_hash(self, ledger):
        stale = make_event(1, 0, 1000, block_number=10)
        other = make_event(1, 0, 1000, block_number=10, branch="b", delegate=OTHER_DELEGATE)
        await ledger.append(stale, Finality.PROVISIONAL)
        await ledger.append(other, Finality.PROVISIONAL)

        affected = await ledger.supersede(CHAIN_ID, 10, block_hash(10, "b"))

        assert affected == [stale.key]
        stale_rows = await ledger.rows(stale.key)
        assert stale_rows[0].superseded is True
        assert stale_rows[0].superseded_at is not None
        assert (await ledger.rows(other.key))[0].superseded is False

    @pytest.mark.asyncio
    async def test_supersede_matching_hash_is_noop(self, ledger):
        await ledger.append(make_event(1, 0, 1000, block_number=10), Finality.PROVISIONAL)
        assert await ledger.supersede(CHAIN_ID, 10, block_hash(10)) == []

    @pytest.mark.asyncio
    async def test_supersede_above(self, ledger):
        for counter in (1, 2, 3):
            await ledger.append(make_event(counter, (counter - 1) * 1000, counter * 1000), Finality.PROVISIONAL)

        affected = await ledger.supersede_above(CHAIN_ID, 1)

        key = make_event(1, 0, 1000).key
        assert affected == [key]
        assert [r.superseded for r in await ledger.rows(key)] == [False, True, True]
        assert len(await ledger.rows(key, include_superseded=False)) == 1

    @pytest.mark.asyncio
    async def test_other_chains_untouched(self, ledger):
        event = make_event(1, 0, 1000, block_number=10, host_chain_id=1)
        await ledger.append(event, Finality.PROVISIONAL)
        assert await ledger.supersede_above(CHAIN_ID, 0) == []


class TestState:
    """Folding rows into state and finality promotion."""

    @pytest.mark.asyncio
    async def test_state_folds_live_rows(self, ledger):
        first = make_event(1, 0, 1000)
        second = make_event(2, 1000, 2000)
        await ledger.append(first, Finality.FINAL)
        await ledger.append(second, Finality.PROVISIONAL)

        state = await ledger.state(first.key)
        assert state.last_counter == 2
        assert state.expiry == 2000
        assert state.confirmed is False

        projection = await ledger.projection(first.key)
        assert projection.last_counter == 1
        assert projection.expiry == 1000
        assert projection.confirmed is True

    @pytest.mark.asyncio
    async def test_superseded_rows_excluded(self, ledger):
        await ledger.append(make_event(1, 0, 1000), Finality.PROVISIONAL)
        await ledger.append(make_event(2, 1000, 2000), Finality.PROVISIONAL)
        await ledger.supersede(CHAIN_ID, 2, block_hash(2, "b"))

        state = await ledger.state(make_event(1, 0, 1000).key)
        assert state.last_counter == 1

    @pytest.mark.asyncio
    async def test_unknown_tuple_has_empty_state(self, ledger):
        state = await ledger.projection(make_event(1, 0, 1000).key)
        assert state.last_counter == 0
        assert state.is_effective(now=0) is False

    @pytest.mark.asyncio
    async def test_promote(self, ledger):
        for counter in (1, 2, 3):
            await ledger.append(make_event(counter, (counter - 1) * 1000, counter * 1000), Finality.PROVISIONAL)
        assert await ledger.provisional_heights(CHAIN_ID, 2) == [(1, block_hash(1)), (2, block_hash(2))]

        await ledger.supersede(CHAIN_ID, 1, block_hash(1, "b"))
        assert await ledger.provisional_heights(CHAIN_ID, 2) == [(2, block_hash(2))]
        assert await ledger.promote(CHAIN_ID, 2) == 1

        rows = await ledger.rows(make_event(1, 0, 1000).key)
        assert [r.finality for r in rows] == ["provisional", "final", "provisional"]
        assert await ledger.provisional_heights(CHAIN_ID, 2) == []


class TestErrorMapping:
    """Database errors surface as storage errors."""

    @pytest.mark.asyncio
    async def test_operational_error_is_transient(self, ledger):
        ledger._session_factory = MagicMock()
        ledger._session_factory.begin.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))

        with pytest.raises(StorageTransient) as exc_info:
            await ledger.append(make_event(1, 0, 1000), Finality.PROVISIONAL)
        assert exc_info.value.operation == "append"
        assert "tuple" in exc_info.value.details

    @pytest.mark.asyncio
    async def test_other_errors_are_fatal(self, ledger):
        ledger._session_factory = MagicMock()
        ledger._session_factory.begin.side_effect = ProgrammingError("UPDATE", {}, Exception("no such table"))

        with pytest.raises(StorageFatal):
            await ledger.promote(CHAIN_ID, 10)
