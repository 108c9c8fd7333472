"""
Delegation ledger persistence.

Append-only storage of accepted delegation events on top of SQLAlchemy's
asyncio extension. Rows are never deleted: a reorg marks rows as
superseded, and finality is recorded by promoting provisional rows once
their block is deep enough.

The UNIQUE constraint over the nine-column uniqueness key is the
idempotency contract: inserting the same event twice stores one row.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
    and_,
    select,
    update,
)
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from .errors import StorageFatal, StorageTransient
from .models import DelegationEvent, DelegationKey, DelegationState, Finality

logger = logging.getLogger(__name__)

# Async drivers used when a URL names only the dialect
ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
}

# SQLite only auto-increments INTEGER primary keys
_ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Declarative base for ledger tables."""


class DelegationRecord(Base):
    """One accepted delegation event.

    Immutable once written, except for the finality and supersession
    markers set by reorg handling and finality promotion.
    """

    __tablename__ = "delegate_user_decrypt"
    __table_args__ = (
        UniqueConstraint(
            "delegator",
            "delegate",
            "contract_address",
            "delegation_counter",
            "old_expiry_date",
            "expiry_date",
            "block_number",
            "block_hash",
            "transaction_id",
            name="uq_delegate_user_decrypt_event",
        ),
        Index("ix_delegate_user_decrypt_tuple", "delegator", "delegate", "contract_address"),
        Index("ix_delegate_user_decrypt_block", "host_chain_id", "block_number"),
    )

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    delegator: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    delegate: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    contract_address: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    delegation_counter: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # 0 = first time delegation
    old_expiry_date: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # 0 = revoke
    expiry_date: Mapped[int] = mapped_column(BigInteger, nullable=False)
    host_chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_hash: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    transaction_id: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)

    finality: Mapped[str] = mapped_column(String(16), nullable=False, default=Finality.PROVISIONAL.value)
    superseded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    @property
    def key(self) -> DelegationKey:
        return DelegationKey(self.delegator, self.delegate, self.contract_address)

    @property
    def is_final(self) -> bool:
        return self.finality == Finality.FINAL.value

    def to_event(self) -> DelegationEvent:
        return DelegationEvent(
            delegator=self.delegator,
            delegate=self.delegate,
            contract_address=self.contract_address,
            host_chain_id=self.host_chain_id,
            delegation_counter=self.delegation_counter,
            old_expiry_date=self.old_expiry_date,
            expiry_date=self.expiry_date,
            block_number=self.block_number,
            block_hash=self.block_hash,
            transaction_id=self.transaction_id,
        )

    def __repr__(self) -> str:
        return (
            f"<DelegationRecord id={self.id} counter={self.delegation_counter} "
            f"block={self.block_number} finality={self.finality} superseded={self.superseded}>"
        )




class LedgerWriter:
    """
    Persists accepted events exactly once and applies supersession on reorg.

    Every write runs in its own transaction: a failure between the
    acceptance decision and the commit leaves no partial state visible.
    The schema is created on first use.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        """
        Initialize the ledger writer.

        Args:
            engine: Async SQLAlchemy engine; tables are created if missing
        """
        self.engine = engine
        self._session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

        self.rows_appended = 0
        self.rows_reinstated = 0
        self.duplicates_ignored = 0
        self.rows_superseded = 0
        self.rows_promoted = 0

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "LedgerWriter":
        """Create a ledger on a database URL.

        Plain ``sqlite://`` and ``postgresql://`` URLs get their async
        driver. In-memory SQLite URLs share a single connection so every
        session sees the same database.
        """
        url = async_url(url)
        if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith("aiosqlite:")):
            engine = create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_async_engine(url, echo=echo, pool_pre_ping=True)
        return cls(engine)

    async def create_schema(self) -> None:
        """Create the ledger tables if they do not exist yet."""
        async with self._schema_lock:
            if self._schema_ready:
                return
            try:
                async with self.engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
            except SQLAlchemyError as e:
                self._handle_db_error(e, "create_schema", None)
            self._schema_ready = True
            logger.info("Ledger schema ready")

    async def dispose(self) -> None:
        """Close every pooled connection."""
        await self.engine.dispose()

    # =========================================================
    # WRITES
    # =========================================================

    async def append(self, event: DelegationEvent, finality: Finality) -> bool:
        """
        Insert an accepted event under the uniqueness key.

        A collision with a superseded row of the same event (its block
        became canonical again after a reorg) reinstates that row.

        Args:
            event: The accepted event
            finality: PROVISIONAL or FINAL

        Returns:
            True if a row was inserted or reinstated, False if an identical
            live row was already stored

        Raises:
            StorageTransient: On retryable database failures
            StorageFatal: On any other database failure, including a
                collision without a matching row
        """
        if finality is Finality.ORPHANED:
            raise ValueError("Orphaned events are never persisted")

        record = DelegationRecord(
            delegator=event.delegator,
            delegate=event.delegate,
            contract_address=event.contract_address,
            delegation_counter=event.delegation_counter,
            old_expiry_date=event.old_expiry_date,
            expiry_date=event.expiry_date,
            host_chain_id=event.host_chain_id,
            block_number=event.block_number,
            block_hash=event.block_hash,
            transaction_id=event.transaction_id,
            finality=finality.value,
        )
        try:
            async with self._transaction("append", event.key) as session:
                session.add(record)
        except IntegrityError as e:
            if await self.reinstate(event, finality):
                return True
            if await self.contains(event):
                self.duplicates_ignored += 1
                logger.debug(f"Duplicate event ignored: {event}")
                return False
            logger.error(f"Uniqueness collision without a stored row for {event}", exc_info=True)
            raise StorageFatal("append", str(e), event.key) from e

        self.rows_appended += 1
        logger.debug(f"Appended {finality.value} row for {event}")
        return True

    async def reinstate(self, event: DelegationEvent, finality: Finality) -> bool:
        """
        Clear the supersession marker of a stored row for this event.

        Returns:
            True if a superseded row was made live again
        """
        if event.transaction_id is None:
            return False
        async with self._transaction("reinstate", event.key) as session:
            result = await session.execute(
                update(DelegationRecord)
                .where(_same_event(event), DelegationRecord.superseded.is_(True))
                .values(superseded=False, superseded_at=None, finality=finality.value)
            )
            reinstated = result.rowcount or 0
        if reinstated:
            self.rows_reinstated += reinstated
            logger.info(f"Reinstated superseded row for {event}")
        return reinstated > 0

    async def supersede(self, host_chain_id: int, block_number: int, block_hash: bytes) -> list[DelegationKey]:
        """
        Mark rows at a height whose hash differs from the canonical one as superseded.

        Rows whose stored hash matches are left untouched, so a no-op reorg
        announcement costs one indexed query.

        Returns:
            Distinct tuples whose rows were superseded
        """
        condition = and_(
            DelegationRecord.host_chain_id == host_chain_id,
            DelegationRecord.block_number == block_number,
            DelegationRecord.block_hash != block_hash,
            DelegationRecord.superseded.is_(False),
        )
        return await self._supersede_where(condition, "supersede")

    async def supersede_above(self, host_chain_id: int, block_number: int) -> list[DelegationKey]:
        """Mark every live row above a replaced block as superseded."""
        condition = and_(
            DelegationRecord.host_chain_id == host_chain_id,
            DelegationRecord.block_number > block_number,
            DelegationRecord.superseded.is_(False),
        )
        return await self._supersede_where(condition, "supersede_above")

    async def promote(self, host_chain_id: int, up_to_block: int) -> int:
        """
        Mark live provisional rows at or below a finalized height as final.

        Returns:
            Number of promoted rows
        """
        async with self._transaction("promote") as session:
            result = await session.execute(
                update(DelegationRecord)
                .where(
                    DelegationRecord.host_chain_id == host_chain_id,
                    DelegationRecord.block_number <= up_to_block,
                    DelegationRecord.finality == Finality.PROVISIONAL.value,
                    DelegationRecord.superseded.is_(False),
                )
                .values(finality=Finality.FINAL.value)
            )
            promoted = result.rowcount or 0
        self.rows_promoted += promoted
        if promoted:
            logger.info(f"Promoted {promoted} rows to final on chain {host_chain_id} up to block {up_to_block}")
        return promoted

    async def _supersede_where(self, condition, operation: str) -> list[DelegationKey]:
        async with self._transaction(operation) as session:
            records = (await session.scalars(select(DelegationRecord).where(condition))).all()
            now = datetime.now(timezone.utc)
            keys: dict[DelegationKey, None] = {}
            for record in records:
                record.superseded = True
                record.superseded_at = now
                keys[record.key] = None
                if record.is_final:
                    logger.error(f"Superseding a final row, reorg deeper than finality depth: {record!r}")
        self.rows_superseded += len(records)
        if records:
            logger.info(f"{operation}: {len(records)} rows superseded across {len(keys)} tuples")
        return list(keys)

    # =========================================================
    # READS
    # =========================================================

    async def contains(self, event: DelegationEvent) -> bool:
        """
        Check whether a live row with the event's full uniqueness key is stored.

        A NULL transaction id never matches, like NULLs in the UNIQUE
        constraint.
        """
        if event.transaction_id is None:
            return False
        async with self._session("contains", event.key) as session:
            found = await session.scalar(
                select(DelegationRecord.id)
                .where(_same_event(event), DelegationRecord.superseded.is_(False))
                .limit(1)
            )
        return found is not None

    async def rows(self, key: DelegationKey, include_superseded: bool = True) -> list[DelegationRecord]:
        """Audit listing of a tuple's rows, ordered by counter then insertion."""
        query = select(DelegationRecord).where(
            DelegationRecord.delegator == key.delegator,
            DelegationRecord.delegate == key.delegate,
            DelegationRecord.contract_address == key.contract_address,
        )
        if not include_superseded:
            query = query.where(DelegationRecord.superseded.is_(False))
        query = query.order_by(DelegationRecord.delegation_counter, DelegationRecord.id)
        async with self._session("rows", key) as session:
            return list((await session.scalars(query)).all())

    async def state(self, key: DelegationKey, include_provisional: bool = True) -> DelegationState:
        """
        Fold a tuple's live rows, ordered by counter, into its current state.

        Args:
            key: The tuple
            include_provisional: Whether unconfirmed rows participate

        Returns:
            The folded state; confirmed is False if any provisional row was used
        """
        state = DelegationState()
        confirmed = True
        for record in await self.rows(key, include_superseded=False):
            if not record.is_final:
                if not include_provisional:
                    continue
                confirmed = False
            state = state.apply(record.to_event())
        return DelegationState(
            last_counter=state.last_counter,
            expiry=state.expiry,
            revoked=state.revoked,
            confirmed=confirmed,
        )

    async def projection(self, key: DelegationKey) -> DelegationState:
        """Authoritative state of a tuple, folded from final rows only."""
        return await self.state(key, include_provisional=False)

    async def provisional_heights(self, host_chain_id: int, up_to_block: int) -> list[tuple[int, bytes]]:
        """Distinct (height, hash) pairs of live provisional rows at or below a height."""
        async with self._session("provisional_heights") as session:
            result = await session.execute(
                select(DelegationRecord.block_number, DelegationRecord.block_hash)
                .where(
                    DelegationRecord.host_chain_id == host_chain_id,
                    DelegationRecord.block_number <= up_to_block,
                    DelegationRecord.finality == Finality.PROVISIONAL.value,
                    DelegationRecord.superseded.is_(False),
                )
                .distinct()
                .order_by(DelegationRecord.block_number)
            )
            return [(number, block_hash) for number, block_hash in result.all()]

    # =========================================================
    # SESSION HELPERS
    # =========================================================

    @asynccontextmanager
    async def _transaction(self, operation: str, key: Optional[DelegationKey] = None) -> AsyncIterator[AsyncSession]:
        """Run a block in a transaction, committed on success, rolled back on error.

        IntegrityError propagates untouched so append can treat it as a
        duplicate.
        """
        await self.create_schema()
        try:
            async with self._session_factory.begin() as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, key)

    @asynccontextmanager
    async def _session(self, operation: str, key: Optional[DelegationKey] = None) -> AsyncIterator[AsyncSession]:
        await self.create_schema()
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, key)

    def _handle_db_error(self, error: SQLAlchemyError, operation: str, key: Optional[DelegationKey]) -> None:
        """
        Wrap a database error in a storage exception.

        Raises:
            StorageTransient: For connection loss, pool timeouts and operational errors
            StorageFatal: For everything else
        """
        if isinstance(error, (OperationalError, DisconnectionError, PoolTimeoutError)) or (
            isinstance(error, DBAPIError) and error.connection_invalidated
        ):
            logger.warning(f"Transient database error in {operation}: {error}")
            raise StorageTransient(operation, str(error), key) from error

        logger.error(f"Database error in {operation}: {error}", exc_info=True)
        raise StorageFatal(operation, str(error), key) from error

    def get_stats(self) -> dict[str, int]:
        return {
            "rows_appended": self.rows_appended,
            "rows_reinstated": self.rows_reinstated,
            "duplicates_ignored": self.duplicates_ignored,
            "rows_superseded": self.rows_superseded,
            "rows_promoted": self.rows_promoted,
        }


def async_url(url: str) -> str:
    """Add the async driver to a URL that names only the dialect."""
    scheme, sep, rest = url.partition("://")
    if sep and scheme in ASYNC_DRIVERS:
        return f"{ASYNC_DRIVERS[scheme]}://{rest}"
    return url


def _same_event(event: DelegationEvent):
    """WHERE clause matching the event's nine-column uniqueness key."""
    return and_(
        DelegationRecord.delegator == event.delegator,
        DelegationRecord.delegate == event.delegate,
        DelegationRecord.contract_address == event.contract_address,
        DelegationRecord.delegation_counter == event.delegation_counter,
        DelegationRecord.old_expiry_date == event.old_expiry_date,
        DelegationRecord.expiry_date == event.expiry_date,
        DelegationRecord.block_number == event.block_number,
        DelegationRecord.block_hash == event.block_hash,
        DelegationRecord.transaction_id == event.transaction_id,
    )
