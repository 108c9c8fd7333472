#!/usr/bin/env python3
"""Data models for the delegation reconciler.

This module provides immutable data classes for delegation events read from
the host chain, the derived per-tuple delegation state and the per-chain head
tracked for finality decisions.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

ADDRESS_LENGTH = 20
HASH_LENGTH = 32


class Finality(Enum):
    """Finality classification of the block containing an event."""
    PROVISIONAL = "provisional"
    FINAL = "final"
    ORPHANED = "orphaned"


@dataclass(frozen=True, slots=True)
class DelegationKey:
    """Identifies one delegation relationship's event chain.

    Attributes:
        delegator: Address granting the decryption right
        delegate: Address receiving the decryption right
        contract_address: Contract the ciphertext is tied to
    """

    delegator: bytes
    delegate: bytes
    contract_address: bytes

    def __str__(self) -> str:
        return (
            f"({_short(self.delegator)}, {_short(self.delegate)}, "
            f"{_short(self.contract_address)})"
        )

    def to_dict(self) -> dict[str, str]:
        """Convert to a hex-encoded dictionary."""
        return {
            "delegator": _hex(self.delegator),
            "delegate": _hex(self.delegate),
            "contract_address": _hex(self.contract_address),
        }


@dataclass(frozen=True, slots=True)
class DelegationEvent:
    """Represents a delegation (or revocation) event from the host chain.

    This immutable data class is the canonical form of one on-chain log
    entry. It is produced by the EventNormalizer and consumed by every other
    component of the reconciler.

    Attributes:
        delegator: Address granting the decryption right (20 bytes)
        delegate: Address receiving the decryption right (20 bytes)
        contract_address: Contract the ciphertext is tied to (20 bytes)
        host_chain_id: Chain the event was emitted on
        delegation_counter: Per-tuple counter supplied by the contract
        old_expiry_date: Expiry before this event, 0 for a first delegation
        expiry_date: Expiry after this event, 0 for a revocation
        block_number: Block number where the event was emitted
        block_hash: Hash of the containing block (32 bytes)
        transaction_id: Hash of the emitting transaction, if known
    """

    delegator: bytes
    delegate: bytes
    contract_address: bytes
    host_chain_id: int
    delegation_counter: int
    old_expiry_date: int
    expiry_date: int
    block_number: int
    block_hash: bytes
    transaction_id: bytes | None = None

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"DelegationEvent(tuple={self.key}, "
            f"counter={self.delegation_counter}, "
            f"expiry={self.old_expiry_date}->{self.expiry_date}, "
            f"chain={self.host_chain_id}, block={self.block_number}, "
            f"hash={_short(self.block_hash)})"
        )

    @property
    def key(self) -> DelegationKey:
        """The (delegator, delegate, contract) tuple this event belongs to."""
        return DelegationKey(self.delegator, self.delegate, self.contract_address)

    @property
    def unique_key(self) -> tuple:
        """Generate the storage uniqueness key.

        Two events with equal unique keys are the same delivery; the ledger
        stores at most one row per key.
        """
        return (
            self.delegator,
            self.delegate,
            self.contract_address,
            self.delegation_counter,
            self.old_expiry_date,
            self.expiry_date,
            self.block_number,
            self.block_hash,
            self.transaction_id,
        )

    @property
    def is_revocation(self) -> bool:
        return self.expiry_date == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            **self.key.to_dict(),
            "host_chain_id": self.host_chain_id,
            "delegation_counter": self.delegation_counter,
            "old_expiry_date": self.old_expiry_date,
            "expiry_date": self.expiry_date,
            "block_number": self.block_number,
            "block_hash": _hex(self.block_hash),
            "transaction_id": _hex(self.transaction_id) if self.transaction_id else None,
        }


@dataclass(frozen=True, slots=True)
class DelegationState:
    """Current state of one delegation tuple, folded from its events.

    Never the source of truth: the ledger rows are. An empty state (no event
    applied yet) has counter 0 and expiry 0.

    Attributes:
        last_counter: Counter of the last applied event
        expiry: Expiry date after the last applied event
        revoked: Whether the last applied event was a revocation
        confirmed: Whether the state only includes final rows
    """

    last_counter: int = 0
    expiry: int = 0
    revoked: bool = False
    confirmed: bool = True

    @property
    def next_counter(self) -> int:
        return self.last_counter + 1

    def apply(self, event: DelegationEvent) -> "DelegationState":
        """Return the state after applying an accepted event."""
        return replace(
            self,
            last_counter=event.delegation_counter,
            expiry=event.expiry_date,
            revoked=event.is_revocation,
        )

    def is_effective(self, now: int) -> bool:
        """Whether the delegate may decrypt at the given epoch second."""
        if self.revoked or self.last_counter == 0:
            return False
        return self.expiry > now


@dataclass(slots=True)
class ChainHead:
    """Last known canonical head of a host chain.

    Owned by the FinalityTracker. The block number only moves forward;
    reorgs are expressed through supersession, not by rewinding the head.
    """

    host_chain_id: int
    finality_depth: int
    block_number: int = -1
    block_hash: bytes | None = None

    @property
    def finalized_height(self) -> int:
        """Highest block number considered final, -1 if none."""
        if self.block_number < 0:
            return -1
        return self.block_number - self.finality_depth


@dataclass(frozen=True, slots=True)
class ReorgNotice:
    """Notification that a height on a host chain has a new canonical hash."""

    host_chain_id: int
    block_number: int
    new_block_hash: bytes

    def __str__(self) -> str:
        return (
            f"ReorgNotice(chain={self.host_chain_id}, "
            f"block={self.block_number}, hash={_short(self.new_block_hash)})"
        )


@dataclass(frozen=True, slots=True)
class ParkedEvent:
    """An event set aside for operator inspection instead of being dropped."""

    event: DelegationEvent
    reason: str
    parked_at: float
    details: dict[str, Any] = field(default_factory=dict)


def _hex(value: bytes) -> str:
    return "0x" + value.hex()


def _short(value: bytes | None) -> str:
    if not value:
        return "None"
    return _hex(value)[:10] + "..."
