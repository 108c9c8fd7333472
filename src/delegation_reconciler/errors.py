"""
Reconciler exceptions.

Every failure the reconciliation pipeline can surface is one of these.
Each carries structured details so the coordinator can turn it into an
alert without parsing messages.
"""

from typing import Any, Optional

from .models import DelegationEvent, DelegationKey


class ReconciliationError(Exception):
    """Base exception for all reconciliation failures."""

    kind: str = "reconciliation_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, **self.details}


class MalformedEvent(ReconciliationError):
    """Raised when a raw log record cannot be turned into a DelegationEvent.

    Input hygiene failure: the record is logged and dropped, never persisted.
    """

    kind = "malformed_event"

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(message, {"field": field_name} if field_name else None)
        self.field_name = field_name


class CounterConflict(ReconciliationError):
    """Raised when an event contradicts the tuple's applied history.

    Fatal to the tuple's automatic processing until an operator resumes it.
    """

    kind = "counter_conflict"

    def __init__(self, event: DelegationEvent, expected_counter: int, expected_old_expiry: int, reason: str) -> None:
        super().__init__(
            f"Counter conflict for {event.key}: {reason}",
            {
                "event": event.to_dict(),
                "expected_counter": expected_counter,
                "expected_old_expiry": expected_old_expiry,
            },
        )
        self.event = event
        self.expected_counter = expected_counter
        self.expected_old_expiry = expected_old_expiry


class SequenceGapTimeout(ReconciliationError):
    """Raised when a missing predecessor never arrived within the hold bounds."""

    kind = "sequence_gap_timeout"

    def __init__(self, event: DelegationEvent, expected_counter: int, reason: str) -> None:
        super().__init__(
            f"Sequence gap for {event.key}: waiting for counter {expected_counter}, "
            f"holding {event.delegation_counter} ({reason})",
            {"event": event.to_dict(), "expected_counter": expected_counter, "reason": reason},
        )
        self.event = event
        self.expected_counter = expected_counter


class ReorgDetected(ReconciliationError):
    """Raised when a block hash disagrees with the recorded canonical hash."""

    kind = "reorg_detected"

    def __init__(self, host_chain_id: int, block_number: int, new_hash: bytes, old_hash: Optional[bytes]) -> None:
        super().__init__(
            f"Reorg detected on chain {host_chain_id} at block {block_number}",
            {
                "host_chain_id": host_chain_id,
                "block_number": block_number,
                "new_hash": "0x" + new_hash.hex(),
                "old_hash": "0x" + old_hash.hex() if old_hash else None,
            },
        )
        self.host_chain_id = host_chain_id
        self.block_number = block_number
        self.new_hash = new_hash
        self.old_hash = old_hash


class StorageError(ReconciliationError):
    """Base class for ledger persistence failures."""

    kind = "storage_error"

    def __init__(self, operation: str, original_error: str, key: Optional[DelegationKey] = None) -> None:
        details: dict[str, Any] = {"operation": operation, "original_error": original_error}
        if key is not None:
            details["tuple"] = key.to_dict()
        super().__init__(f"[ledger] {operation}: {original_error}", details)
        self.operation = operation


class StorageTransient(StorageError):
    """Retryable storage failure (connection loss, lock timeout)."""

    kind = "storage_transient"


class StorageFatal(StorageError):
    """Non-retryable storage failure; the event is parked, never dropped."""

    kind = "storage_fatal"
