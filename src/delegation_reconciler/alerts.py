"""
Alerts and parked events.

Conditions an operator has to look at are emitted as structured alerts, and
the events behind them are parked rather than dropped so they can be
replayed once the cause is fixed.
"""

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .errors import ReconciliationError
from .models import DelegationEvent, DelegationKey, ParkedEvent

logger = logging.getLogger(__name__)


class Severity(Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class Alert:
    """Structured notification for the operations channel.

    Attributes:
        kind: Error kind (counter_conflict, sequence_gap_timeout, ...)
        severity: WARNING or CRITICAL
        message: Human-readable summary
        details: Structured context from the originating error
        raised_at: Wall-clock epoch seconds
    """

    kind: str
    severity: Severity
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    raised_at: float = field(default_factory=time.time)

    @classmethod
    def from_error(cls, error: ReconciliationError, severity: Severity = Severity.CRITICAL) -> "Alert":
        return cls(kind=error.kind, severity=severity, message=error.message, details=dict(error.details))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "raised_at": self.raised_at,
        }


class AlertSink(Protocol):
    """Consumer of structured alerts."""

    def emit(self, alert: Alert) -> None: ...


class LoggingAlertSink:
    """Alert sink that writes alerts to a dedicated logger."""

    def __init__(self, logger_name: str = "delegation_reconciler.alerts") -> None:
        self.logger = logging.getLogger(logger_name)

    def emit(self, alert: Alert) -> None:
        level = logging.ERROR if alert.severity is Severity.CRITICAL else logging.WARNING
        self.logger.log(level, f"[{alert.kind}] {alert.message}", extra={"alert": alert.to_dict()})


class ParkingLot:
    """
    Events held back for operator inspection, grouped by tuple.

    Parking is keyed by the event's uniqueness key, so parking the same
    delivery twice keeps one entry.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._parked: dict[DelegationKey, OrderedDict[tuple, ParkedEvent]] = {}

    def park(self, event: DelegationEvent, reason: str, details: dict[str, Any] | None = None) -> bool:
        """
        Park an event.

        Returns:
            True if the event was newly parked
        """
        parked = self._parked.setdefault(event.key, OrderedDict())
        if event.unique_key in parked:
            return False
        parked[event.unique_key] = ParkedEvent(event, reason, self.clock(), dict(details or {}))
        logger.warning(f"Parked {event} ({reason})")
        return True

    def take(self, key: DelegationKey) -> list[ParkedEvent]:
        """Remove and return a tuple's parked events, ordered by counter then parking order."""
        parked = self._parked.pop(key, OrderedDict())
        return sorted(parked.values(), key=lambda p: p.event.delegation_counter)

    def peek(self, key: DelegationKey | None = None) -> list[ParkedEvent]:
        if key is not None:
            return list(self._parked.get(key, {}).values())
        return [p for parked in self._parked.values() for p in parked.values()]

    def keys(self) -> list[DelegationKey]:
        return list(self._parked)

    def __len__(self) -> int:
        return sum(len(parked) for parked in self._parked.values())
