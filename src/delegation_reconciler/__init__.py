"""
Delegation Reconciler package.

Event ingestion and reconciliation core for user-decryption delegations.
"""

from .config import ReconcilerConfig
from .coordinator import Outcome, ReconciliationCoordinator
from .finality import FinalityTracker
from .ledger import LedgerWriter
from .models import DelegationEvent, DelegationKey, DelegationState, Finality, ReorgNotice
from .normalizer import EventNormalizer
from .sequencer import CounterSequencer

__all__ = [
    "ReconcilerConfig",
    "ReconciliationCoordinator",
    "Outcome",
    "EventNormalizer",
    "CounterSequencer",
    "FinalityTracker",
    "LedgerWriter",
    "DelegationEvent",
    "DelegationKey",
    "DelegationState",
    "Finality",
    "ReorgNotice",
]
__version__ = "0.1.0"
