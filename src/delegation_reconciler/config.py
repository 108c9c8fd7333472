#!/usr/bin/env python3
"""Configuration management for the delegation reconciler.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field

# Get logger for this module
logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DatabaseConfig:
    """Configuration for the ledger database.

    Attributes:
        url: SQLAlchemy database URL
        echo: Whether SQLAlchemy logs every statement
    """

    url: str = "sqlite:///delegations.db"
    echo: bool = False

    def __post_init__(self) -> None:
        """Validate database configuration."""
        if not self.url:
            raise ValueError("Database URL is required (DATABASE_URL)")
        if "://" not in self.url:
            raise ValueError(f"Invalid database URL: {self.url}")


@dataclass(frozen=True, slots=True)
class FinalityConfig:
    """Configuration for finality tracking.

    Attributes:
        default_depth: Confirmations before a block is final
        depths: Per-chain overrides of the finality depth
        max_tracked_blocks: Canonical hashes kept per chain
    """

    default_depth: int = 12
    depths: dict[int, int] = field(default_factory=dict)
    max_tracked_blocks: int = 10_000

    def __post_init__(self) -> None:
        """Validate finality configuration."""
        if self.default_depth < 0:
            raise ValueError(f"Finality depth must be non-negative, got {self.default_depth}")
        for chain_id, depth in self.depths.items():
            if depth < 0:
                raise ValueError(f"Finality depth for chain {chain_id} must be non-negative, got {depth}")
        if self.max_tracked_blocks <= 0:
            raise ValueError(f"Max tracked blocks must be positive, got {self.max_tracked_blocks}")


@dataclass(frozen=True, slots=True)
class SequencingConfig:
    """Configuration for holding out-of-order events."""
    max_pending_per_tuple: int = 64
    pending_ttl: float = 600.0  # seconds an event may wait for its predecessor

    def __post_init__(self) -> None:
        """Validate sequencing configuration."""
        if self.max_pending_per_tuple <= 0:
            raise ValueError(f"Max pending per tuple must be positive, got {self.max_pending_per_tuple}")
        if self.pending_ttl <= 0:
            raise ValueError(f"Pending TTL must be positive, got {self.pending_ttl}")


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Bounded exponential backoff for transient storage failures."""
    attempts: int = 5
    initial_backoff: float = 0.05  # seconds
    max_backoff: float = 2.0  # seconds

    def __post_init__(self) -> None:
        """Validate retry configuration."""
        if self.attempts < 1:
            raise ValueError(f"Retry attempts must be at least 1, got {self.attempts}")
        if self.attempts > 20:
            raise ValueError(f"Retry attempts too high (max 20), got {self.attempts}")
        if self.initial_backoff <= 0:
            raise ValueError(f"Initial backoff must be positive, got {self.initial_backoff}")
        if self.max_backoff < self.initial_backoff:
            raise ValueError(
                f"Max backoff ({self.max_backoff}) must not be below initial backoff ({self.initial_backoff})"
            )


@dataclass(frozen=True, slots=True)
class ReconcilerConfig:
    """Main configuration for the delegation reconciler.

    Attributes:
        database: Ledger database settings
        finality: Finality tracking settings
        sequencing: Pending buffer bounds
        retry: Storage retry policy
        default_host_chain_id: Chain ID for records that carry none
    """

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    finality: FinalityConfig = field(default_factory=FinalityConfig)
    sequencing: SequencingConfig = field(default_factory=SequencingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    default_host_chain_id: int | None = None

    @classmethod
    def from_env(cls) -> "ReconcilerConfig":
        """Load configuration from environment variables.

        Returns:
            ReconcilerConfig instance with loaded values

        Raises:
            ValueError: If environment variables are invalid
        """
        database = DatabaseConfig(
            url=os.environ.get("DATABASE_URL", "sqlite:///delegations.db"),
            echo=_env_bool("DATABASE_ECHO", False),
        )

        finality = FinalityConfig(
            default_depth=_env_int("FINALITY_DEPTH", 12),
            depths=parse_chain_depths(os.environ.get("FINALITY_DEPTHS", "")),
            max_tracked_blocks=_env_int("MAX_TRACKED_BLOCKS", 10_000),
        )

        sequencing = SequencingConfig(
            max_pending_per_tuple=_env_int("MAX_PENDING_PER_TUPLE", 64),
            pending_ttl=_env_float("PENDING_TTL", 600.0),
        )

        retry = RetryConfig(
            attempts=_env_int("RETRY_ATTEMPTS", 5),
            initial_backoff=_env_float("RETRY_INITIAL_BACKOFF", 0.05),
            max_backoff=_env_float("RETRY_MAX_BACKOFF", 2.0),
        )

        default_chain = os.environ.get("DEFAULT_HOST_CHAIN_ID")

        return cls(
            database=database,
            finality=finality,
            sequencing=sequencing,
            retry=retry,
            default_host_chain_id=int(default_chain) if default_chain else None,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Delegation Reconciler Configuration")
        logger.info("=" * 60)

        logger.info("Database:")
        # Hide credentials embedded in the URL
        logger.info(f"  URL: {self.database.url.split('@')[-1]}")

        logger.info("Finality:")
        logger.info(f"  Default Depth: {self.finality.default_depth} blocks")
        for chain_id, depth in sorted(self.finality.depths.items()):
            logger.info(f"  Chain {chain_id} Depth: {depth} blocks")
        logger.info(f"  Tracked Blocks: {self.finality.max_tracked_blocks}")

        logger.info("Sequencing:")
        logger.info(f"  Max Pending Per Tuple: {self.sequencing.max_pending_per_tuple}")
        logger.info(f"  Pending TTL: {self.sequencing.pending_ttl} seconds")

        logger.info("Storage Retry:")
        logger.info(f"  Attempts: {self.retry.attempts}")
        logger.info(f"  Backoff: {self.retry.initial_backoff}s - {self.retry.max_backoff}s")

        if self.default_host_chain_id is not None:
            logger.info(f"Default Host Chain: {self.default_host_chain_id}")

        logger.info("=" * 60)


def parse_chain_depths(value: str) -> dict[int, int]:
    """Parse per-chain finality depths from a ``"chain:depth,chain:depth"`` string.

    Raises:
        ValueError: If an entry is not two integers separated by a colon
    """
    depths: dict[int, int] = {}
    for entry in filter(None, (part.strip() for part in value.split(","))):
        chain, sep, depth = entry.partition(":")
        if not sep:
            raise ValueError(f"Invalid FINALITY_DEPTHS entry '{entry}', expected chain:depth")
        try:
            depths[int(chain)] = int(depth)
        except ValueError:
            raise ValueError(f"Invalid FINALITY_DEPTHS entry '{entry}', expected integers") from None
    return depths


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")
