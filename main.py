#!/usr/bin/env python3
"""Entry point for the delegation reconciler.

Replays a JSON-lines stream of host chain records through the
reconciliation pipeline. Each line is one of:

    {"type": "event", "args": {...}, "blockNumber": ..., "blockHash": "0x...", ...}
    {"type": "reorg", "hostChainId": 1, "blockNumber": ..., "blockHash": "0x..."}
    {"type": "head", "hostChainId": 1, "blockNumber": ..., "blockHash": "0x..."}

Consecutive event lines are reconciled as one batch.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, TextIO

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from delegation_reconciler.config import ReconcilerConfig
from delegation_reconciler.coordinator import ReconciliationCoordinator
from delegation_reconciler.models import ReorgNotice
from delegation_reconciler.utils.hex_utility import to_bytes


async def replay(coordinator: ReconciliationCoordinator, stream: TextIO) -> None:
    """Feed every line of a JSON-lines stream to the coordinator."""
    batch: list[dict[str, Any]] = []

    async def flush() -> None:
        if batch:
            await coordinator.submit_batch(batch)
            batch.clear()

    for line_number, line in enumerate(stream, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping line {line_number}: invalid JSON ({e})")
            continue

        match record.get("type", "event"):
            case "event":
                batch.append(record)
            case "reorg":
                await flush()
                await coordinator.handle_reorg(ReorgNotice(
                    host_chain_id=int(record["hostChainId"]),
                    block_number=int(record["blockNumber"]),
                    new_block_hash=to_bytes(record["blockHash"]),
                ))
            case "head":
                await flush()
                block_hash = record.get("blockHash")
                await coordinator.observe_head(
                    int(record["hostChainId"]),
                    int(record["blockNumber"]),
                    to_bytes(block_hash) if block_hash else None,
                )
            case other:
                logger.warning(f"Skipping line {line_number}: unknown record type '{other}'")

    await flush()
    coordinator.sweep_pending()


async def main() -> None:
    """Main entry point for the delegation reconciler.

    Parses startup arguments, loads configuration from environment,
    and replays the input stream through the coordinator.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Delegation Reconciler - Reconcile decryption delegation events into a ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  DATABASE_URL          - SQLAlchemy database URL (default: sqlite:///delegations.db)
  FINALITY_DEPTH        - Confirmations before a block is final (default: 12)
  FINALITY_DEPTHS       - Per-chain depths, e.g. "1:64,8453:20"
  MAX_PENDING_PER_TUPLE - Out-of-order events held per tuple (default: 64)
  PENDING_TTL           - Seconds a held event waits for its predecessor (default: 600)
  RETRY_ATTEMPTS        - Storage retry attempts (default: 5)
  DEFAULT_HOST_CHAIN_ID - Chain ID for records that carry none
  LOG_LEVEL            - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "input",
        nargs="?",
        default="-",
        help="JSON-lines file to replay (default: stdin)"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Delegation Reconciler Starting ===")

    try:
        config: ReconcilerConfig = ReconcilerConfig.from_env()
        config.log_config()

        coordinator = ReconciliationCoordinator.from_config(config)
        if args.input == "-":
            await replay(coordinator, sys.stdin)
        else:
            with open(args.input, encoding="utf-8") as stream:
                await replay(coordinator, stream)

        coordinator.log_stats()
        for parked in coordinator.parking.peek():
            logger.warning(f"Parked for inspection: {parked.event} ({parked.reason})")
        await coordinator.ledger.dispose()

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - DATABASE_URL: SQLAlchemy database URL")
        logger.error("  - FINALITY_DEPTH / FINALITY_DEPTHS: finality depths")
        logger.error("  - MAX_PENDING_PER_TUPLE / PENDING_TTL: pending buffer bounds")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
