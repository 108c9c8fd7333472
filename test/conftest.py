"""Shared fixtures for delegation reconciler tests."""

from typing import Any

import pytest

from delegation_reconciler.models import DelegationEvent

CHAIN_ID = 8009

DELEGATOR = bytes.fromhex("11" * 20)
DELEGATE = bytes.fromhex("22" * 20)
CONTRACT = bytes.fromhex("33" * 20)
OTHER_DELEGATE = bytes.fromhex("44" * 20)


def block_hash(block_number: int, branch: str = "a") -> bytes:
    """Deterministic 32-byte block hash for a height on a branch."""
    return (branch.encode() + block_number.to_bytes(4, "big")).rjust(32, b"\x00")


def tx_hash(counter: int, salt: int = 0) -> bytes:
    return (b"tx" + counter.to_bytes(4, "big") + salt.to_bytes(2, "big")).rjust(32, b"\x00")


def make_event(
    counter: int,
    old_expiry: int,
    expiry: int,
    block_number: int | None = None,
    branch: str = "a",
    delegate: bytes = DELEGATE,
    transaction_id: bytes | None = b"",
    host_chain_id: int = CHAIN_ID,
) -> DelegationEvent:
    """Build a DelegationEvent; block defaults to the counter, tx to a per-counter hash."""
    block_number = counter if block_number is None else block_number
    return DelegationEvent(
        delegator=DELEGATOR,
        delegate=delegate,
        contract_address=CONTRACT,
        host_chain_id=host_chain_id,
        delegation_counter=counter,
        old_expiry_date=old_expiry,
        expiry_date=expiry,
        block_number=block_number,
        block_hash=block_hash(block_number, branch),
        transaction_id=tx_hash(counter) if transaction_id == b"" else transaction_id,
    )


def make_raw(
    counter: int,
    old_expiry: int,
    expiry: int,
    block_number: int | None = None,
    branch: str = "a",
    delegate: bytes = DELEGATE,
) -> dict[str, Any]:
    """Build a decoded log record the way web3 returns it."""
    block_number = counter if block_number is None else block_number
    return {
        "args": {
            "delegator": "0x" + DELEGATOR.hex(),
            "delegate": "0x" + delegate.hex(),
            "contractAddress": "0x" + CONTRACT.hex(),
            "delegationCounter": counter,
            "oldExpiryDate": old_expiry,
            "expiryDate": expiry,
        },
        "hostChainId": CHAIN_ID,
        "blockNumber": block_number,
        "blockHash": "0x" + block_hash(block_number, branch).hex(),
        "transactionHash": "0x" + tx_hash(counter).hex(),
    }


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
