#!/usr/bin/env python3
"""Event normalization for the delegation reconciler.

This module turns raw host chain log records into canonical DelegationEvent
values. It handles both decoded records (web3 EventData with an ``args``
mapping) and undecoded logs (``topics`` + ``data``), and rejects anything
that does not carry a well-formed delegation.
"""

import logging
from collections.abc import Mapping
from typing import Any

from .errors import MalformedEvent
from .models import ADDRESS_LENGTH, HASH_LENGTH, DelegationEvent
from .utils.hex_utility import (
    parse_event_topic_as_int,
    split_words,
    to_address_bytes,
    to_bytes,
    word_to_address,
)

# Get logger for this module
logger = logging.getLogger(__name__)

# Decoded argument names emitted by the ACL contract
ARG_FIELDS = (
    "delegator",
    "delegate",
    "contractAddress",
    "delegationCounter",
    "oldExpiryDate",
    "expiryDate",
)


class EventNormalizer:
    """Converts raw chain-log records into DelegationEvent values.

    Normalization is a pure function of the record: no ordering assumptions,
    no state other than the counters reported by get_metrics().
    """

    def __init__(self, default_host_chain_id: int | None = None) -> None:
        """
        Initialize the normalizer.

        Args:
            default_host_chain_id: Chain ID used when a record carries none
        """
        self.default_host_chain_id = default_host_chain_id
        self.events_normalized = 0
        self.events_malformed = 0

    def normalize(self, raw: Any) -> DelegationEvent:
        """Normalize a raw log record.

        Args:
            raw: Mapping or attribute object shaped like a web3 log

        Returns:
            The canonical DelegationEvent

        Raises:
            MalformedEvent: If required fields are absent, byte lengths are
                wrong or integer fields are negative
        """
        try:
            event = self._normalize(raw)
        except MalformedEvent as e:
            self.events_malformed += 1
            logger.warning(f"Malformed delegation event: {e}")
            raise
        self.events_normalized += 1
        logger.debug(f"Normalized {event}")
        return event

    def _normalize(self, raw: Any) -> DelegationEvent:
        args = _field(raw, "args")
        if args is not None:
            fields = self._from_args(args)
        elif _field(raw, "topics") is not None:
            fields = self._from_topics(_field(raw, "topics"), _field(raw, "data"))
        else:
            raise MalformedEvent("Record has neither decoded args nor topics", "args")

        host_chain_id = _field(raw, "hostChainId")
        if host_chain_id is None:
            host_chain_id = _field(raw, "chainId")
        if host_chain_id is None:
            host_chain_id = self.default_host_chain_id
        if host_chain_id is None:
            raise MalformedEvent("Record has no host chain id", "hostChainId")

        tx_id = _field(raw, "transactionHash")

        return DelegationEvent(
            delegator=fields["delegator"],
            delegate=fields["delegate"],
            contract_address=fields["contractAddress"],
            host_chain_id=_non_negative(host_chain_id, "hostChainId"),
            delegation_counter=fields["delegationCounter"],
            old_expiry_date=fields["oldExpiryDate"],
            expiry_date=fields["expiryDate"],
            block_number=_non_negative(_required(raw, "blockNumber"), "blockNumber"),
            block_hash=_fixed_bytes(_required(raw, "blockHash"), HASH_LENGTH, "blockHash"),
            transaction_id=None if tx_id is None else _fixed_bytes(tx_id, HASH_LENGTH, "transactionHash"),
        )

    def _from_args(self, args: Any) -> dict[str, Any]:
        if not isinstance(args, Mapping) and not hasattr(args, "get"):
            raise MalformedEvent(f"Unexpected args type: {type(args).__name__}", "args")

        fields: dict[str, Any] = {}
        for name in ARG_FIELDS:
            value = args.get(name)
            if value is None:
                raise MalformedEvent(f"Missing event argument '{name}'", name)
            fields[name] = value

        for name in ("delegator", "delegate", "contractAddress"):
            fields[name] = _address(fields[name], name)
        for name in ("delegationCounter", "oldExpiryDate", "expiryDate"):
            fields[name] = _non_negative(fields[name], name)
        return fields

    def _from_topics(self, topics: Any, data: Any) -> dict[str, Any]:
        """Decode an undecoded log.

        Layout: topics = [signature, delegator, delegate], data = four ABI
        words: contractAddress, delegationCounter, oldExpiryDate, expiryDate.
        """
        topics = list(topics) if topics else []
        if len(topics) < 3:
            raise MalformedEvent(f"Insufficient topics in event: {len(topics)}", "topics")
        if data is None:
            raise MalformedEvent("Missing event data", "data")

        try:
            delegator = word_to_address(_fixed_bytes(topics[1], HASH_LENGTH, "topics"))
            delegate = word_to_address(_fixed_bytes(topics[2], HASH_LENGTH, "topics"))
            words = split_words(data)
        except ValueError as e:
            raise MalformedEvent(f"Undecodable log: {e}", "topics") from None

        if len(words) < 4:
            raise MalformedEvent(f"Expected 4 data words, got {len(words)}", "data")

        try:
            contract_address = word_to_address(words[0])
        except ValueError as e:
            raise MalformedEvent(f"Undecodable contract address: {e}", "contractAddress") from None

        return {
            "delegator": delegator,
            "delegate": delegate,
            "contractAddress": contract_address,
            "delegationCounter": parse_event_topic_as_int(words[1]),
            "oldExpiryDate": parse_event_topic_as_int(words[2]),
            "expiryDate": parse_event_topic_as_int(words[3]),
        }

    def get_metrics(self) -> dict[str, int]:
        """
        Get current normalization metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "events_normalized": self.events_normalized,
            "events_malformed": self.events_malformed,
        }


def _field(raw: Any, name: str) -> Any:
    """Read a field from a dict-like record or an attribute object."""
    if hasattr(raw, "get"):
        return raw.get(name)
    return getattr(raw, name, None)


def _required(raw: Any, name: str) -> Any:
    value = _field(raw, name)
    if value is None:
        raise MalformedEvent(f"Missing required field '{name}'", name)
    return value


def _non_negative(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEvent(f"Field '{name}' must be an integer, got {type(value).__name__}", name)
    if value < 0:
        raise MalformedEvent(f"Field '{name}' must be non-negative, got {value}", name)
    return value


def _fixed_bytes(value: Any, length: int, name: str) -> bytes:
    try:
        raw = to_bytes(value)
    except ValueError as e:
        raise MalformedEvent(f"Field '{name}' is not bytes: {e}", name) from None
    if len(raw) != length:
        raise MalformedEvent(f"Field '{name}' must be {length} bytes, got {len(raw)}", name)
    return raw


def _address(value: Any, name: str) -> bytes:
    try:
        raw = to_address_bytes(value)
    except ValueError as e:
        raise MalformedEvent(f"Field '{name}' is not an address: {e}", name) from None
    if len(raw) != ADDRESS_LENGTH:
        raise MalformedEvent(f"Field '{name}' must be {ADDRESS_LENGTH} bytes, got {len(raw)}", name)
    return raw
