"""
Helpers for decoding values out of host chain log records.

Providers hand out the same value in different shapes depending on the
transport: HexBytes, raw bytes, or 0x-prefixed hex strings.
"""

from typing import Any

from hexbytes import HexBytes
from web3 import Web3

WORD_SIZE = 32


def to_bytes(value: Any) -> bytes:
    """
    Convert a bytes-like or hex string value to raw bytes.

    :param value: HexBytes, bytes, bytearray or hex string (with or without 0x)
    :return: Raw bytes
    :raises ValueError: If the value cannot be interpreted as bytes
    """
    match value:
        case bytes() | bytearray():
            return bytes(value)
        case str():
            hex_str = value[2:] if value.startswith(("0x", "0X")) else value
            if len(hex_str) % 2:
                raise ValueError(f"Odd-length hex string: {value!r}")
            return bytes(HexBytes(hex_str))
        case _:
            raise ValueError(f"Unsupported byte value type: {type(value).__name__}")


def to_address_bytes(value: Any) -> bytes:
    """
    Convert an address (checksummed string, lowercase string or 20 raw bytes) to bytes.

    :raises ValueError: If the value is not a valid 20-byte address
    """
    if isinstance(value, str) and not Web3.is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    return to_bytes(value)


def word_to_address(word: bytes) -> bytes:
    """Extract the address from a left-padded 32-byte ABI word."""
    if len(word) != WORD_SIZE:
        raise ValueError(f"Expected a {WORD_SIZE}-byte word, got {len(word)} bytes")
    if any(word[:12]):
        raise ValueError("Address word has non-zero padding")
    return word[12:]


def parse_event_topic_as_int(topic: Any) -> int:
    """
    Parse an event topic or ABI word (bytes or hex string) as an unsigned integer.

    :param topic: The topic to parse (bytes or str)
    :return: Integer value of the topic
    """
    if isinstance(topic, (bytes, bytearray)):
        return int.from_bytes(topic, byteorder='big')
    if isinstance(topic, str):
        hex_str = topic[2:] if topic.startswith('0x') else topic
        return int(hex_str, 16) if hex_str else 0
    raise ValueError(f"Unsupported topic type: {type(topic).__name__}")


def split_words(data: Any) -> list[bytes]:
    """Split ABI-encoded event data into 32-byte words."""
    raw = to_bytes(data)
    if len(raw) % WORD_SIZE:
        raise ValueError(f"Event data length {len(raw)} is not a multiple of {WORD_SIZE}")
    return [raw[i:i + WORD_SIZE] for i in range(0, len(raw), WORD_SIZE)]
