"""Wire format, protocol constants and errors of the KTP transport."""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Union

TIMEOUT = 5
"""Retransmission timeout in seconds."""

DROP_PROB = 0.05
"""Default probability with which an incoming datagram is discarded."""

SOCK_KTP = 3
"""Socket type value that selects a KTP socket."""

MAX_SOCKETS = 10
"""Number of KTP sockets the service can hold at once."""

MAX_MSG_SIZE = 512
"""Largest payload carried by one data message."""

MAX_SEQ_NUM = 256
"""Size of the sequence number space (8 bits)."""

BUFFER_SIZE = 10
"""Number of messages held by each send and receive buffer."""

SEQ_BITS = 8
LENGTH_BITS = 10
WINDOW_BITS = 4

DATA_HEADER_SIZE = 1 + SEQ_BITS + LENGTH_BITS
ACK_SIZE = 1 + SEQ_BITS + WINDOW_BITS

ENOTBOUND = 200
ENOSPACE = 201
ENOMESSAGE = 202


class MessageType(Enum):
    """First byte of every KTP datagram."""

    ACK = b"0"
    DATA = b"1"


@dataclass(frozen=True)
class DataMessage:
    """A data segment carrying one message."""

    seq: int
    payload: bytes


@dataclass(frozen=True)
class AckMessage:
    """A cumulative acknowledgement with the receiver's free window."""

    seq: int
    window: int


Message = Union[DataMessage, AckMessage]


class KTPError(OSError):
    """Base class of errors reported by KTP sockets."""

    code: int = 0
    default_message = "KTP error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(self.code, message or self.default_message)


class NotBoundError(KTPError):
    """The destination does not match the address the socket is bound to."""

    code = ENOTBOUND
    default_message = "socket not bound to this destination"


class NoSpaceError(KTPError):
    """No free socket or no free buffer space."""

    code = ENOSPACE
    default_message = "no space available"


class NoMessageError(KTPError):
    """No message is waiting in the receive buffer."""

    code = ENOMESSAGE
    default_message = "no message available"


class _RandomSource(Protocol):
    def random(self) -> float: ...


def _bits(value: int, width: int, what: str) -> bytes:
    if not 0 <= value < (1 << width):
        raise ValueError(f"{what} {value} does not fit in {width} bits")
    return format(value, f"0{width}b").encode("ascii")


def _read_bits(field: bytes, what: str) -> int:
    if not field or any(ch not in b"01" for ch in field):
        raise ValueError(f"malformed {what} field: {field!r}")
    return int(field, 2)


def encode_data(seq: int, payload: bytes) -> bytes:
    """Build a data datagram: type, 8-bit sequence, 10-bit length, payload."""
    payload = bytes(payload)
    if len(payload) > MAX_MSG_SIZE:
        raise ValueError(
            f"payload of {len(payload)} bytes exceeds {MAX_MSG_SIZE} bytes"
        )
    return (
        MessageType.DATA.value
        + _bits(seq, SEQ_BITS, "sequence number")
        + _bits(len(payload), LENGTH_BITS, "length")
        + payload
    )


def encode_ack(seq: int, window: int) -> bytes:
    """Build an acknowledgement datagram: type, 8-bit sequence, 4-bit window."""
    return (
        MessageType.ACK.value
        + _bits(seq, SEQ_BITS, "sequence number")
        + _bits(window, WINDOW_BITS, "window size")
    )


def decode(message: bytes) -> Message:
    """Parse a datagram into a DataMessage or an AckMessage."""
    message = bytes(message)
    if not message:
        raise ValueError("empty message")
    try:
        kind = MessageType(message[:1])
    except ValueError:
        raise ValueError(f"unknown message type: {message[:1]!r}") from None

    seq_end = 1 + SEQ_BITS
    if kind is MessageType.ACK:
        if len(message) < ACK_SIZE:
            raise ValueError("truncated acknowledgement")
        seq = _read_bits(message[1:seq_end], "sequence number")
        window = _read_bits(message[seq_end:ACK_SIZE], "window size")
        return AckMessage(seq, window)

    if len(message) < DATA_HEADER_SIZE:
        raise ValueError("truncated data header")
    seq = _read_bits(message[1:seq_end], "sequence number")
    length = _read_bits(message[seq_end:DATA_HEADER_SIZE], "length")
    if length > MAX_MSG_SIZE:
        raise ValueError(f"data length {length} exceeds {MAX_MSG_SIZE} bytes")
    payload = message[DATA_HEADER_SIZE:DATA_HEADER_SIZE + length]
    if len(payload) < length:
        raise ValueError("truncated data payload")
    return DataMessage(seq, payload)


def drop_message(prob: float, rng: _RandomSource | None = None) -> bool:
    """Return True when a message should be discarded to simulate loss."""
    source = rng if rng is not None else random
    return source.random() < prob