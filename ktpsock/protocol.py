"""Wire format, constants and errors of the KTP reliable datagram protocol.

A DATA message is the byte ``'1'``, the sequence number as eight ASCII
binary digits, the payload length as ten ASCII binary digits, and then the
payload itself.  An ACK message is the byte ``'0'``, the acknowledged
sequence number as eight ASCII binary digits and the receiver's free window
as four ASCII binary digits: thirteen bytes in all.
"""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass
from typing import Optional

TIMEOUT = 5
"""Retransmission timeout, in seconds."""

DROP_PROB = 0.05
"""Probability with which an incoming datagram is discarded."""

SOCK_KTP = 3
"""Socket type that selects KTP."""

MAX_SOCKETS = 10
"""Number of KTP sockets the service can hold at once."""

MAX_MSG_SIZE = 512
"""Largest payload of one message, in bytes."""

MAX_SEQ_NUM = 256
"""Sequence numbers run from 0 to MAX_SEQ_NUM - 1 and then wrap."""

BUFFER_SIZE = 10
"""Number of messages each send and receive buffer holds."""

ENOTBOUND = 200
ENOSPACE = 201
ENOMESSAGE = 202

SEQ_BITS = 8
LENGTH_BITS = 10
WINDOW_BITS = 4

DATA_HEADER_SIZE = 1 + SEQ_BITS + LENGTH_BITS
ACK_SIZE = 1 + SEQ_BITS + WINDOW_BITS


class KTPError(OSError):
    """Base class of errors raised by KTP sockets."""

    code: Optional[int] = None
    default_message = "KTP error"

    def __init__(self, message: Optional[str] = None) -> None:
        text = message if message is not None else self.default_message
        if self.code is None:
            super().__init__(text)
        else:
            super().__init__(self.code, text)


class NotBoundError(KTPError):
    """The destination does not match the address the socket is bound to."""

    code = ENOTBOUND
    default_message = "socket is not bound to this destination"


class NoSpaceError(KTPError):
    """No free socket slot or no room left in the send buffer."""

    code = ENOSPACE
    default_message = "no space available"


class NoMessageError(KTPError):
    """No message is waiting in the receive buffer."""

    code = ENOMESSAGE
    default_message = "no message available"


class MessageType(enum.Enum):
    """The leading byte of every KTP datagram."""

    DATA = b"1"
    ACK = b"0"


@dataclass(frozen=True)
class Packet:
    """A decoded KTP datagram.

    ``payload`` is only meaningful for DATA messages and ``window`` only for
    ACK messages.
    """

    type: MessageType
    seq: int
    payload: bytes = b""
    window: Optional[int] = None


def _bits(value: int, width: int, what: str) -> bytes:
    if not 0 <= value < (1 << width):
        raise ValueError(f"{what} {value} does not fit in {width} bits")
    return format(value, f"0{width}b").encode("ascii")


def _field(data: bytes, start: int, width: int, what: str) -> int:
    field = data[start:start + width]
    if len(field) != width or not set(field) <= {ord("0"), ord("1")}:
        raise ValueError(f"malformed {what} field: {field!r}")
    return int(field, 2)


def encode_data(seq: int, payload: bytes) -> bytes:
    """Build the DATA datagram carrying ``payload`` under sequence ``seq``."""
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
    """Build the ACK datagram for ``seq`` advertising ``window`` free slots."""
    return (
        MessageType.ACK.value
        + _bits(seq, SEQ_BITS, "sequence number")
        + _bits(window, WINDOW_BITS, "window size")
    )


def decode_packet(data: bytes) -> Packet:
    """Parse a received datagram; raise ValueError if it is malformed."""
    data = bytes(data)
    if not data:
        raise ValueError("empty datagram")
    try:
        kind = MessageType(data[:1])
    except ValueError:
        raise ValueError(f"unknown message type {data[:1]!r}") from None

    seq = _field(data, 1, SEQ_BITS, "sequence number")
    if kind is MessageType.ACK:
        window = _field(data, 1 + SEQ_BITS, WINDOW_BITS, "window size")
        return Packet(MessageType.ACK, seq, window=window)

    length = _field(data, 1 + SEQ_BITS, LENGTH_BITS, "length")
    payload = data[DATA_HEADER_SIZE:DATA_HEADER_SIZE + length]
    if len(payload) != length:
        raise ValueError(
            f"truncated payload: expected {length} bytes, got {len(payload)}"
        )
    return Packet(MessageType.DATA, seq, payload=payload)


def drop_message(prob: float, rng: Optional[random.Random] = None) -> bool:
    """Return True with probability ``prob``, to simulate a lost datagram."""
    source = rng if rng is not None else random
    return source.random() < prob