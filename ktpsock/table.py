"""Per-socket state of the KTP service: windows, buffers and the socket table.

Every KTP socket owns a send buffer and a receive buffer of ``BUFFER_SIZE``
messages each.  The send window maps sequence numbers to send-buffer slots
and remembers when each sequence number was last transmitted; the receive
window maps the sequence numbers it is ready to accept to receive-buffer
slots.  None of the methods of :class:`SocketState` lock anything: callers
hold :attr:`SocketTable.lock` while they touch a socket's state.
"""

from __future__ import annotations

import errno
import threading
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Tuple

from .protocol import (
    BUFFER_SIZE,
    MAX_MSG_SIZE,
    MAX_SEQ_NUM,
    MAX_SOCKETS,
    NoMessageError,
    NoSpaceError,
)


def _empty_slots() -> List[Optional[int]]:
    return [None] * MAX_SEQ_NUM


@dataclass
class Window:
    """A sliding window: ``slots[seq]`` is a buffer index or None."""

    slots: List[Optional[int]] = field(default_factory=_empty_slots)
    size: int = 0
    start: int = 0

    def sequence_numbers(self) -> Iterator[int]:
        """Yield the sequence numbers currently inside the window."""
        for offset in range(self.size):
            yield (self.start + offset) % MAX_SEQ_NUM


@dataclass
class SocketState:
    """Everything the service keeps about one KTP socket."""

    free: bool = True
    pid: Optional[int] = None
    udp_sock: Any = None
    ip: str = ""
    port: int = 0
    send_buffer: List[bytes] = field(
        default_factory=lambda: [b""] * BUFFER_SIZE
    )
    send_free: int = BUFFER_SIZE
    timestamps: List[Optional[float]] = field(
        default_factory=lambda: [None] * MAX_SEQ_NUM
    )
    recv_buffer: List[Optional[bytes]] = field(
        default_factory=lambda: [None] * BUFFER_SIZE
    )
    recv_base: int = 0
    swnd: Window = field(default_factory=Window)
    rwnd: Window = field(default_factory=Window)
    buffer_full: bool = False

    def __post_init__(self) -> None:
        self.reset_windows()

    def reset_windows(self) -> None:
        """Empty both buffers and put both windows back at sequence 0."""
        self.swnd = Window(size=BUFFER_SIZE)
        self.rwnd = Window(size=BUFFER_SIZE)
        for seq in range(BUFFER_SIZE):
            self.rwnd.slots[seq] = seq
        self.timestamps = [None] * MAX_SEQ_NUM
        self.send_buffer = [b""] * BUFFER_SIZE
        self.send_free = BUFFER_SIZE
        self.recv_buffer = [None] * BUFFER_SIZE
        self.recv_base = 0
        self.buffer_full = False

    def matches_destination(self, ip: str, port: int) -> bool:
        """Whether ``(ip, port)`` is the destination this socket is bound to."""
        return self.ip == ip and self.port == port

    def queue(self, payload: bytes) -> int:
        """Place ``payload`` in the send buffer; return its length."""
        payload = bytes(payload)
        if len(payload) > MAX_MSG_SIZE:
            raise ValueError(
                f"payload of {len(payload)} bytes exceeds {MAX_MSG_SIZE} bytes"
            )
        if self.send_free <= 0:
            raise NoSpaceError()

        seq = self.swnd.start
        checked = 0
        while self.swnd.slots[seq] is not None:
            seq = (seq + 1) % MAX_SEQ_NUM
            checked += 1
            if checked >= MAX_SEQ_NUM:
                raise NoSpaceError()

        used = {slot for slot in self.swnd.slots if slot is not None}
        slot = next((b for b in range(BUFFER_SIZE) if b not in used), None)
        if slot is None:
            raise NoSpaceError()

        self.swnd.slots[seq] = slot
        self.send_buffer[slot] = payload
        self.timestamps[seq] = None
        self.send_free -= 1
        return len(payload)

    def take(self, size: int) -> bytes:
        """Remove the next in-order message, cut to at most ``size`` bytes."""
        base = self.recv_base
        data = self.recv_buffer[base]
        if data is None:
            raise NoMessageError()
        self.recv_buffer[base] = None

        found = next(
            (seq for seq, slot in enumerate(self.rwnd.slots) if slot == base),
            None,
        )
        if found is not None:
            self.rwnd.slots[found] = None
            self.rwnd.slots[(found + BUFFER_SIZE) % MAX_SEQ_NUM] = base
            self.recv_base = (base + 1) % BUFFER_SIZE
            if self.rwnd.size < BUFFER_SIZE:
                self.rwnd.size += 1
                if self.rwnd.size == 1:
                    self.buffer_full = True
        return data[:max(size, 0)]

    def _store(self, slot: int, payload: bytes) -> None:
        self.recv_buffer[slot] = bytes(payload)
        self.rwnd.size -= 1

    def on_data(self, seq: int, payload: bytes) -> Tuple[int, int]:
        """Accept a DATA message; return the ``(seq, window)`` to acknowledge."""
        if seq == self.rwnd.start:
            slot = self.rwnd.slots[seq]
            if slot is not None:
                self._store(slot, payload)
                nxt = seq
                while True:
                    nxt = (nxt + 1) % MAX_SEQ_NUM
                    self.rwnd.start = nxt
                    following = self.rwnd.slots[nxt]
                    if (
                        following is None
                        or self.recv_buffer[following] is None
                        or nxt == seq
                    ):
                        break
        else:
            distance = (seq - self.rwnd.start) % MAX_SEQ_NUM
            if distance < BUFFER_SIZE:
                slot = self.rwnd.slots[seq]
                if slot is not None and self.recv_buffer[slot] is None:
                    self._store(slot, payload)

        if self.rwnd.size == 0:
            self.buffer_full = True
        return self.last_ack(), self.rwnd.size

    def on_ack(self, seq: int, window: int) -> None:
        """Apply an ACK: free what it acknowledges and adopt its window."""
        start = self.swnd.start
        distance = (seq - start) % MAX_SEQ_NUM
        if distance < self.swnd.size:
            end = (seq + 1) % MAX_SEQ_NUM
            current = start
            while current != end:
                slot = self.swnd.slots[current]
                if slot is not None:
                    self.send_free += 1
                    self.send_buffer[slot] = b""
                    self.swnd.slots[current] = None
                self.timestamps[current] = None
                current = (current + 1) % MAX_SEQ_NUM
            self.swnd.start = end
        self.swnd.size = window

    def last_ack(self) -> int:
        """The highest sequence number received in order."""
        return (self.rwnd.start - 1) % MAX_SEQ_NUM

    def _window_packets(self, unsent_only: bool) -> List[Tuple[int, bytes]]:
        packets = []
        for seq in self.swnd.sequence_numbers():
            slot = self.swnd.slots[seq]
            if slot is None:
                continue
            if unsent_only and self.timestamps[seq] is not None:
                continue
            packets.append((seq, self.send_buffer[slot]))
        return packets

    def pending_packets(self) -> List[Tuple[int, bytes]]:
        """``(seq, payload)`` of messages in the window never sent yet."""
        return self._window_packets(unsent_only=True)

    def unacked_packets(self) -> List[Tuple[int, bytes]]:
        """``(seq, payload)`` of every message waiting in the window."""
        return self._window_packets(unsent_only=False)

    def mark_sent(self, seq: int, when: float) -> None:
        """Record that ``seq`` was transmitted at time ``when``."""
        self.timestamps[seq] = when

    def timed_out(self, now: float, timeout: float) -> bool:
        """Whether any message in the window was sent ``timeout`` ago or more."""
        return any(
            self.timestamps[seq] is not None
            and now - self.timestamps[seq] >= timeout
            for seq in self.swnd.sequence_numbers()
        )

    def window_update_due(self) -> bool:
        """Whether a full receive buffer has room again; clears the flag."""
        if self.buffer_full and self.rwnd.size > 0:
            self.buffer_full = False
            return True
        return False


class SocketTable:
    """The fixed set of KTP socket slots shared by all users of the service."""

    def __init__(self, capacity: int = MAX_SOCKETS) -> None:
        self.lock = threading.RLock()
        self._states = [SocketState() for _ in range(capacity)]

    def __len__(self) -> int:
        return len(self._states)

    def allocate(self, pid: int) -> int:
        """Claim a free slot for process ``pid``; return its index."""
        with self.lock:
            for index, state in enumerate(self._states):
                if state.free:
                    state.free = False
                    state.pid = pid
                    state.udp_sock = None
                    state.ip = ""
                    state.port = 0
                    state.reset_windows()
                    return index
        raise NoSpaceError()

    def find_by_pid(self, pid: int) -> Optional[int]:
        """Index of the first socket owned by ``pid``, or None."""
        with self.lock:
            return next(
                (
                    index
                    for index, state in enumerate(self._states)
                    if not state.free and state.pid == pid
                ),
                None,
            )

    def get(self, index: int) -> SocketState:
        """The state of the allocated socket ``index``."""
        with self.lock:
            if not 0 <= index < len(self._states) or self._states[index].free:
                raise OSError(errno.EINVAL, f"invalid KTP socket {index}")
            return self._states[index]

    def release(self, index: int) -> SocketState:
        """Mark socket ``index`` free again and return its state."""
        with self.lock:
            state = self.get(index)
            state.free = True
            return state

    def active(self) -> Iterator[Tuple[int, SocketState]]:
        """Yield ``(index, state)`` of every allocated socket."""
        with self.lock:
            snapshot = [
                (index, state)
                for index, state in enumerate(self._states)
                if not state.free
            ]
        yield from snapshot