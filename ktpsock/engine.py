"""The KTP protocol engine: receiving, sending and garbage collection.

The engine runs three loops over the shared :class:`~ktpsock.table.SocketTable`.
The receiver waits for datagrams on every allocated socket, stores DATA
messages and answers them with ACKs, and applies incoming ACKs to the send
windows.  The sender transmits queued messages and retransmits the whole
window when a message has gone unacknowledged for the timeout period.  The
garbage collector frees sockets whose owning process has gone away.
"""

from __future__ import annotations

import logging
import os
import random
import select
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .protocol import (
    DATA_HEADER_SIZE,
    DROP_PROB,
    MAX_MSG_SIZE,
    TIMEOUT,
    MessageType,
    Packet,
    decode_packet,
    drop_message,
    encode_ack,
    encode_data,
)
from .table import SocketState, SocketTable

log = logging.getLogger(__name__)

_RECV_SIZE = MAX_MSG_SIZE + DATA_HEADER_SIZE + 1


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class Engine:
    """Drives retransmission, acknowledgement and cleanup of KTP sockets."""

    def __init__(
        self,
        table: SocketTable,
        *,
        drop_prob: float = DROP_PROB,
        timeout: float = TIMEOUT,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.table = table
        self.drop_prob = drop_prob
        self.timeout = timeout
        self._rng = rng
        self._clock = clock
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        """Whether the background loops are running."""
        return any(thread.is_alive() for thread in self._threads)

    def __enter__(self) -> "Engine":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    @staticmethod
    def _send(sock: Any, data: bytes, address: Tuple[str, int]) -> bool:
        try:
            sock.sendto(data, address)
        except OSError as exc:
            log.warning("failed to send to %s:%s: %s", address[0], address[1], exc)
            return False
        return True

    def handle_datagram(
        self, index: int, data: bytes, source: Tuple[str, int]
    ) -> Optional[Packet]:
        """Process one datagram received on socket ``index``.

        Returns the decoded packet, or None when it was dropped to simulate
        loss or could not be parsed.
        """
        if drop_message(self.drop_prob, self._rng):
            log.debug("dropped message for socket %d", index)
            return None
        try:
            packet = decode_packet(data)
        except ValueError as exc:
            log.info("ignoring datagram for socket %d: %s", index, exc)
            return None

        with self.table.lock:
            state = self.table.get(index)
            if packet.type is MessageType.DATA:
                seq, window = state.on_data(packet.seq, packet.payload)
                log.debug(
                    "socket %d: DATA seq=%d len=%d, ACK seq=%d rwnd=%d",
                    index, packet.seq, len(packet.payload), seq, window,
                )
                self._send(state.udp_sock, encode_ack(seq, window), source)
            else:
                state.on_ack(packet.seq, packet.window or 0)
                log.debug(
                    "socket %d: ACK seq=%d rwnd=%s, window start=%d size=%d",
                    index, packet.seq, packet.window,
                    state.swnd.start, state.swnd.size,
                )
        return packet

    def send_window_updates(self) -> List[int]:
        """Re-announce the window of sockets whose full buffer has room again.

        Returns the indices of the sockets an update was sent for.
        """
        updated = []
        with self.table.lock:
            for index, state in self.table.active():
                if state.udp_sock is None or not state.window_update_due():
                    continue
                ack = encode_ack(state.last_ack(), state.rwnd.size)
                if self._send(state.udp_sock, ack, (state.ip, state.port)):
                    updated.append(index)
        return updated

    def _transmit(
        self, state: SocketState, packets: List[Tuple[int, bytes]], now: float
    ) -> List[int]:
        sent = []
        for seq, payload in packets:
            if self._send(
                state.udp_sock, encode_data(seq, payload), (state.ip, state.port)
            ):
                state.mark_sent(seq, now)
                sent.append(seq)
        return sent

    def transmit_new(self, index: int) -> List[int]:
        """Send messages in the window not sent yet; return their sequences."""
        with self.table.lock:
            state = self.table.get(index)
            return self._transmit(state, state.pending_packets(), self._clock())

    def retransmit(self, index: int) -> List[int]:
        """Resend every message in the window; return their sequences."""
        with self.table.lock:
            state = self.table.get(index)
            return self._transmit(state, state.unacked_packets(), self._clock())

    def send_cycle(self, now: float) -> Dict[int, List[int]]:
        """One pass of the sender over every socket at time ``now``.

        A socket with a timed-out message has its whole window resent;
        otherwise only its unsent messages go out.  Returns, per socket
        index, the sequence numbers transmitted.
        """
        result: Dict[int, List[int]] = {}
        with self.table.lock:
            for index, state in self.table.active():
                if state.udp_sock is None:
                    continue
                if state.timed_out(now, self.timeout):
                    log.info("timeout on socket %d, retransmitting", index)
                    packets = state.unacked_packets()
                else:
                    packets = state.pending_packets()
                result[index] = self._transmit(state, packets, now)
        return result

    def receive_cycle(self, timeout: float) -> int:
        """Wait up to ``timeout`` seconds for datagrams and handle them.

        Returns the number of datagrams read.
        """
        with self.table.lock:
            sockets: Dict[Any, int] = {}
            for index, state in self.table.active():
                sock = state.udp_sock
                if sock is not None and sock.fileno() >= 0:
                    sockets[sock] = index

        readable: List[Any] = []
        if sockets:
            try:
                readable, _, _ = select.select(list(sockets), [], [], timeout)
            except (OSError, ValueError) as exc:
                log.debug("select failed: %s", exc)
        else:
            self._stop.wait(timeout)

        self.send_window_updates()

        handled = 0
        for sock in readable:
            index = sockets[sock]
            with self.table.lock:
                try:
                    state = self.table.get(index)
                except OSError:
                    continue
                if state.udp_sock is not sock:
                    continue
                try:
                    data, source = sock.recvfrom(_RECV_SIZE)
                except OSError as exc:
                    log.warning("recvfrom failed on socket %d: %s", index, exc)
                    continue
                handled += 1
                self.handle_datagram(index, data, source)
        return handled

    def collect_garbage(
        self, is_alive: Optional[Callable[[int], bool]] = None
    ) -> List[int]:
        """Free sockets whose owner is gone; return the freed indices."""
        check = is_alive if is_alive is not None else _process_alive
        freed = []
        with self.table.lock:
            for index, state in list(self.table.active()):
                if state.pid is None or check(state.pid):
                    continue
                log.info("process %d not found, freeing socket %d", state.pid, index)
                self.table.release(index)
                if state.udp_sock is not None:
                    state.udp_sock.close()
                    state.udp_sock = None
                freed.append(index)
        return freed

    def _receiver_loop(self) -> None:
        while not self._stop.is_set():
            self.receive_cycle(self.timeout / 2)

    def _sender_loop(self) -> None:
        while not self._stop.wait(self.timeout / 2):
            self.send_cycle(self._clock())

    def _gc_loop(self) -> None:
        while not self._stop.wait(self.timeout):
            self.collect_garbage()

    def start(self) -> None:
        """Start the receiver, sender and garbage-collector threads."""
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=loop, name=name, daemon=True)
            for name, loop in (
                ("ktp-receiver", self._receiver_loop),
                ("ktp-sender", self._sender_loop),
                ("ktp-gc", self._gc_loop),
            )
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Stop the background threads and wait for them to finish."""
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._threads = []