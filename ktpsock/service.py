"""The KTP service: the socket table, the protocol engine and its front door.

One service process owns every KTP socket on the host.  Programs ask it to
create, bind, use and close sockets, either directly through a
:class:`KTPService` object or from other processes through the manager
server started by :func:`serve`.
"""

from __future__ import annotations

import argparse
import errno
import logging
import random
import signal
import socket
import sys
from multiprocessing.managers import BaseManager
from typing import Any, Callable, Optional, Tuple

from .engine import Engine
from .protocol import DROP_PROB, MAX_MSG_SIZE, TIMEOUT, NotBoundError
from .table import SocketTable

log = logging.getLogger(__name__)

DEFAULT_ADDRESS: Tuple[str, int] = ("127.0.0.1", 50000)
"""Where :func:`serve` listens unless told otherwise."""

DEFAULT_AUTHKEY = b"secret"
"""Key shared by the service and its clients unless told otherwise."""

SERVICE_TYPEID = "service"
"""Name under which the manager server hands out the service."""


class KTPService:
    """Owns the KTP socket table and runs the engine that serves it."""

    def __init__(
        self,
        *,
        drop_prob: float = DROP_PROB,
        timeout: float = TIMEOUT,
        rng: Optional[random.Random] = None,
        autostart: bool = True,
    ) -> None:
        self.table = SocketTable()
        self.engine = Engine(
            self.table, drop_prob=drop_prob, timeout=timeout, rng=rng
        )
        if autostart:
            self.engine.start()

    def __enter__(self) -> "KTPService":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    def create_socket(self, pid: int) -> int:
        """Allocate a KTP socket for process ``pid``; return its index."""
        index = self.table.allocate(pid)
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError:
            self.table.release(index)
            raise
        with self.table.lock:
            self.table.get(index).udp_sock = sock
        log.info("created KTP socket %d for process %d", index, pid)
        return index

    def bind(
        self,
        pid: int,
        src_ip: str,
        src_port: int,
        dest_ip: str,
        dest_port: int,
    ) -> int:
        """Bind the socket of process ``pid`` and fix its destination.

        Returns the index of the socket that was bound.
        """
        with self.table.lock:
            index = self.table.find_by_pid(pid)
            if index is None:
                raise OSError(errno.EINVAL, f"process {pid} has no KTP socket")
            sock = self.table.get(index).udp_sock
        try:
            socket.inet_pton(socket.AF_INET, src_ip)
        except OSError:
            raise OSError(errno.EINVAL, f"invalid IP address {src_ip!r}") from None
        sock.bind((src_ip, int(src_port)))
        with self.table.lock:
            state = self.table.get(index)
            state.ip = dest_ip
            state.port = int(dest_port)
        log.info(
            "bound KTP socket %d to %s:%s, destination %s:%s",
            index, src_ip, src_port, dest_ip, dest_port,
        )
        return index

    def sendto(
        self, index: int, payload: bytes, dest_ip: str, dest_port: int
    ) -> int:
        """Queue ``payload`` for sending; return the number of bytes queued."""
        with self.table.lock:
            state = self.table.get(index)
            if not state.matches_destination(dest_ip, int(dest_port)):
                raise NotBoundError()
            return state.queue(payload)

    def recvfrom(
        self, index: int, size: int = MAX_MSG_SIZE
    ) -> Tuple[bytes, Tuple[str, int]]:
        """Take the next in-order message and the address it came from."""
        with self.table.lock:
            state = self.table.get(index)
            data = state.take(size)
            return data, (state.ip, state.port)

    def close(self, index: int) -> None:
        """Free KTP socket ``index`` and close its UDP socket."""
        with self.table.lock:
            state = self.table.release(index)
            sock, state.udp_sock = state.udp_sock, None
        if sock is not None:
            sock.close()
        log.info("closed KTP socket %d", index)

    def shutdown(self) -> None:
        """Stop the engine and close every socket still open."""
        self.engine.stop()
        with self.table.lock:
            for index, _ in list(self.table.active()):
                self.close(index)


def _call(func: Callable[..., Any], *args: Any) -> Tuple[Any, ...]:
    try:
        return ("ok", func(*args))
    except OSError as exc:
        return ("error", exc.errno, exc.strerror or str(exc))


class _Exported:
    """What remote clients see: results and OS errors as plain tuples."""

    def __init__(self, service: KTPService) -> None:
        self._service = service

    def create_socket(self, pid: int) -> Tuple[Any, ...]:
        return _call(self._service.create_socket, pid)

    def bind(
        self, pid: int, src_ip: str, src_port: int, dest_ip: str, dest_port: int
    ) -> Tuple[Any, ...]:
        return _call(
            self._service.bind, pid, src_ip, src_port, dest_ip, dest_port
        )

    def sendto(
        self, index: int, payload: bytes, dest_ip: str, dest_port: int
    ) -> Tuple[Any, ...]:
        return _call(self._service.sendto, index, payload, dest_ip, dest_port)

    def recvfrom(self, index: int, size: int) -> Tuple[Any, ...]:
        return _call(self._service.recvfrom, index, size)

    def close(self, index: int) -> Tuple[Any, ...]:
        return _call(self._service.close, index)


def serve(
    address: Tuple[str, int] = DEFAULT_ADDRESS, authkey: bytes = DEFAULT_AUTHKEY
) -> None:
    """Run a KTP service reachable at ``address`` until interrupted."""
    exported: Optional[_Exported] = None

    class _Manager(BaseManager):
        pass

    _Manager.register(SERVICE_TYPEID, callable=lambda: exported)
    server = _Manager(address=address, authkey=authkey).get_server()

    service = KTPService()
    exported = _Exported(service)
    log.info("KTP service listening on %s:%s", *server.address)
    try:
        server.serve_forever()
    finally:
        service.shutdown()
        log.info("KTP service stopped")


def _terminate(signum: int, frame: Any) -> None:
    raise SystemExit(0)


def main(argv: Optional[list] = None) -> None:
    """Start the KTP service from the command line."""
    parser = argparse.ArgumentParser(
        prog="ktpsock-service",
        description="Run the KTP reliable datagram service.",
    )
    parser.add_argument("--host", default=DEFAULT_ADDRESS[0])
    parser.add_argument("--port", type=int, default=DEFAULT_ADDRESS[1])
    parser.add_argument("--authkey", default=DEFAULT_AUTHKEY.decode())
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    signal.signal(signal.SIGTERM, _terminate)
    serve((args.host, args.port), args.authkey.encode())