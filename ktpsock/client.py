"""Client side of KTP: sockets that talk to a running KTP service."""

from __future__ import annotations

import errno
import os
import socket
from multiprocessing.managers import BaseManager, BaseProxy
from typing import Any, Optional, Tuple

from .protocol import (
    ENOMESSAGE,
    ENOSPACE,
    ENOTBOUND,
    MAX_MSG_SIZE,
    SOCK_KTP,
    NoMessageError,
    NoSpaceError,
    NotBoundError,
)
from .service import DEFAULT_ADDRESS, DEFAULT_AUTHKEY, SERVICE_TYPEID

_ERRORS = {
    ENOTBOUND: NotBoundError,
    ENOSPACE: NoSpaceError,
    ENOMESSAGE: NoMessageError,
}


def _unwrap(reply: Tuple[Any, ...]) -> Any:
    if reply[0] == "ok":
        return reply[1]
    _, code, message = reply
    if code in _ERRORS:
        raise _ERRORS[code](message)
    if code is None:
        raise OSError(message)
    raise OSError(code, message)


class _ServiceProxy(BaseProxy):
    """Proxy to a remote service that raises the errors the service raised."""

    _exposed_ = ("create_socket", "bind", "sendto", "recvfrom", "close")

    def create_socket(self, pid: int) -> int:
        return _unwrap(self._callmethod("create_socket", (pid,)))

    def bind(
        self, pid: int, src_ip: str, src_port: int, dest_ip: str, dest_port: int
    ) -> int:
        return _unwrap(
            self._callmethod("bind", (pid, src_ip, src_port, dest_ip, dest_port))
        )

    def sendto(
        self, index: int, payload: bytes, dest_ip: str, dest_port: int
    ) -> int:
        return _unwrap(
            self._callmethod("sendto", (index, bytes(payload), dest_ip, dest_port))
        )

    def recvfrom(
        self, index: int, size: int = MAX_MSG_SIZE
    ) -> Tuple[bytes, Tuple[str, int]]:
        data, address = _unwrap(self._callmethod("recvfrom", (index, size)))
        return data, tuple(address)

    def close(self, index: int) -> None:
        _unwrap(self._callmethod("close", (index,)))


class _ClientManager(BaseManager):
    pass


_ClientManager.register(SERVICE_TYPEID, proxytype=_ServiceProxy)


def connect(
    address: Tuple[str, int] = DEFAULT_ADDRESS, authkey: bytes = DEFAULT_AUTHKEY
) -> _ServiceProxy:
    """Connect to the KTP service at ``address`` and return a handle to it."""
    manager = _ClientManager(address=address, authkey=authkey)
    try:
        manager.connect()
    except ConnectionError as exc:
        raise ConnectionError(
            f"KTP service not running at {address[0]}:{address[1]}"
        ) from exc
    return getattr(manager, SERVICE_TYPEID)()


class KTPSocket:
    """A KTP socket held by this process."""

    def __init__(self, service: Any, index: int, pid: int) -> None:
        self.service = service
        self.index = index
        self.pid = pid
        self.closed = False

    def __enter__(self) -> "KTPSocket":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if not self.closed:
            self.close()

    def __repr__(self) -> str:
        return f"KTPSocket(index={self.index}, pid={self.pid})"

    def bind(
        self, src_ip: str, src_port: int, dest_ip: str, dest_port: int
    ) -> None:
        """Bind to ``(src_ip, src_port)`` and fix the peer to send to."""
        self.service.bind(self.pid, src_ip, src_port, dest_ip, dest_port)

    def sendto(self, data: bytes, address: Tuple[str, int]) -> int:
        """Queue ``data`` for the bound peer ``address``; return its length."""
        ip, port = address
        return self.service.sendto(self.index, data, ip, port)

    def recvfrom(
        self, size: int = MAX_MSG_SIZE
    ) -> Tuple[bytes, Tuple[str, int]]:
        """Return the next message and the peer's address."""
        return self.service.recvfrom(self.index, size)

    def close(self) -> None:
        """Release the socket."""
        self.service.close(self.index)
        self.closed = True


def k_socket(
    domain: int = socket.AF_INET,
    type: int = SOCK_KTP,
    protocol: int = 0,
    service: Optional[Any] = None,
) -> KTPSocket:
    """Create a KTP socket through ``service``, or the default service."""
    if domain != socket.AF_INET or type != SOCK_KTP:
        raise OSError(errno.EINVAL, "KTP sockets need AF_INET and SOCK_KTP")
    if service is None:
        service = connect()
    pid = os.getpid()
    index = service.create_socket(pid)
    return KTPSocket(service, index, pid)