"""Receive a file over a KTP socket until the EOF marker arrives."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Any, Optional, Tuple

from .client import connect, k_socket
from .protocol import MAX_MSG_SIZE, NoMessageError
from .sender import EOF_MARKER
from .service import DEFAULT_ADDRESS, DEFAULT_AUTHKEY

log = logging.getLogger(__name__)


def _next_message(sock: Any, poll_interval: float) -> bytes:
    while True:
        try:
            data, _ = sock.recvfrom(MAX_MSG_SIZE)
            return data
        except NoMessageError:
            time.sleep(poll_interval)


def receive_file(
    sock: Any, path: str, poll_interval: float = 0.1
) -> Tuple[int, int]:
    """Write messages from ``sock`` to ``path`` until the EOF marker.

    Polls every ``poll_interval`` seconds while no message is waiting.
    Returns the number of bytes written and of data messages received.
    """
    total = packets = 0
    with open(path, "wb") as out:
        while True:
            data = _next_message(sock, poll_interval)
            if data == EOF_MARKER:
                log.info("received EOF marker")
                break
            out.write(data)
            total += len(data)
            packets += 1
            log.info("wrote %d bytes, %d in total", len(data), total)
    return total, packets


def main(argv: Optional[list] = None) -> int:
    """Receive a file from a peer KTP socket."""
    parser = argparse.ArgumentParser(
        prog="ktpsock-receive", description="Receive a file over a KTP socket."
    )
    parser.add_argument("src_ip")
    parser.add_argument("src_port", type=int)
    parser.add_argument("dest_ip")
    parser.add_argument("dest_port", type=int)
    parser.add_argument("--service-host", default=DEFAULT_ADDRESS[0])
    parser.add_argument("--service-port", type=int, default=DEFAULT_ADDRESS[1])
    parser.add_argument("--authkey", default=DEFAULT_AUTHKEY.decode())
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s",
                        stream=sys.stdout)
    try:
        service = connect((args.service_host, args.service_port),
                          args.authkey.encode())
        sock = k_socket(service=service)
        log.info("socket created with ID %d", sock.index)
        sock.bind(args.src_ip, args.src_port, args.dest_ip, args.dest_port)
        filename = f"received_file_{args.src_port}.txt"
        total, packets = receive_file(sock, filename)
        log.info("received a total of %d bytes in %d packets", total, packets)
        sock.close()
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0