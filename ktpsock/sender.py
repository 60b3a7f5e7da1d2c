"""Send a file over a KTP socket, one message per chunk, ending with a marker."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from functools import partial
from typing import Any, Optional, Tuple

from .client import connect, k_socket
from .protocol import MAX_MSG_SIZE, NoSpaceError
from .service import DEFAULT_ADDRESS, DEFAULT_AUTHKEY

log = logging.getLogger(__name__)

EOF_MARKER = b"#"
"""One-byte message that tells the receiver the file is complete."""

DEFAULT_FILE = "file.txt"
"""File sent when none is named on the command line."""


def _send_message(
    sock: Any, data: bytes, destination: Tuple[str, int], wait: float
) -> int:
    while True:
        try:
            return sock.sendto(data, destination)
        except NoSpaceError:
            log.info("send buffer full, waiting for space")
            time.sleep(wait)


def send_file(
    sock: Any, path: str, destination: Tuple[str, int], wait: float = 1.0
) -> int:
    """Send the file at ``path`` to ``destination`` through ``sock``.

    The file goes out in messages of at most MAX_MSG_SIZE bytes, followed by
    the EOF marker.  While the send buffer is full the call sleeps ``wait``
    seconds between attempts.  Returns the number of data messages sent.
    """
    count = 0
    with open(path, "rb") as stream:
        for chunk in iter(partial(stream.read, MAX_MSG_SIZE), b""):
            sent = _send_message(sock, chunk, destination, wait)
            count += 1
            log.info("sent %d bytes in packet #%d", sent, count)
    _send_message(sock, EOF_MARKER, destination, wait)
    log.info("sent EOF marker after %d packets", count)
    return count


def main(argv: Optional[list] = None) -> int:
    """Send a file to a peer KTP socket."""
    parser = argparse.ArgumentParser(
        prog="ktpsock-send", description="Send a file over a KTP socket."
    )
    parser.add_argument("src_ip")
    parser.add_argument("src_port", type=int)
    parser.add_argument("dest_ip")
    parser.add_argument("dest_port", type=int)
    parser.add_argument("--file", default=DEFAULT_FILE)
    parser.add_argument("--linger", type=float, default=10.0,
                        help="seconds to wait for final acknowledgements")
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
        count = send_file(sock, args.file, (args.dest_ip, args.dest_port))
        log.info("file transfer complete, %d packets sent", count)
        time.sleep(args.linger)
        sock.close()
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0