import errno
import os
import random
import socket
import time

import pytest

from ktpsock.protocol import (
    BUFFER_SIZE,
    MAX_MSG_SIZE,
    MAX_SOCKETS,
    NoMessageError,
    NoSpaceError,
    NotBoundError,
)
from ktpsock.service import KTPService, main

LOOP = "127.0.0.1"


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        probe.bind((LOOP, 0))
        return probe.getsockname()[1]


@pytest.fixture
def idle():
    service = KTPService(autostart=False)
    yield service
    service.shutdown()


def _pair(service):
    a = service.create_socket(os.getpid())
    b = service.create_socket(os.getppid())
    pa, pb = _free_port(), _free_port()
    service.bind(os.getpid(), LOOP, pa, LOOP, pb)
    service.bind(os.getppid(), LOOP, pb, LOOP, pa)
    return a, b, pa, pb


def _exchange(service, messages, deadline=20.0):
    a, b, pa, pb = _pair(service)
    pending = list(messages)
    received = []
    sources = set()
    end = time.monotonic() + deadline
    while len(received) < len(messages) and time.monotonic() < end:
        if pending:
            try:
                service.sendto(a, pending[0], LOOP, pb)
                pending.pop(0)
            except NoSpaceError:
                pass
        got = False
        while True:
            try:
                data, source = service.recvfrom(b, MAX_MSG_SIZE)
            except NoMessageError:
                break
            received.append(data)
            sources.add(source)
            got = True
        if not got:
            time.sleep(0.01)
    return received, sources, pa


def test_create_socket_allocates_distinct_slots(idle):
    indices = [idle.create_socket(os.getpid()) for _ in range(MAX_SOCKETS)]
    assert sorted(indices) == list(range(MAX_SOCKETS))
    assert idle.table.get(indices[0]).pid == os.getpid()


def test_create_socket_fails_when_table_full(idle):
    for _ in range(MAX_SOCKETS):
        idle.create_socket(os.getpid())
    with pytest.raises(NoSpaceError):
        idle.create_socket(os.getpid())


def test_bind_without_socket_is_invalid(idle):
    with pytest.raises(OSError) as info:
        idle.bind(os.getpid(), LOOP, _free_port(), LOOP, _free_port())
    assert info.value.errno == errno.EINVAL


def test_bind_rejects_bad_address(idle):
    idle.create_socket(os.getpid())
    with pytest.raises(OSError) as info:
        idle.bind(os.getpid(), "not-an-ip", _free_port(), LOOP, _free_port())
    assert info.value.errno == errno.EINVAL


def test_bind_records_destination(idle):
    index = idle.create_socket(os.getpid())
    dest = _free_port()
    assert idle.bind(os.getpid(), LOOP, _free_port(), LOOP, dest) == index
    assert idle.table.get(index).matches_destination(LOOP, dest)


def test_sendto_wrong_destination(idle):
    a, _, _, pb = _pair(idle)
    with pytest.raises(NotBoundError):
        idle.sendto(a, b"data", LOOP, pb + 1 if pb < 65535 else pb - 1)


def test_sendto_fills_send_buffer(idle):
    a, _, _, pb = _pair(idle)
    sizes = [idle.sendto(a, b"x" * (n + 1), LOOP, pb) for n in range(BUFFER_SIZE)]
    assert sizes == list(range(1, BUFFER_SIZE + 1))
    with pytest.raises(NoSpaceError):
        idle.sendto(a, b"more", LOOP, pb)


def test_recvfrom_empty(idle):
    _, b, _, _ = _pair(idle)
    with pytest.raises(NoMessageError):
        idle.recvfrom(b, MAX_MSG_SIZE)


def test_close_frees_socket(idle):
    a, _, _, pb = _pair(idle)
    idle.close(a)
    with pytest.raises(OSError) as info:
        idle.sendto(a, b"data", LOOP, pb)
    assert info.value.errno == errno.EINVAL
    with pytest.raises(OSError):
        idle.close(a)
    assert idle.create_socket(os.getpid()) == a


def test_messages_delivered_in_order():
    messages = [f"message {n}".encode() for n in range(3 * BUFFER_SIZE)]
    with KTPService(drop_prob=0.0, timeout=0.2) as service:
        received, sources, pa = _exchange(service, messages)
    assert received == messages
    assert sources == {(LOOP, pa)}


def test_messages_survive_loss():
    messages = [bytes([65 + n]) * (n + 1) for n in range(BUFFER_SIZE - 2)]
    with KTPService(drop_prob=0.3, timeout=0.2, rng=random.Random(7)) as service:
        received, _, _ = _exchange(service, messages)
    assert received == messages


def test_recvfrom_truncates(idle):
    a, b, _, pb = _pair(idle)
    idle.table.get(b).on_data(0, b"abcdef")
    data, _ = idle.recvfrom(b, 3)
    assert data == b"abc"


def test_shutdown_closes_everything():
    service = KTPService(timeout=0.2)
    index = service.create_socket(os.getpid())
    sock = service.table.get(index).udp_sock
    service.shutdown()
    assert not service.engine.running
    assert sock.fileno() == -1
    with pytest.raises(OSError):
        service.table.get(index)


def test_main_rejects_bad_port():
    with pytest.raises(SystemExit) as info:
        main(["--port", "not-a-port"])
    assert info.value.code == 2