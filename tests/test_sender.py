import os
import socket

import pytest

from ktpsock.client import KTPSocket
from ktpsock.protocol import MAX_MSG_SIZE, NoSpaceError, NotBoundError
from ktpsock.sender import EOF_MARKER, main, send_file
from ktpsock.service import KTPService

DEST = ("127.0.0.1", 5076)


class FakeSocket:
    def __init__(self, full_times=0, error=None):
        self.sent = []
        self.attempts = 0
        self.full_times = full_times
        self.error = error

    def sendto(self, data, address):
        self.attempts += 1
        if self.error is not None:
            raise self.error
        if self.full_times > 0:
            self.full_times -= 1
            raise NoSpaceError()
        self.sent.append((bytes(data), address))
        return len(data)


def _write(tmp_path, content):
    path = tmp_path / "file.txt"
    path.write_bytes(content)
    return str(path)


def test_file_round_trips_in_chunks(tmp_path):
    content = os.urandom(3 * MAX_MSG_SIZE + 17)
    fake = FakeSocket()
    count = send_file(fake, _write(tmp_path, content), DEST, wait=0)
    payloads = [data for data, _ in fake.sent]
    assert payloads[-1] == EOF_MARKER
    assert b"".join(payloads[:-1]) == content
    assert count == len(payloads) - 1
    assert all(len(p) <= MAX_MSG_SIZE for p in payloads)
    assert all(addr == DEST for _, addr in fake.sent)


def test_empty_file_sends_only_marker(tmp_path):
    fake = FakeSocket()
    assert send_file(fake, _write(tmp_path, b""), DEST, wait=0) == 0
    assert fake.sent == [(b"#", DEST)]


def test_retries_while_buffer_full(tmp_path):
    content = b"hello world"
    fake = FakeSocket(full_times=2)
    count = send_file(fake, _write(tmp_path, content), DEST, wait=0)
    assert [d for d, _ in fake.sent] == [content, EOF_MARKER]
    assert fake.attempts == len(fake.sent) + 2
    assert count == 1


def test_other_errors_propagate(tmp_path):
    fake = FakeSocket(error=NotBoundError())
    with pytest.raises(NotBoundError):
        send_file(fake, _write(tmp_path, b"data"), DEST, wait=0)


def test_missing_file_raises_and_sends_nothing(tmp_path):
    fake = FakeSocket()
    with pytest.raises(FileNotFoundError):
        send_file(fake, str(tmp_path / "absent.txt"), DEST, wait=0)
    assert fake.sent == []


def test_queues_into_service_send_buffer(tmp_path):
    content = os.urandom(2 * MAX_MSG_SIZE + 5)
    service = KTPService(autostart=False)
    try:
        pid = os.getpid()
        sock = KTPSocket(service, service.create_socket(pid), pid)
        sock.bind("127.0.0.1", 0, *DEST)
        count = send_file(sock, _write(tmp_path, content), DEST, wait=0)
        with service.table.lock:
            queued = service.table.get(sock.index).unacked_packets()
        payloads = [payload for _, payload in queued]
        assert payloads[-1] == EOF_MARKER
        assert b"".join(payloads[:-1]) == content
        assert len(payloads) == count + 1
        assert [seq for seq, _ in queued] == list(range(count + 1))
    finally:
        service.shutdown()


def test_main_requires_four_arguments():
    with pytest.raises(SystemExit):
        main(["127.0.0.1", "8081"])


def test_main_reports_missing_service():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    argv = ["127.0.0.1", "8081", "127.0.0.1", "5076",
            "--service-port", str(port), "--linger", "0"]
    assert main(argv) == 1