# ktpsock

`ktpsock` provides KTP, a reliable message transport that runs on top of UDP.
Every message carries an 8-bit sequence number. A sender keeps a sliding
window of unacknowledged messages, and a receiver advertises how much buffer
space it has left. When a message in the window goes unacknowledged for the
timeout period, the whole window is sent again. To simulate a lossy network,
the service discards a share of the datagrams it receives (5% by default).

## How it fits together

- **`ktpsock-service`** runs the transport service. It owns the socket table
  and the UDP sockets, and runs three background threads: a receiver that
  stores data and answers with acknowledgements, a sender that transmits and
  retransmits, and a collector that frees sockets whose owning process no
  longer exists. Start it first and leave it running.
- **Client programs** reach the service through `ktpsock.client`, which talks
  to it over a `multiprocessing` manager connection (by default
  `127.0.0.1:50000`, authentication key `secret`). They create a KTP socket,
  bind it to a local address and to one peer, then exchange messages with
  `sendto` and `recvfrom`. The messages themselves travel between the
  services' UDP sockets.
- **`ktpsock-send`** and **`ktpsock-receive`** are ready-made client programs
  that move a file from one address and port to another.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Transferring a file

Start the service:

```
ktpsock-service
```

It accepts `--host`, `--port` and `--authkey` to change where it listens and
the key clients must present. It stops on Ctrl+C or SIGTERM and closes every
socket still open.

Start the receiver next. The arguments are its own address and port, then the
sender's address and port:

```
ktpsock-receive 127.0.0.1 5076 127.0.0.1 8081
```

Then start the sender. The arguments are its own address and port, then the
receiver's address and port. It sends `file.txt` from the current directory
unless `--file` names another:

```
ktpsock-send 127.0.0.1 8081 127.0.0.1 5076
```

The file goes out in messages of at most 512 bytes, followed by a one-byte
`#` end-of-file marker. When the send buffer is full the sender waits a
second and tries again. After the marker is queued it waits `--linger`
seconds (10 by default) for the last acknowledgements, then closes its socket.

The receiver writes what arrives to `received_file_<port>.txt`, where `<port>`
is its own port (`received_file_5076.txt` in the example above), and stops
when the end-of-file marker arrives. Both programs take `--service-host`,
`--service-port` and `--authkey` to reach a service elsewhere. Several pairs
can run at the same time on different ports:

```
ktpsock-receive 127.0.0.1 5077 127.0.0.1 8082
ktpsock-send 127.0.0.1 8082 127.0.0.1 5077
```

## Using the library

`ktpsock.client.connect(address, authkey)` connects to a running service and
returns a handle to it. `k_socket(domain, type, protocol, service)` creates a
`KTPSocket` through that handle (or through a fresh `connect()` when none is
given); `domain` must be `socket.AF_INET` and `type` must be
`ktpsock.protocol.SOCK_KTP`. A socket offers:

- `bind(src_ip, src_port, dest_ip, dest_port)` binds the UDP socket to the
  local address and fixes the one peer it talks to. The service binds the
  first socket owned by the calling process, so use one socket per process.
- `sendto(data, address)` queues one message of up to 512 bytes; `address`
  must be the bound peer. It returns the number of bytes queued.
- `recvfrom(size)` takes the next in-order message, cut to `size` bytes, and
  returns it with the bound peer's address.
- `close()` releases the socket. Sockets are also context managers.

`ktpsock.service.KTPService` is the service itself and can be used in one
process without a connection; `ktpsock.service.serve(address, authkey)` makes
one reachable by clients. The sending and receiving logic lives in
`ktpsock.engine.Engine` and the per-socket windows and buffers in
`ktpsock.table`. The helpers `ktpsock.sender.send_file` and
`ktpsock.receiver.receive_file` do the work of the two file programs.

The service keeps at most 10 sockets. Each socket buffers 10 messages in each
direction, and the retransmission timeout is 5 seconds.

Failures are raised as exceptions from `ktpsock.protocol`. All of them derive
from `KTPError`, itself an `OSError`:

| Exception        | Raised when                                                 |
|------------------|-------------------------------------------------------------|
| `NotBoundError`  | `sendto` names an address other than the bound peer         |
| `NoSpaceError`   | no free socket is left, or the send buffer is full          |
| `NoMessageError` | `recvfrom` finds no message waiting                         |

Using a socket index that is not allocated, or binding from a process that
owns no socket, raises `OSError` with `errno.EINVAL`.

`NoSpaceError` and `NoMessageError` only mean "not now". Wait briefly and try
again, as `ktpsock-send` and `ktpsock-receive` do.

## Wire format

Each datagram starts with a one-character type: `1` for data, `0` for an
acknowledgement. A data packet follows this with the sequence number as 8
ASCII binary digits, the payload length as 10 binary digits, and the payload.
An acknowledgement follows the type with the sequence number as 8 binary
digits and the free receive window as 4 binary digits, 13 bytes in all.
`ktpsock.protocol` builds packets with `encode_data` and `encode_ack` and
reads them into a `Packet` with `decode_packet`, which raises `ValueError` on
a malformed datagram.

## What it does not do

KTP sockets have no connection set-up or teardown on the wire: each side
simply starts with sequence number 0. Closing a socket does not wait for its
queued messages to be acknowledged, which is why `ktpsock-send` lingers
before closing.