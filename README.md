# ktp

`ktp` is a reliable, flow-controlled message transport that runs over UDP.
Every socket has a send window and a receive window of ten messages, with
8-bit sequence numbers. Messages are acknowledged cumulatively; when a sent
message goes unacknowledged for the timeout, the whole send window is
retransmitted. The receiver reports how much buffer space it has left, and
sends a window update when a full buffer frees up again. A drop probability
discards incoming datagrams on purpose, so packet loss can be simulated and
the protocol watched as it recovers.

## Installation

```
pip install .
```

The package uses only the Python standard library.

## Transferring a file

Two commands come with the package. Start the receiver first:

```
ktp-recv 127.0.0.1 5076 127.0.0.1 8081
```

It binds to `127.0.0.1:5076`, takes `127.0.0.1:8081` as its peer, and writes
the messages it receives to `received_file_5076.txt` in the current
directory until the end-of-file marker arrives.

Then start the sender:

```
ktp-send 127.0.0.1 8081 127.0.0.1 5076
```

It reads `file.txt` from the current directory, queues it in messages of at
most 512 bytes, and finishes with a one-byte `#` end-of-file marker. When the
send buffer is full it waits a second and tries again. After the marker it
waits ten seconds for the last acknowledgements before closing. For a second
transfer alongside the first, use another pair of ports, for example `5077`
and `8082`.

Both commands take exactly four arguments,
`<src_ip> <src_port> <dest_ip> <dest_port>`, and print a usage line and exit
with status 1 otherwise.

## Using the library

`ktp.service.KTPService(timeout=5, drop_prob=0.05, rng=None)` holds a table of
up to ten sockets and runs three background threads: one receives datagrams,
stores data and applies acknowledgements; one sends new messages and
retransmits after a timeout; one frees sockets whose owning process id no
longer exists. It is a context manager that starts the threads on entry and
stops them and closes every socket on exit. The single steps are also
available as `receive_once`, `send_once` and `collect_garbage`.

`ktp.api.ktp_socket(service, domain, kind, protocol)` opens a socket on a
service and returns a `ktp.api.KTPSocket`. Only `socket.AF_INET` with
`ktp.protocol.SOCK_KTP` (3) is accepted:

```python
import socket

from ktp.api import ktp_socket
from ktp.protocol import SOCK_KTP
from ktp.service import KTPService

with KTPService() as service:
    with ktp_socket(service, socket.AF_INET, SOCK_KTP, 0) as sock:
        sock.bind("127.0.0.1", 8081, "127.0.0.1", 5076)
        sock.sendto(b"hello", ("127.0.0.1", 5076))
```

`sendto` only places the message in the send buffer and returns its length;
the service transmits it once it falls inside the send window. `recvfrom(size)`
returns the next in-order message, cut to `size` bytes, together with the
bound peer's address. `close()` releases the socket back to the service.

The file transfers are also available as functions:
`ktp.sender.send_file(sock, path, address, poll_interval=1.0)` returns the
number of data messages sent, and
`ktp.receiver.receive_file(sock, path, poll_interval=0.1)` returns the total
bytes written and the number of data messages.

The window logic itself lives in `ktp.window.SocketState`, which can be used
without any network.

### Errors

Protocol errors derive from `ktp.protocol.KTPError`, a subclass of `OSError`:

- `NotBoundError` (errno 200): the destination does not match the peer the socket is bound to.
- `NoSpaceError` (errno 201): no free socket, or the send buffer is full. Wait and try again.
- `NoMessageError` (errno 202): nothing has arrived yet. Poll again later.

Using a closed socket, an unknown socket index, a bad domain or socket type,
or an invalid IP address raises `OSError` with `errno.EINVAL`.

## Wire format

Every message header is ASCII text:

- Data: `1`, then the sequence number as 8 binary digits, then the payload length as 10 binary digits, then the payload.
- Acknowledgement: `0`, then the last in-order sequence number as 8 binary digits, then the free receive window as 4 binary digits.

`ktp.protocol` provides `encode_data`, `encode_ack` and `decode` for building
and parsing these messages. `decode` returns `DataMessage` and `AckMessage`
values and raises `ValueError` on malformed input.

## Defaults

| Setting                | Value         |
|------------------------|---------------|
| Retransmission timeout | 5 seconds     |
| Drop probability       | 0.05          |
| Sockets per service    | 10            |
| Largest message        | 512 bytes     |
| Sequence numbers       | 256 (8 bits)  |
| Window / buffer size   | 10 messages   |

## What it does not do

A `KTPService` lives inside one Python process, and its sockets can only be
used from that process. There is no standalone service that several programs
share: each of the two commands starts its own service for the length of its
transfer.

## Tests

```
pip install .[test]
pytest
```