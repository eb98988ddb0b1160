"""Application-facing KTP sockets backed by a KTPService."""

from __future__ import annotations

import errno
import socket
from typing import Optional

from ktp.protocol import SOCK_KTP, NotBoundError


def _invalid(message: str) -> OSError:
    return OSError(errno.EINVAL, message)


def _canonical_ip(ip) -> str:
    try:
        return socket.inet_ntop(socket.AF_INET, socket.inet_pton(socket.AF_INET, ip))
    except (OSError, TypeError):
        raise _invalid(f"invalid IP address: {ip!r}") from None


class KTPSocket:
    """A reliable, message-oriented socket managed by a KTP service."""

    def __init__(self, service, index: int) -> None:
        self._service = service
        self._index: Optional[int] = index

    def __repr__(self) -> str:
        return f"KTPSocket(index={self._index})"

    @property
    def index(self) -> Optional[int]:
        """Position of the socket in the service's table, None once closed."""
        return self._index

    @property
    def closed(self) -> bool:
        """True after close() was called."""
        return self._index is None

    def _require_index(self) -> int:
        if self._index is None:
            raise _invalid("KTP socket is closed")
        return self._index

    def bind(self, src_ip, src_port, dest_ip, dest_port) -> None:
        """Bind to a local address and fix the peer this socket talks to."""
        index = self._require_index()
        self._service.bind(index, src_ip, src_port, dest_ip, dest_port)

    def sendto(self, data, address) -> int:
        """Queue one message for the bound peer; return its length.

        Raises NotBoundError when address is not the bound peer and
        NoSpaceError when the send buffer is full.
        """
        index = self._require_index()
        try:
            ip, port = address
        except (TypeError, ValueError):
            raise _invalid(f"invalid address: {address!r}") from None
        canonical = _canonical_ip(ip)
        service = self._service
        with service.lock:
            destination = service.destination(index)
            if destination is None or destination != (canonical, port):
                raise NotBoundError()
            return service.state(index).enqueue(data)

    def recvfrom(self, size):
        """Take the next in-order message, cut to size bytes.

        Returns (data, peer address). Raises NoMessageError when nothing
        has arrived yet.
        """
        index = self._require_index()
        service = self._service
        with service.lock:
            data = service.state(index).dequeue(size)
            destination = service.destination(index)
        if destination is None:
            destination = ("0.0.0.0", 0)
        return data, destination

    def close(self) -> None:
        """Release the socket back to the service."""
        index = self._require_index()
        self._index = None
        self._service.release(index)

    def __enter__(self) -> "KTPSocket":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._index is not None:
            self.close()


def ktp_socket(service, domain=socket.AF_INET, kind=SOCK_KTP, protocol=0) -> KTPSocket:
    """Create a KTP socket on service; only AF_INET with SOCK_KTP is accepted."""
    if domain != socket.AF_INET or kind != SOCK_KTP:
        raise _invalid("KTP sockets need AF_INET and SOCK_KTP")
    return KTPSocket(service, service.allocate())