import errno
import socket
import time

import pytest

from ktp.api import KTPSocket, ktp_socket
from ktp.protocol import (
    BUFFER_SIZE,
    MAX_SOCKETS,
    SOCK_KTP,
    NoMessageError,
    NoSpaceError,
    NotBoundError,
)
from ktp.service import KTPService


@pytest.fixture
def service():
    svc = KTPService(drop_prob=0.0)
    yield svc
    svc.stop()


def _free_ports(count):
    socks = []
    try:
        for _ in range(count):
            s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            s.bind(("127.0.0.1", 0))
            socks.append(s)
        return [s.getsockname()[1] for s in socks]
    finally:
        for s in socks:
            s.close()


def test_wrong_domain_rejected(service):
    with pytest.raises(OSError) as info:
        ktp_socket(service, socket.AF_INET6, SOCK_KTP, 0)
    assert info.value.errno == errno.EINVAL


def test_wrong_kind_rejected(service):
    with pytest.raises(OSError) as info:
        ktp_socket(service, socket.AF_INET, socket.SOCK_DGRAM, 0)
    assert info.value.errno == errno.EINVAL


def test_table_full_raises_no_space(service):
    socks = [ktp_socket(service) for _ in range(MAX_SOCKETS)]
    assert sorted(s.index for s in socks) == list(range(MAX_SOCKETS))
    with pytest.raises(NoSpaceError) as info:
        ktp_socket(service)
    assert info.value.errno == 201


def test_sendto_unbound_raises_not_bound(service):
    sock = ktp_socket(service)
    with pytest.raises(NotBoundError) as info:
        sock.sendto(b"x", ("127.0.0.1", 5076))
    assert info.value.errno == 200


def test_sendto_wrong_destination(service):
    src, dst = _free_ports(2)
    sock = ktp_socket(service)
    sock.bind("127.0.0.1", src, "127.0.0.1", dst)
    with pytest.raises(NotBoundError):
        sock.sendto(b"x", ("127.0.0.1", dst + 1))


def test_sendto_invalid_address(service):
    src, dst = _free_ports(2)
    sock = ktp_socket(service)
    sock.bind("127.0.0.1", src, "127.0.0.1", dst)
    with pytest.raises(OSError) as info:
        sock.sendto(b"x", ("not-an-ip", dst))
    assert info.value.errno == errno.EINVAL


def test_sendto_fills_buffer(service):
    src, dst = _free_ports(2)
    sock = ktp_socket(service)
    sock.bind("127.0.0.1", src, "127.0.0.1", dst)
    lengths = [sock.sendto(b"m" * (i + 1), ("127.0.0.1", dst)) for i in range(BUFFER_SIZE)]
    assert lengths == list(range(1, BUFFER_SIZE + 1))
    with pytest.raises(NoSpaceError):
        sock.sendto(b"overflow", ("127.0.0.1", dst))
    assert service.state(sock.index).free_slots == 0


def test_bind_invalid_ip(service):
    sock = ktp_socket(service)
    with pytest.raises(OSError) as info:
        sock.bind("999.1.1.1", 0, "127.0.0.1", 5076)
    assert info.value.errno == errno.EINVAL


def test_recvfrom_empty_raises(service):
    sock = ktp_socket(service)
    with pytest.raises(NoMessageError) as info:
        sock.recvfrom(512)
    assert info.value.errno == 202


def test_recvfrom_truncates_and_reports_peer(service):
    src, dst = _free_ports(2)
    sock = ktp_socket(service)
    sock.bind("127.0.0.1", src, "127.0.0.1", dst)
    service.state(sock.index).accept_data(0, b"abcdef")
    data, peer = sock.recvfrom(3)
    assert data == b"abc"
    assert peer == ("127.0.0.1", dst)
    with pytest.raises(NoMessageError):
        sock.recvfrom(3)


def test_close_then_use_is_invalid(service):
    sock = ktp_socket(service)
    sock.close()
    assert sock.closed
    with pytest.raises(OSError) as info:
        sock.recvfrom(10)
    assert info.value.errno == errno.EINVAL
    with pytest.raises(OSError) as info:
        sock.close()
    assert info.value.errno == errno.EINVAL


def test_context_manager_frees_slot(service):
    with ktp_socket(service) as sock:
        first = sock.index
        assert isinstance(sock, KTPSocket)
    assert sock.closed
    again = ktp_socket(service)
    assert again.index == first


def test_end_to_end_delivery(service):
    pa, pb = _free_ports(2)
    a = ktp_socket(service)
    b = ktp_socket(service)
    a.bind("127.0.0.1", pa, "127.0.0.1", pb)
    b.bind("127.0.0.1", pb, "127.0.0.1", pa)
    assert a.sendto(b"hello", ("127.0.0.1", pb)) == 5

    deadline = time.monotonic() + 5
    while True:
        service.send_once()
        service.receive_once(0.2)
        try:
            result = b.recvfrom(512)
            break
        except NoMessageError:
            if time.monotonic() > deadline:
                raise
    assert result == (b"hello", ("127.0.0.1", pa))

    deadline = time.monotonic() + 5
    while service.state(a.index).free_slots != BUFFER_SIZE:
        service.receive_once(0.2)
        assert time.monotonic() <= deadline
    assert service.state(a.index).in_flight() == []