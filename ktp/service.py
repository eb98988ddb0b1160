"""The KTP service: owns the UDP sockets and runs the protocol threads."""

from __future__ import annotations

import errno
import logging
import os
import random
import select
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from ktp.protocol import (
    DROP_PROB,
    MAX_MSG_SIZE,
    MAX_SOCKETS,
    TIMEOUT,
    AckMessage,
    DataMessage,
    NoSpaceError,
    decode,
    drop_message,
    encode_ack,
    encode_data,
)
from ktp.window import SocketState

log = logging.getLogger(__name__)

_RECV_SIZE = MAX_MSG_SIZE + 20


@dataclass
class _Slot:
    owner: int
    sock: socket.socket
    state: SocketState = field(default_factory=SocketState)
    destination: Optional[tuple[str, int]] = None


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class KTPService:
    """Table of KTP sockets plus the receiver, sender and collector threads.

    The receiver thread reads datagrams, stores data and applies
    acknowledgements; the sender thread transmits new messages and
    retransmits the window after a timeout; the collector frees sockets
    whose owning process has gone away.
    """

    def __init__(self, timeout=TIMEOUT, drop_prob=DROP_PROB, rng=None) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout
        self.drop_prob = drop_prob
        self._rng = rng if rng is not None else random.Random()
        self.lock = threading.RLock()
        self._slots: list[Optional[_Slot]] = [None] * MAX_SOCKETS
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # ---- lifecycle ----------------------------------------------------

    def start(self) -> "KTPService":
        """Start the receiver, sender and garbage-collector threads."""
        if self._threads:
            raise RuntimeError("service already started")
        self._stop.clear()
        for name, target in (
            ("ktp-receiver", self._receiver_loop),
            ("ktp-sender", self._sender_loop),
            ("ktp-gc", self._gc_loop),
        ):
            thread = threading.Thread(target=target, name=name, daemon=True)
            self._threads.append(thread)
            thread.start()
        log.info("KTP service started")
        return self

    def stop(self) -> None:
        """Stop the threads and close every open socket."""
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        with self.lock:
            for index, slot in enumerate(self._slots):
                if slot is not None:
                    slot.sock.close()
                    self._slots[index] = None
        log.info("KTP service stopped")

    def __enter__(self) -> "KTPService":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _receiver_loop(self) -> None:
        while not self._stop.is_set():
            self.receive_once(self.timeout / 2)

    def _sender_loop(self) -> None:
        while not self._stop.wait(self.timeout / 2):
            self.send_once()

    def _gc_loop(self) -> None:
        while not self._stop.wait(self.timeout):
            self.collect_garbage()

    # ---- socket table -------------------------------------------------

    def _slot(self, index: int) -> _Slot:
        slot = self._slots[index] if 0 <= index < MAX_SOCKETS else None
        if slot is None:
            raise OSError(errno.EINVAL, f"no KTP socket with index {index}")
        return slot

    def allocate(self, owner=None) -> int:
        """Reserve a free socket for owner (a process id); return its index."""
        pid = os.getpid() if owner is None else owner
        if not isinstance(pid, int) or pid <= 0:
            raise ValueError(f"owner must be a positive process id, not {pid!r}")
        with self.lock:
            index = next(
                (i for i, slot in enumerate(self._slots) if slot is None), None
            )
            if index is None:
                raise NoSpaceError()
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.setblocking(False)
            self._slots[index] = _Slot(pid, sock)
        log.info("created UDP socket for KTP socket %d", index)
        return index

    def bind(self, index, src_ip, src_port, dest_ip, dest_port) -> None:
        """Bind the socket to a local address and record its peer."""
        try:
            socket.inet_pton(socket.AF_INET, src_ip)
        except OSError:
            raise OSError(errno.EINVAL, f"invalid IP address: {src_ip}") from None
        with self.lock:
            slot = self._slot(index)
            slot.sock.bind((src_ip, src_port))
            slot.destination = (dest_ip, dest_port)
        log.info("bound KTP socket %d to %s:%d", index, src_ip, src_port)

    def release(self, index) -> None:
        """Free a socket and close its UDP socket."""
        with self.lock:
            slot = self._slot(index)
            self._slots[index] = None
            slot.sock.close()

    def state(self, index) -> SocketState:
        """Window state of an allocated socket."""
        with self.lock:
            return self._slot(index).state

    def destination(self, index) -> Optional[tuple[str, int]]:
        """Peer address recorded by bind, or None before binding."""
        with self.lock:
            return self._slot(index).destination

    # ---- protocol work ------------------------------------------------

    def _send(self, slot: _Slot, datagram: bytes, address) -> bool:
        try:
            slot.sock.sendto(datagram, address)
        except OSError as err:
            log.warning("sendto %s failed: %s", address, err)
            return False
        return True

    def receive_once(self, wait=None) -> int:
        """Wait up to wait seconds for datagrams and process them.

        Also sends a window update for each socket whose receive buffer has
        reopened. Returns the number of datagrams processed (drops excluded).
        """
        if wait is None:
            wait = self.timeout / 2
        with self.lock:
            watched = {
                slot.sock: index
                for index, slot in enumerate(self._slots)
                if slot is not None
            }
        ready: list[socket.socket] = []
        if watched:
            try:
                ready, _, _ = select.select(list(watched), [], [], wait)
            except (OSError, ValueError):
                ready = []
        else:
            self._stop.wait(wait)

        handled = 0
        with self.lock:
            for index, slot in enumerate(self._slots):
                if slot is None or slot.destination is None:
                    continue
                update = slot.state.take_window_update()
                if update is not None:
                    log.info(
                        "window update for socket %d: ack=%d rwnd=%d",
                        index, update.seq, update.window,
                    )
                    self._send(
                        slot, encode_ack(update.seq, update.window), slot.destination
                    )

            for sock in ready:
                index = watched[sock]
                slot = self._slots[index]
                if slot is None or slot.sock is not sock:
                    continue
                try:
                    datagram, source = sock.recvfrom(_RECV_SIZE)
                except (BlockingIOError, InterruptedError):
                    continue
                except OSError as err:
                    log.warning("recvfrom failed on socket %d: %s", index, err)
                    continue
                if drop_message(self.drop_prob, self._rng):
                    log.info("dropped message for socket %d", index)
                    continue
                try:
                    message = decode(datagram)
                except ValueError as err:
                    log.warning("ignoring datagram on socket %d: %s", index, err)
                    continue
                if isinstance(message, DataMessage):
                    ack: AckMessage = slot.state.accept_data(
                        message.seq, message.payload
                    )
                    self._send(slot, encode_ack(ack.seq, ack.window), source)
                else:
                    slot.state.accept_ack(message.seq, message.window)
                handled += 1
        return handled

    def send_once(self, now=None) -> int:
        """Send new messages, or retransmit the window after a timeout.

        Returns the number of datagrams sent.
        """
        if now is None:
            now = time.time()
        sent = 0
        with self.lock:
            for index, slot in enumerate(self._slots):
                if slot is None or slot.destination is None:
                    continue
                state = slot.state
                if state.timed_out(now, self.timeout):
                    log.info("timeout on socket %d, retransmitting", index)
                    batch = state.in_flight()
                else:
                    batch = state.unsent()
                for seq, payload in batch:
                    if self._send(slot, encode_data(seq, payload), slot.destination):
                        state.mark_sent(seq, now)
                        sent += 1
        return sent

    def collect_garbage(self) -> list[int]:
        """Free sockets whose owning process no longer exists."""
        freed = []
        with self.lock:
            for index, slot in enumerate(self._slots):
                if slot is not None and not _process_alive(slot.owner):
                    log.info(
                        "process %d not found, freeing socket %d", slot.owner, index
                    )
                    self._slots[index] = None
                    slot.sock.close()
                    freed.append(index)
        return freed