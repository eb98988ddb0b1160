"""Per-socket send and receive windows with their message buffers."""

from __future__ import annotations

from typing import Optional

from ktp.protocol import (
    BUFFER_SIZE,
    MAX_MSG_SIZE,
    MAX_SEQ_NUM,
    AckMessage,
    NoMessageError,
    NoSpaceError,
)


class SocketState:
    """Sliding-window state of one KTP socket.

    The send side maps sequence numbers to send-buffer slots and remembers
    when each sequence number was last transmitted. The receive side maps
    the sequence numbers it is ready to accept to receive-buffer slots and
    delivers messages to the application in order.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Return both windows and both buffers to their initial state."""
        self.swnd_slots: list[Optional[int]] = [None] * MAX_SEQ_NUM
        self.swnd_start = 0
        self.swnd_size = BUFFER_SIZE
        self.timestamps: list[Optional[float]] = [None] * MAX_SEQ_NUM
        self.send_buffer: list[bytes] = [b""] * BUFFER_SIZE
        self.free_slots = BUFFER_SIZE

        self.rwnd_slots: list[Optional[int]] = [
            seq if seq < BUFFER_SIZE else None for seq in range(MAX_SEQ_NUM)
        ]
        self.rwnd_start = 0
        self.rwnd_size = BUFFER_SIZE
        self.recv_buffer: list[Optional[bytes]] = [None] * BUFFER_SIZE
        self.recv_base = 0
        self.buffer_full = False

    # ---- sending side -------------------------------------------------

    def _free_buffer_slot(self) -> Optional[int]:
        used = {slot for slot in self.swnd_slots if slot is not None}
        return next((i for i in range(BUFFER_SIZE) if i not in used), None)

    def enqueue(self, data: bytes) -> int:
        """Place a message in the send buffer; return its length."""
        data = bytes(data)
        if len(data) > MAX_MSG_SIZE:
            raise ValueError(
                f"message of {len(data)} bytes exceeds {MAX_MSG_SIZE} bytes"
            )
        if self.free_slots <= 0:
            raise NoSpaceError()

        seq = self.swnd_start
        checked = 0
        while self.swnd_slots[seq] is not None:
            seq = (seq + 1) % MAX_SEQ_NUM
            checked += 1
            if checked >= MAX_SEQ_NUM:
                raise NoSpaceError()

        slot = self._free_buffer_slot()
        if slot is None:
            raise NoSpaceError()

        self.swnd_slots[seq] = slot
        self.send_buffer[slot] = data
        self.timestamps[seq] = None
        self.free_slots -= 1
        return len(data)

    def _window_seqs(self):
        end = (self.swnd_start + self.swnd_size) % MAX_SEQ_NUM
        seq = self.swnd_start
        while seq != end:
            yield seq
            seq = (seq + 1) % MAX_SEQ_NUM

    def in_flight(self) -> list[tuple[int, bytes]]:
        """Messages inside the send window, as (sequence, payload) pairs."""
        return [
            (seq, self.send_buffer[slot])
            for seq in self._window_seqs()
            if (slot := self.swnd_slots[seq]) is not None
        ]

    def unsent(self) -> list[tuple[int, bytes]]:
        """Messages inside the send window that were never transmitted."""
        return [
            (seq, payload)
            for seq, payload in self.in_flight()
            if self.timestamps[seq] is None
        ]

    def mark_sent(self, seq: int, now: float) -> None:
        """Record that the message with this sequence number was sent at now."""
        self.timestamps[seq % MAX_SEQ_NUM] = now

    def timed_out(self, now: float, timeout: float) -> bool:
        """True when a sent message in the window has waited timeout or more."""
        for offset in range(self.swnd_size):
            sent = self.timestamps[(self.swnd_start + offset) % MAX_SEQ_NUM]
            if sent is not None and now - sent >= timeout:
                return True
        return False

    def accept_ack(self, seq: int, window: int) -> int:
        """Apply a cumulative acknowledgement; return the slots it freed."""
        freed = 0
        distance = (seq - self.swnd_start) % MAX_SEQ_NUM
        if distance < self.swnd_size:
            stop = (seq + 1) % MAX_SEQ_NUM
            current = self.swnd_start
            while current != stop:
                if self.swnd_slots[current] is not None:
                    self.swnd_slots[current] = None
                    self.free_slots += 1
                    freed += 1
                self.timestamps[current] = None
                current = (current + 1) % MAX_SEQ_NUM
            self.swnd_start = stop
        self.swnd_size = window
        return freed

    # ---- receiving side -----------------------------------------------

    def _active(self, seq: int) -> bool:
        slot = self.rwnd_slots[seq]
        return slot is not None and self.recv_buffer[slot] is not None

    def _last_ack(self) -> AckMessage:
        return AckMessage((self.rwnd_start - 1) % MAX_SEQ_NUM, self.rwnd_size)

    def accept_data(self, seq: int, payload: bytes) -> AckMessage:
        """Store an incoming message and return the acknowledgement to send."""
        payload = bytes(payload)
        seq %= MAX_SEQ_NUM
        if seq == self.rwnd_start:
            slot = self.rwnd_slots[seq]
            if slot is not None:
                self.recv_buffer[slot] = payload
                self.rwnd_size -= 1
                nxt = seq
                while True:
                    nxt = (nxt + 1) % MAX_SEQ_NUM
                    self.rwnd_start = nxt
                    if not (self._active(nxt) and nxt != seq):
                        break
        elif (seq - self.rwnd_start) % MAX_SEQ_NUM < BUFFER_SIZE:
            slot = self.rwnd_slots[seq]
            if slot is not None and self.recv_buffer[slot] is None:
                self.recv_buffer[slot] = payload
                self.rwnd_size -= 1

        if self.rwnd_size == 0:
            self.buffer_full = True
        return self._last_ack()

    def dequeue(self, size: int) -> bytes:
        """Take the next in-order message, cut to at most size bytes."""
        base = self.recv_base
        data = self.recv_buffer[base]
        if data is None:
            raise NoMessageError()
        self.recv_buffer[base] = None

        found = next(
            (seq for seq, slot in enumerate(self.rwnd_slots) if slot == base),
            None,
        )
        if found is not None:
            self.rwnd_slots[found] = None
            self.rwnd_slots[(found + BUFFER_SIZE) % MAX_SEQ_NUM] = base
            self.recv_base = (base + 1) % BUFFER_SIZE
            if self.rwnd_size < BUFFER_SIZE:
                self.rwnd_size += 1
                if self.rwnd_size == 1:
                    self.buffer_full = True
        return data[:max(size, 0)]

    def take_window_update(self) -> Optional[AckMessage]:
        """Return a window-update acknowledgement if the buffer reopened."""
        if self.buffer_full and self.rwnd_size > 0:
            self.buffer_full = False
            return self._last_ack()
        return None