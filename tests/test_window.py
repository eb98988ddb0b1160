import pytest

from ktp.protocol import (
    BUFFER_SIZE,
    MAX_MSG_SIZE,
    MAX_SEQ_NUM,
    AckMessage,
    NoMessageError,
    NoSpaceError,
)
from ktp.window import SocketState


def _transfer(sender, receiver, delivered):
    for seq, payload in sender.unsent():
        sender.mark_sent(seq, 1.0)
        ack = receiver.accept_data(seq, payload)
        sender.accept_ack(ack.seq, ack.window)
    while True:
        try:
            delivered.append(receiver.dequeue(MAX_MSG_SIZE))
        except NoMessageError:
            break
    update = receiver.take_window_update()
    if update is not None:
        sender.accept_ack(update.seq, update.window)


def test_fresh_state():
    state = SocketState()
    assert state.swnd_size == BUFFER_SIZE
    assert state.rwnd_size == BUFFER_SIZE
    assert state.free_slots == BUFFER_SIZE
    assert state.in_flight() == []
    with pytest.raises(NoMessageError):
        state.dequeue(10)


def test_enqueue_places_message_at_window_start():
    state = SocketState()
    assert state.enqueue(b"hello") == 5
    assert state.unsent() == [(0, b"hello")]
    assert state.free_slots == BUFFER_SIZE - 1


def test_enqueue_fills_buffer():
    state = SocketState()
    for i in range(BUFFER_SIZE):
        state.enqueue(bytes([i]))
    with pytest.raises(NoSpaceError):
        state.enqueue(b"x")
    assert [seq for seq, _ in state.in_flight()] == list(range(BUFFER_SIZE))


def test_enqueue_rejects_oversized():
    state = SocketState()
    with pytest.raises(ValueError):
        state.enqueue(b"a" * (MAX_MSG_SIZE + 1))
    assert state.free_slots == BUFFER_SIZE


def test_mark_sent_and_timeout():
    state = SocketState()
    state.enqueue(b"a")
    state.enqueue(b"b")
    state.mark_sent(0, 100.0)
    assert state.unsent() == [(1, b"b")]
    assert state.in_flight() == [(0, b"a"), (1, b"b")]
    assert state.timed_out(104.0, 5) is False
    assert state.timed_out(105.0, 5) is True


def test_ack_frees_slots_and_slides_window():
    state = SocketState()
    for payload in (b"a", b"b", b"c"):
        state.enqueue(payload)
    freed = state.accept_ack(1, 7)
    assert freed == 2
    assert state.free_slots == BUFFER_SIZE - 1
    assert state.swnd_start == 2
    assert state.swnd_size == 7
    assert state.in_flight() == [(2, b"c")]


def test_ack_outside_window_only_updates_size():
    state = SocketState()
    state.enqueue(b"a")
    freed = state.accept_ack(MAX_SEQ_NUM - 1, 4)
    assert freed == 0
    assert state.swnd_start == 0
    assert state.swnd_size == 4
    assert state.in_flight() == [(0, b"a")]


def test_zero_window_blocks_sending():
    state = SocketState()
    state.enqueue(b"a")
    state.accept_ack(MAX_SEQ_NUM - 1, 0)
    assert state.unsent() == []
    assert state.timed_out(1e9, 5) is False


def test_in_order_data_round_trip():
    state = SocketState()
    ack = state.accept_data(0, b"payload")
    assert ack == AckMessage(0, BUFFER_SIZE - 1)
    assert state.dequeue(MAX_MSG_SIZE) == b"payload"
    assert state.rwnd_size == BUFFER_SIZE


def test_out_of_order_data_is_buffered():
    state = SocketState()
    first = state.accept_data(1, b"second")
    assert first.seq == MAX_SEQ_NUM - 1
    with pytest.raises(NoMessageError):
        state.dequeue(MAX_MSG_SIZE)
    second = state.accept_data(0, b"first")
    assert second.seq == 1
    assert state.dequeue(MAX_MSG_SIZE) == b"first"
    assert state.dequeue(MAX_MSG_SIZE) == b"second"


def test_duplicate_old_data_is_ignored():
    state = SocketState()
    state.accept_data(0, b"x")
    state.dequeue(MAX_MSG_SIZE)
    ack = state.accept_data(0, b"x")
    assert ack.seq == 0
    assert ack.window == BUFFER_SIZE
    with pytest.raises(NoMessageError):
        state.dequeue(MAX_MSG_SIZE)


def test_dequeue_truncates():
    state = SocketState()
    state.accept_data(0, b"abcdef")
    assert state.dequeue(3) == b"abc"


def test_full_buffer_then_window_update():
    state = SocketState()
    for seq in range(BUFFER_SIZE):
        state.accept_data(seq, bytes([seq]))
    assert state.rwnd_size == 0
    assert state.buffer_full is True
    assert state.take_window_update() is None
    assert state.dequeue(MAX_MSG_SIZE) == bytes([0])
    update = state.take_window_update()
    assert update == AckMessage(BUFFER_SIZE - 1, 1)
    assert state.take_window_update() is None


def test_reset_restores_initial_state():
    state = SocketState()
    state.enqueue(b"a")
    state.accept_data(0, b"b")
    state.reset()
    assert state.free_slots == BUFFER_SIZE
    assert state.in_flight() == []
    assert state.rwnd_size == BUFFER_SIZE
    with pytest.raises(NoMessageError):
        state.dequeue(1)


def test_transfer_across_sequence_wrap():
    sender, receiver = SocketState(), SocketState()
    messages = [str(i).encode() for i in range(MAX_SEQ_NUM + 40)]
    delivered = []
    pending = list(messages)
    while pending or sender.in_flight():
        while pending:
            try:
                sender.enqueue(pending[0])
            except NoSpaceError:
                break
            pending.pop(0)
        _transfer(sender, receiver, delivered)
    assert delivered == messages
    assert sender.free_slots == BUFFER_SIZE
    assert receiver.rwnd_size == BUFFER_SIZE