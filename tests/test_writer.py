import errno

import pytest

from torrentcore.message import (
    Bitfield,
    BitfieldMessage,
    Cancel,
    Choke,
    Handshake,
    Have,
    Interested,
    KeepAlive,
    Piece,
    Request,
    Unchoke,
)
from torrentcore.writer import Writer

PEER_ID = b"-TC0001-abcdefghijkl"


class SliceConn:
    """Accepts bytes until a fixed capacity is reached, then reports 0."""

    def __init__(self, size):
        self.size = size
        self.buf = bytearray()

    def write(self, data):
        n = min(len(data), self.size - len(self.buf))
        self.buf += bytes(data[:n])
        return n


class BudgetConn:
    """Accepts up to `budget` bytes, then raises BlockingIOError."""

    def __init__(self, budget=0):
        self.budget = budget
        self.buf = bytearray()

    def write(self, data):
        if self.budget == 0:
            raise BlockingIOError(errno.EAGAIN, "would block")
        n = min(len(data), self.budget)
        self.budget -= n
        self.buf += bytes(data[:n])
        return n


class FailingConn:
    def __init__(self, exc):
        self.exc = exc

    def write(self, data):
        raise self.exc


def _write(msg, size):
    w = Writer()
    conn = SliceConn(size)
    w.write_message(msg, conn)
    w.writable(conn)
    return bytes(conn.buf)


def test_write_keepalive():
    assert _write(KeepAlive(), 4) == bytes([0, 0, 0, 0])


def test_write_choke():
    assert _write(Choke(), 5) == bytes([0, 0, 0, 1, 0])


def test_write_unchoke():
    assert _write(Unchoke(), 5) == bytes([0, 0, 0, 1, 1])


def test_write_interested_then_idle_writables():
    w = Writer()
    conn = SliceConn(5)
    w.write_message(Interested(), conn)
    assert bytes(conn.buf) == bytes([0, 0, 0, 1, 2])
    w.writable(SliceConn(1))
    w.writable(SliceConn(2))
    w.writable(conn)
    assert bytes(conn.buf) == bytes([0, 0, 0, 1, 2])


def test_write_have():
    assert _write(Have(1), 9) == bytes([0, 0, 0, 5, 4, 0, 0, 0, 1])


def test_write_bitfield():
    pf = Bitfield(32)
    for i in range(32):
        pf.set_bit(i)
    assert _write(BitfieldMessage(pf), 9) == bytes([0, 0, 0, 5, 5, 0xFF, 0xFF, 0xFF, 0xFF])


def test_write_request():
    expected = bytes([0, 0, 0, 13, 6, 0, 0, 0, 1, 0, 0, 0, 1, 0, 0, 0, 1])
    assert _write(Request(1, 1, 1), 17) == expected


def test_write_piece():
    w = Writer()
    conn = SliceConn(16_384 + 13)
    w.write_message(Piece(1, 1, bytes([1]) * 16_384), conn)
    out = bytes(conn.buf)
    assert out[:13] == bytes([0, 0, 0x40, 0x09, 7, 0, 0, 0, 1, 0, 0, 0, 1])
    assert out[13:] == bytes([1]) * 16_384
    assert w.blocks_written == 1


def test_write_cancel():
    w = Writer()
    conn = SliceConn(17)
    w.write_message(Cancel(1, 1, 1), conn)
    assert bytes(conn.buf) == bytes([0, 0, 0, 13, 8, 0, 0, 0, 1, 0, 0, 0, 1, 0, 0, 0, 1])


def test_write_handshake():
    m = Handshake(bytes(8), bytes(20), PEER_ID)
    assert _write(m, 68) == m.encode()


def test_partial_write_resumes_on_writable():
    w = Writer()
    conn = BudgetConn(3)
    msg = Have(1)
    w.write_message(msg, conn)
    assert bytes(conn.buf) == msg.encode()[:3]
    conn.budget = 100
    w.writable(conn)
    assert bytes(conn.buf) == msg.encode()


def test_messages_queue_while_blocked():
    w = Writer()
    conn = BudgetConn(2)
    first, second, third = Have(1), Choke(), Request(1, 2, 3)
    w.write_message(first, conn)
    w.write_message(second, conn)
    w.write_message(third, conn)
    assert bytes(conn.buf) == first.encode()[:2]
    assert list(w.write_queue) == [second, third]
    conn.budget = 1_000
    w.writable(conn)
    assert bytes(conn.buf) == first.encode() + third.encode() + second.encode()
    assert len(w.write_queue) == 0


def test_eof_raises():
    w = Writer()
    with pytest.raises(OSError, match="EOF"):
        w.write_message(Have(1), SliceConn(0))


def test_broken_pipe_is_swallowed_and_message_kept():
    w = Writer()
    w.write_message(Choke(), FailingConn(BrokenPipeError()))
    conn = SliceConn(5)
    w.writable(conn)
    assert bytes(conn.buf) == bytes([0, 0, 0, 1, 0])


def test_not_connected_is_swallowed():
    w = Writer()
    w.write_message(Unchoke(), FailingConn(OSError(errno.ENOTCONN, "not connected")))
    conn = SliceConn(5)
    w.writable(conn)
    assert bytes(conn.buf) == bytes([0, 0, 0, 1, 1])


def test_other_errors_propagate():
    w = Writer()
    with pytest.raises(PermissionError):
        w.write_message(Choke(), FailingConn(PermissionError("denied")))


def test_piece_counted_only_when_complete():
    w = Writer()
    conn = BudgetConn(10)
    w.write_message(Piece(0, 0, b"abcdef"), conn)
    assert w.blocks_written == 0
    conn.budget = 100
    w.writable(conn)
    assert w.blocks_written == 1
    assert bytes(conn.buf)[13:] == b"abcdef"