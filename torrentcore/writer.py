"""Non-blocking writer that drains peer messages into a connection."""

from __future__ import annotations

import errno
from collections import deque
from typing import Optional, Protocol

from torrentcore.message import Message, Piece


class _Conn(Protocol):
    def write(self, data: bytes) -> Optional[int]: ...


def _is_transient(exc: OSError) -> bool:
    return isinstance(exc, (BlockingIOError, BrokenPipeError)) or exc.errno == errno.ENOTCONN


class Writer:
    """Writes messages to a connection, resuming where a short write left off."""

    def __init__(self) -> None:
        # Public so a peer can drop cancelled pieces still waiting to go out.
        self.write_queue: deque[Message] = deque()
        self.blocks_written = 0
        self._writable = True
        self._pending: Optional[memoryview] = None
        self._offset = 0
        self._is_piece = False

    def writable(self, conn: _Conn) -> None:
        """Signal that the connection can take data again and continue writing."""
        self._writable = True
        self._flush(conn)

    def write_message(self, msg: Message, conn: _Conn) -> None:
        """Send msg now if possible, otherwise queue it."""
        if self._pending is None:
            self._setup(msg)
        else:
            self.write_queue.append(msg)
        if self._writable:
            self._flush(conn)

    def _setup(self, msg: Message) -> None:
        self._pending = memoryview(msg.encode())
        self._offset = 0
        self._is_piece = isinstance(msg, Piece)

    def _flush(self, conn: _Conn) -> None:
        if self._pending is None:
            return
        while True:
            try:
                done = self._write_some(conn)
            except OSError as exc:
                if _is_transient(exc):
                    break
                raise
            if done:
                if self.write_queue:
                    self._setup(self.write_queue.pop())
                else:
                    self._pending = None
                    break

    def _write_some(self, conn: _Conn) -> bool:
        assert self._pending is not None
        amount = conn.write(self._pending[self._offset :])
        if amount is None:
            raise BlockingIOError(errno.EAGAIN, "write would block")
        if amount == 0:
            raise OSError("EOF")
        self._offset += amount
        if self._offset == len(self._pending):
            if self._is_piece:
                self.blocks_written += 1
            return True
        self._writable = False
        return False