"""Incremental, non-blocking reader that parses peer wire messages."""

from __future__ import annotations

import struct
from enum import Enum, auto
from typing import Optional, Protocol, Union

from torrentcore.message import (
    PROTOCOL,
    BITFIELD_ID,
    CANCEL_ID,
    CHOKE_ID,
    EXTENSION_ID,
    HAVE_ID,
    INTERESTED_ID,
    PIECE_ID,
    PORT_ID,
    REQUEST_ID,
    UNCHOKE_ID,
    UNINTERESTED_ID,
    Bitfield,
    BitfieldMessage,
    Cancel,
    Choke,
    Extension,
    Handshake,
    Have,
    Interested,
    KeepAlive,
    Message,
    Piece,
    Port,
    Request,
    Unchoke,
    Uninterested,
)

MAX_PAYLOAD = 16_384
MAX_EXT_MSG_BYTES = 100 * 1000 * 1000
HANDSHAKE_LEN = 68


class ReadError(OSError):
    """Raised when the remote peer sends malformed data or closes the stream."""


class ReadResult(Enum):
    """Outcome of a read that produced no message."""

    BLOCKED = auto()


class _Conn(Protocol):
    def read(self, size: int) -> Optional[bytes]: ...


class _Stage(Enum):
    HANDSHAKE = auto()
    LENGTH = auto()
    ID = auto()
    HAVE = auto()
    BITFIELD = auto()
    REQUEST = auto()
    PIECE_PREFIX = auto()
    PIECE = auto()
    CANCEL = auto()
    PORT = auto()
    EXTENSION_ID = auto()
    EXTENSION = auto()


_SIMPLE = {
    CHOKE_ID: Choke,
    UNCHOKE_ID: Unchoke,
    INTERESTED_ID: Interested,
    UNINTERESTED_ID: Uninterested,
}

_NEXT_STAGE = {
    HAVE_ID: _Stage.HAVE,
    REQUEST_ID: _Stage.REQUEST,
    PIECE_ID: _Stage.PIECE_PREFIX,
    CANCEL_ID: _Stage.CANCEL,
    PORT_ID: _Stage.PORT,
    EXTENSION_ID: _Stage.EXTENSION_ID,
}


class Reader:
    """Reads one message at a time, keeping partial progress between calls.

    The connection's ``read(n)`` returns at most ``n`` bytes, ``b""`` at end of
    stream, and either ``None`` or raises ``BlockingIOError`` when no data is
    available yet.
    """

    def __init__(self, handshake: bool = True) -> None:
        self._stage = _Stage.HANDSHAKE if handshake else _Stage.LENGTH
        self._prefix = bytearray()
        self._body = bytearray()
        self._body_len = 0
        self._ext_id = 0

    def readable(self, conn: _Conn) -> Union[Message, ReadResult]:
        """Read until a full message is parsed or the connection would block."""
        result = self._read(conn)
        if isinstance(result, Message):
            self._stage = _Stage.LENGTH
            self._prefix.clear()
            self._body = bytearray()
            self._body_len = 0
        return result

    @staticmethod
    def _fill(conn: _Conn, buf: bytearray, target: int) -> bool:
        while len(buf) < target:
            try:
                chunk = conn.read(target - len(buf))
            except BlockingIOError:
                return False
            if chunk is None:
                return False
            if not chunk:
                raise ReadError("EOF")
            buf += chunk
        return True

    def _msg_len(self) -> int:
        return struct.unpack_from(">I", self._prefix, 0)[0]

    def _start_body(self, stage: _Stage, length: int) -> None:
        self._body = bytearray()
        self._body_len = length
        self._stage = stage

    def _read(self, conn: _Conn) -> Union[Message, ReadResult]:
        while True:
            stage = self._stage
            if stage is _Stage.BITFIELD or stage is _Stage.PIECE or stage is _Stage.EXTENSION:
                if not self._fill(conn, self._body, self._body_len):
                    return ReadResult.BLOCKED
                return self._finish_body(stage)

            target = {
                _Stage.HANDSHAKE: HANDSHAKE_LEN,
                _Stage.LENGTH: 4,
                _Stage.ID: 5,
                _Stage.HAVE: 9,
                _Stage.REQUEST: 17,
                _Stage.CANCEL: 17,
                _Stage.PIECE_PREFIX: 13,
                _Stage.PORT: 7,
                _Stage.EXTENSION_ID: 6,
            }[stage]
            if not self._fill(conn, self._prefix, target):
                return ReadResult.BLOCKED

            if stage is _Stage.HANDSHAKE:
                data = bytes(self._prefix)
                if data[1:20] != PROTOCOL:
                    raise ReadError("Handshake was not for 'BitTorrent protocol'")
                return Handshake(rsv=data[20:28], hash=data[28:48], peer_id=data[48:68])
            if stage is _Stage.LENGTH:
                if self._msg_len() == 0:
                    return KeepAlive()
                self._stage = _Stage.ID
            elif stage is _Stage.ID:
                message = self._dispatch_id(self._prefix[4])
                if message is not None:
                    return message
            elif stage is _Stage.HAVE:
                return Have(struct.unpack_from(">I", self._prefix, 5)[0])
            elif stage is _Stage.REQUEST:
                return Request(*struct.unpack_from(">III", self._prefix, 5))
            elif stage is _Stage.CANCEL:
                return Cancel(*struct.unpack_from(">III", self._prefix, 5))
            elif stage is _Stage.PORT:
                return Port(struct.unpack_from(">H", self._prefix, 5)[0])
            elif stage is _Stage.PIECE_PREFIX:
                mlen = self._msg_len()
                if mlen < 9 or mlen - 9 > MAX_PAYLOAD:
                    raise ReadError(f"Invalid pieces length {mlen - 9}")
                self._start_body(_Stage.PIECE, mlen - 9)
            elif stage is _Stage.EXTENSION_ID:
                self._ext_id = self._prefix[5]
                mlen = self._msg_len()
                if mlen < 2 or mlen - 2 > MAX_EXT_MSG_BYTES:
                    raise ReadError("Ext message too large")
                self._start_body(_Stage.EXTENSION, mlen - 2)

    def _dispatch_id(self, msg_id: int) -> Optional[Message]:
        simple = _SIMPLE.get(msg_id)
        if simple is not None:
            return simple()
        if msg_id == BITFIELD_ID:
            mlen = self._msg_len()
            if mlen > MAX_PAYLOAD:
                raise ReadError(f"Invalid bitfield length {mlen}")
            self._start_body(_Stage.BITFIELD, mlen - 1)
            return None
        stage = _NEXT_STAGE.get(msg_id)
        if stage is None:
            raise ReadError("Invalid ID used!")
        self._stage = stage
        return None

    def _finish_body(self, stage: _Stage) -> Message:
        data = bytes(self._body)
        if stage is _Stage.BITFIELD:
            return BitfieldMessage(Bitfield(len(data) * 8, data))
        if stage is _Stage.PIECE:
            index, begin = struct.unpack_from(">II", self._prefix, 5)
            return Piece(index=index, begin=begin, data=data)
        return Extension(ext_id=self._ext_id, payload=data)