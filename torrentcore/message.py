"""Peer wire messages and the piece bitfield they carry."""

from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator, Optional

PROTOCOL = b"BitTorrent protocol"

CHOKE_ID = 0
UNCHOKE_ID = 1
INTERESTED_ID = 2
UNINTERESTED_ID = 3
HAVE_ID = 4
BITFIELD_ID = 5
REQUEST_ID = 6
PIECE_ID = 7
CANCEL_ID = 8
PORT_ID = 9
EXTENSION_ID = 20


class Bitfield:
    """A fixed-length set of piece flags, stored most significant bit first."""

    __slots__ = ("_data", "length")

    def __init__(self, length: int, data: Optional[bytes] = None) -> None:
        if length < 0:
            raise ValueError("bitfield length must not be negative")
        nbytes = (length + 7) // 8
        if data is None:
            self._data = bytearray(nbytes)
        else:
            if len(data) < nbytes:
                raise ValueError(f"bitfield data too short for {length} bits")
            self._data = bytearray(data)
        self.length = length

    def __len__(self) -> int:
        return self.length

    def __iter__(self) -> Iterator[int]:
        """Yield the indices of the set bits in ascending order."""
        return (i for i in range(self.length) if self._raw_bit(i))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Bitfield):
            return NotImplemented
        return self.length == other.length and self._data == other._data

    def __repr__(self) -> str:
        return f"Bitfield(length={self.length}, set={self.count()})"

    @property
    def data(self) -> bytes:
        """The raw bytes as sent on the wire."""
        return bytes(self._data)

    def _raw_bit(self, index: int) -> bool:
        return bool(self._data[index >> 3] & (0x80 >> (index & 7)))

    def _check(self, index: int) -> None:
        if not 0 <= index < self.length:
            raise IndexError(f"bit {index} out of range for bitfield of {self.length}")

    def has_bit(self, index: int) -> bool:
        """Whether the bit at index is set."""
        self._check(index)
        return self._raw_bit(index)

    def set_bit(self, index: int) -> None:
        """Set the bit at index."""
        self._check(index)
        self._data[index >> 3] |= 0x80 >> (index & 7)

    def unset_bit(self, index: int) -> None:
        """Clear the bit at index."""
        self._check(index)
        self._data[index >> 3] &= ~(0x80 >> (index & 7)) & 0xFF

    def count(self) -> int:
        """Number of set bits."""
        return sum(1 for _ in self)

    def complete(self) -> bool:
        """Whether every bit is set."""
        return self.count() == self.length

    def cap(self, length: int) -> bool:
        """Shrink to `length` bits if the data fits exactly with no stray bits.

        Returns False, leaving the bitfield untouched, when the byte count
        does not match or a bit past `length` is set.
        """
        if (length + 7) // 8 != len(self._data):
            return False
        if any(self._raw_bit(i) for i in range(length, len(self._data) * 8)):
            return False
        self.length = length
        return True


def _frame(msg_id: int, payload: bytes = b"") -> bytes:
    return struct.pack(">IB", len(payload) + 1, msg_id) + payload


class Message(ABC):
    """A message of the peer wire protocol."""

    __slots__ = ()

    @abstractmethod
    def encode(self) -> bytes:
        """The full wire representation, length prefix included."""

    def is_special(self) -> bool:
        """Whether the message has a variable size that is not a piece."""
        return False


@dataclass(frozen=True)
class Handshake(Message):
    rsv: bytes
    hash: bytes
    peer_id: bytes

    def __post_init__(self) -> None:
        if len(self.rsv) != 8:
            raise ValueError("handshake reserved field must be 8 bytes")
        if len(self.hash) != 20:
            raise ValueError("handshake info hash must be 20 bytes")
        if len(self.peer_id) != 20:
            raise ValueError("handshake peer id must be 20 bytes")

    def encode(self) -> bytes:
        return bytes([len(PROTOCOL)]) + PROTOCOL + bytes(self.rsv) + bytes(self.hash) + bytes(self.peer_id)

    def is_special(self) -> bool:
        return True


@dataclass(frozen=True)
class KeepAlive(Message):
    def encode(self) -> bytes:
        return bytes(4)


@dataclass(frozen=True)
class Choke(Message):
    def encode(self) -> bytes:
        return _frame(CHOKE_ID)


@dataclass(frozen=True)
class Unchoke(Message):
    def encode(self) -> bytes:
        return _frame(UNCHOKE_ID)


@dataclass(frozen=True)
class Interested(Message):
    def encode(self) -> bytes:
        return _frame(INTERESTED_ID)


@dataclass(frozen=True)
class Uninterested(Message):
    def encode(self) -> bytes:
        return _frame(UNINTERESTED_ID)


@dataclass(frozen=True)
class Have(Message):
    index: int

    def encode(self) -> bytes:
        return _frame(HAVE_ID, struct.pack(">I", self.index))


@dataclass(frozen=True)
class BitfieldMessage(Message):
    pieces: Bitfield

    def encode(self) -> bytes:
        return _frame(BITFIELD_ID, self.pieces.data)

    def is_special(self) -> bool:
        return True


@dataclass(frozen=True)
class Request(Message):
    index: int
    begin: int
    length: int

    def encode(self) -> bytes:
        return _frame(REQUEST_ID, struct.pack(">III", self.index, self.begin, self.length))


@dataclass(frozen=True)
class Piece(Message):
    index: int
    begin: int
    data: bytes

    @property
    def length(self) -> int:
        return len(self.data)

    def encode(self) -> bytes:
        prefix = struct.pack(">IBII", 9 + len(self.data), PIECE_ID, self.index, self.begin)
        return prefix + bytes(self.data)


@dataclass(frozen=True)
class Cancel(Message):
    index: int
    begin: int
    length: int

    def encode(self) -> bytes:
        return _frame(CANCEL_ID, struct.pack(">III", self.index, self.begin, self.length))


@dataclass(frozen=True)
class Port(Message):
    port: int

    def encode(self) -> bytes:
        return _frame(PORT_ID, struct.pack(">H", self.port))


@dataclass(frozen=True)
class Extension(Message):
    ext_id: int
    payload: bytes

    def encode(self) -> bytes:
        return _frame(EXTENSION_ID, bytes([self.ext_id]) + bytes(self.payload))

    def is_special(self) -> bool:
        return True