"""A connected peer: its socket state, what it has, and the protocol rules it must follow."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from torrentcore.info import bdecode
from torrentcore.message import (
    BitfieldMessage,
    Bitfield,
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
from torrentcore.reader import Reader, ReadResult
from torrentcore.writer import Writer

INIT_MAX_QUEUE = 5
MAX_QUEUE_CAP = 600
DEFAULT_DHT_PORT = 6881

# Reserved-byte position and mask advertising DHT support in the handshake.
DHT_EXT = (7, 0x01)


class ProtocolError(Exception):
    """Raised when a peer does not conform to the BitTorrent protocol."""


class _Sock(Protocol):
    def read(self, size: int) -> Optional[bytes]: ...

    def write(self, data: bytes) -> Optional[int]: ...


class PeerConn:
    """A non-blocking socket paired with an incremental reader and writer."""

    def __init__(self, sock: _Sock) -> None:
        self.sock = sock
        self.reader = Reader()
        self.writer = Writer()
        self.last_action = time.monotonic()

    def write_message(self, msg: Message) -> None:
        """Send msg, or queue it until the socket can take more data."""
        self.writer.write_message(msg, self.sock)

    def writable(self) -> None:
        """Continue writing after the socket reported it is writable."""
        self.last_action = time.monotonic()
        self.writer.writable(self.sock)

    def readable(self) -> Union[Message, ReadResult]:
        """Read the next message, or report that the socket would block."""
        self.last_action = time.monotonic()
        return self.reader.readable(self.sock)


@dataclass
class ExtIds:
    """Message ids the remote peer assigned to the extensions we use."""

    ut_meta: Optional[int] = None
    ut_pex: Optional[int] = None


@dataclass
class Status:
    """Choke and interest state of one side of a connection."""

    choked: bool = True
    interested: bool = False


def _ext_id(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value & 0xFF
    return None


class Peer:
    """Protocol state of one remote peer of a torrent."""

    def __init__(self, pid: int, conn: PeerConn, pieces: Bitfield, addr: tuple[str, int]) -> None:
        self.id = pid
        self.conn = conn
        self.pieces = pieces
        self.addr = addr
        self.piece_count = pieces.count()
        self.piece_cache: list[int] = []
        self.remote_status = Status()
        self.local_status = Status()
        self.queued = 0
        self.max_queue = INIT_MAX_QUEUE
        self.pieces_updated = False
        self.uploaded = 0
        self.downloaded = 0
        self.cid: Optional[bytes] = None
        self.rsv: Optional[bytes] = None
        self.ext_ids = ExtIds()
        self.dht_port = DEFAULT_DHT_PORT
        self.dht_nodes: list[tuple[str, int]] = []
        self.rank = 0

    def __repr__(self) -> str:
        return (
            f"Peer(addr={self.addr!r}, local_status={self.local_status!r}, "
            f"remote_status={self.remote_status!r})"
        )

    def magnet_complete(self, pieces: int) -> None:
        """Resize the peer's bitfield once the torrent's piece count is known."""
        if len(self.pieces) == 0:
            self.pieces = Bitfield(pieces)
        elif not self.pieces.cap(pieces):
            raise ProtocolError("Invalid pieces size")

    def ready(self) -> bool:
        """Whether the peer's handshake has been received."""
        return self.cid is not None

    def flush(self) -> tuple[int, int]:
        """Return and reset the (uploaded, downloaded) block counters."""
        counts = (self.uploaded, self.downloaded)
        self.uploaded = 0
        self.downloaded = 0
        return counts

    def queue_reqs(self) -> Optional[int]:
        """How many more requests may be queued, or None if none should be."""
        if self.remote_status.choked or self.queued > max(self.max_queue - 16, 0):
            return None
        return max(self.max_queue - self.queued, 0)

    def handle_msg(self, msg: Message) -> None:
        """Update peer state for an incoming message, raising ProtocolError on violations."""
        if isinstance(msg, Handshake):
            index, mask = DHT_EXT
            if msg.rsv[index] & mask:
                self.send_message(Port(self.dht_port))
            self.rsv = bytes(msg.rsv)
            self.cid = bytes(msg.peer_id)
        elif isinstance(msg, Piece):
            self.downloaded += 1
            self.queued = max(self.queued - 1, 0)
        elif isinstance(msg, Request):
            if self.local_status.choked:
                raise ProtocolError("Peer requested while choked!")
        elif isinstance(msg, Choke):
            self.remote_status.choked = True
        elif isinstance(msg, Unchoke):
            self.remote_status.choked = False
        elif isinstance(msg, Interested):
            self.remote_status.interested = True
        elif isinstance(msg, Uninterested):
            self.remote_status.interested = False
        elif isinstance(msg, Have):
            if msg.index >= len(self.pieces):
                raise ProtocolError("Invalid piece provided in HAVE!")
            if self.pieces.has_bit(msg.index):
                raise ProtocolError("Duplicate piece provided in HAVE!")
            self.pieces.set_bit(msg.index)
            self.piece_count += 1
            self.pieces_updated = True
        elif isinstance(msg, BitfieldMessage):
            # Magnets have no length yet, so any size is taken as is.
            if len(self.pieces) > 0 and not msg.pieces.cap(len(self.pieces)):
                raise ProtocolError("Invalid pieces size")
            self.pieces = msg.pieces
            self.piece_count = self.pieces.count()
        elif isinstance(msg, KeepAlive):
            self.send_message(KeepAlive())
        elif isinstance(msg, Cancel):
            queue = self.conn.writer.write_queue
            kept = [
                m
                for m in queue
                if not (isinstance(m, Piece) and m.index == msg.index and m.begin == msg.begin)
            ]
            queue.clear()
            queue.extend(kept)
        elif isinstance(msg, Port):
            self.dht_nodes.append((self.addr[0], msg.port))
        elif isinstance(msg, Extension):
            if msg.ext_id == 0:
                self._handle_ext_handshake(msg.payload)

    def _handle_ext_handshake(self, payload: bytes) -> None:
        try:
            decoded = bdecode(payload)
        except ValueError:
            raise ProtocolError("Invalid bencode in ext handshake") from None
        if not isinstance(decoded, dict):
            raise ProtocolError("Invalid bencode type in ext handshake")
        ids = decoded.get("m")
        if not isinstance(ids, dict):
            raise ProtocolError("Invalid metadata in ext handshake")
        self.ext_ids.ut_meta = _ext_id(ids.get("ut_metadata"))
        self.ext_ids.ut_pex = _ext_id(ids.get("ut_pex"))

    def request_piece(self, idx: int, offset: int, length: int) -> None:
        """Request a block from the peer."""
        self.queued += 1
        self.send_message(Request(idx, offset, length))

    def choke(self) -> None:
        """Choke the peer if it is not already choked."""
        if not self.local_status.choked:
            self.local_status.choked = True
            self.send_message(Choke())

    def unchoke(self) -> None:
        """Unchoke the peer if it is choked."""
        if self.local_status.choked:
            self.local_status.choked = False
            self.send_message(Unchoke())

    def interested(self) -> None:
        """Tell the peer we are interested, once."""
        if not self.local_status.interested:
            self.local_status.interested = True
            self.send_message(Interested())

    def send_message(self, msg: Message) -> None:
        """Send a message to the peer, counting uploaded pieces."""
        if isinstance(msg, Piece):
            self.uploaded += 1
        self.conn.write_message(msg)