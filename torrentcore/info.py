"""Torrent metainfo: parsing, encoding and mapping pieces onto files."""

from __future__ import annotations

import base64
import binascii
import hashlib
import random
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Iterator, Optional, Sequence
from urllib.parse import parse_qsl, urlsplit

BLOCK_SIZE = 16_384


class InfoError(ValueError):
    """Raised when torrent metadata is malformed."""


# ---------------------------------------------------------------------------
# Bencoding
# ---------------------------------------------------------------------------


def bencode(value: Any) -> bytes:
    """Encode a value (int, bytes, str, list, dict) to bencoded bytes."""
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def _key_bytes(key: Any) -> bytes:
    if isinstance(key, str):
        return key.encode("utf-8")
    if isinstance(key, (bytes, bytearray)):
        return bytes(key)
    raise TypeError(f"dictionary keys must be str or bytes, not {type(key).__name__}")


def _encode_into(value: Any, out: bytearray) -> None:
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, int):
        out += b"i%de" % value
    elif isinstance(value, (bytes, bytearray)):
        out += b"%d:" % len(value)
        out += value
    elif isinstance(value, str):
        _encode_into(value.encode("utf-8"), out)
    elif isinstance(value, (list, tuple)):
        out += b"l"
        for item in value:
            _encode_into(item, out)
        out += b"e"
    elif isinstance(value, dict):
        out += b"d"
        for key, item in sorted(((_key_bytes(k), v) for k, v in value.items()), key=lambda kv: kv[0]):
            _encode_into(key, out)
            _encode_into(item, out)
        out += b"e"
    else:
        raise TypeError(f"cannot bencode value of type {type(value).__name__}")


def bdecode(data: bytes) -> Any:
    """Decode bencoded bytes; dictionary keys come back as str."""
    value, end = _decode_at(bytes(data), 0)
    if end != len(data):
        raise ValueError("trailing data after bencoded value")
    return value


def _decode_at(data: bytes, pos: int) -> tuple[Any, int]:
    if pos >= len(data):
        raise ValueError("unexpected end of bencoded data")
    lead = data[pos : pos + 1]
    if lead == b"i":
        end = data.find(b"e", pos + 1)
        if end == -1:
            raise ValueError("unterminated integer")
        text = data[pos + 1 : end]
        try:
            return int(text), end + 1
        except ValueError:
            raise ValueError(f"invalid integer {text!r}") from None
    if lead == b"l":
        items = []
        pos += 1
        while data[pos : pos + 1] != b"e":
            item, pos = _decode_at(data, pos)
            items.append(item)
        return items, pos + 1
    if lead == b"d":
        result = {}
        pos += 1
        while data[pos : pos + 1] != b"e":
            key, pos = _decode_at(data, pos)
            if not isinstance(key, bytes):
                raise ValueError("dictionary key must be a string")
            try:
                skey = key.decode("utf-8")
            except UnicodeDecodeError:
                raise ValueError("dictionary key must be valid UTF-8") from None
            result[skey], pos = _decode_at(data, pos)
        return result, pos + 1
    if lead.isdigit():
        colon = data.find(b":", pos)
        if colon == -1:
            raise ValueError("unterminated string length")
        try:
            length = int(data[pos:colon])
        except ValueError:
            raise ValueError("invalid string length") from None
        start = colon + 1
        if start + length > len(data):
            raise ValueError("string runs past end of data")
        return data[start : start + length], start + length
    raise ValueError(f"invalid bencode token {lead!r}")


def _as_dict(value: Any) -> Optional[dict]:
    return value if isinstance(value, dict) else None


def _as_int(value: Any) -> Optional[int]:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _as_bytes(value: Any) -> Optional[bytes]:
    return bytes(value) if isinstance(value, (bytes, bytearray)) else None


def _as_str(value: Any) -> Optional[str]:
    raw = _as_bytes(value)
    if raw is None:
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _parse_url(text: str) -> Optional[str]:
    try:
        parts = urlsplit(text)
        parts.port  # raises on an invalid port
    except ValueError:
        return None
    if not parts.scheme:
        return None
    return text


def _hex_to_hash(text: str) -> Optional[bytes]:
    if len(text) != 40:
        return None
    try:
        raw = bytes.fromhex(text)
    except ValueError:
        return None
    return raw if len(raw) == 20 else None


def _base32_to_hash(text: str) -> Optional[bytes]:
    try:
        raw = base64.b32decode(text, casefold=True)
    except (binascii.Error, ValueError):
        return None
    return raw if len(raw) == 20 else None


# ---------------------------------------------------------------------------
# Metainfo
# ---------------------------------------------------------------------------


@dataclass
class TorrentFile:
    """One file of a torrent: its path relative to the download directory."""

    path: PurePosixPath
    length: int

    @classmethod
    def from_bencode(cls, data: Any) -> "TorrentFile":
        d = _as_dict(data)
        if d is None:
            raise InfoError("File must be a dictionary type!")
        name, path, length = d.get("name"), d.get("path"), d.get("length")
        if name is not None and path is None and length is not None:
            text = _as_str(name)
            if text is None:
                raise InfoError("Path must be a valid string.")
            file_path = PurePosixPath(text)
        elif name is None and path is not None and length is not None:
            if not isinstance(path, list):
                raise InfoError("File path should be a list")
            file_path = PurePosixPath()
            for part in path:
                text = _as_str(part)
                if text is None:
                    raise InfoError("File path parts should be strings")
                file_path = file_path / text
        else:
            raise InfoError("File dict must contain length and name or path")
        size = _as_int(length)
        if size is None:
            raise InfoError("File length must be a valid int")
        return cls(path=file_path, length=size)


@dataclass(frozen=True)
class Location:
    """A span of a block or piece that lands in one file on disk."""

    file: int
    file_len: int
    offset: int
    start: int
    end: int
    allocate: bool
    info: "Info" = field(repr=False, compare=False)


@dataclass
class Info:
    """Torrent metadata, either complete or just what a magnet link gives."""

    name: str = ""
    announce: Optional[str] = None
    creator: Optional[str] = None
    comment: Optional[str] = None
    piece_len: int = 0
    total_len: int = 0
    hashes: list[bytes] = field(default_factory=list)
    hash: bytes = bytes(20)
    files: list[TorrentFile] = field(default_factory=list)
    private: bool = False
    be_name: Optional[bytes] = None
    piece_idx: list[tuple[int, int]] = field(default_factory=list)
    url_list: list[list[str]] = field(default_factory=list)

    def __repr__(self) -> str:
        return (
            f"Info(name={self.name!r}, announce={self.announce!r}, "
            f"piece_len={self.piece_len}, total_len={self.total_len}, "
            f"hash={self.hash.hex()}, files={self.files!r})"
        )

    @classmethod
    def from_magnet(cls, data: str) -> "Info":
        """Build partial metadata from a magnet URI."""
        try:
            parts = urlsplit(data)
        except ValueError:
            raise InfoError("Failed to parse magnet URL!") from None
        if not parts.scheme:
            raise InfoError("Failed to parse magnet URL!")
        if parts.scheme != "magnet":
            raise InfoError("magnet URL must use magnet URL scheme")
        pairs = parse_qsl(parts.query, keep_blank_values=True)

        info_hash = None
        xt = next((v for k, v in pairs if k == "xt" and v.startswith("urn:btih:")), None)
        if xt is not None:
            encoded = xt[9:]
            info_hash = _hex_to_hash(encoded) or _base32_to_hash(encoded)
        if info_hash is None:
            raise InfoError("No hash found in magnet")

        trackers = [url for k, v in pairs if k == "tr" for url in [_parse_url(v)] if url is not None]
        random.shuffle(trackers)
        name = next((v for k, v in pairs if k == "dn"), "")
        return cls(name=name, hash=info_hash, url_list=[trackers])

    @classmethod
    def from_bencode(cls, data: Any) -> "Info":
        """Build metadata from a decoded .torrent dictionary."""
        top = _as_dict(data)
        info = _as_dict(top.get("info")) if top is not None else None
        if top is None or info is None:
            raise InfoError("invalid info field")
        info_hash = hashlib.sha1(bencode(info)).digest()
        info = dict(info)

        announce_text = _as_str(top.get("announce"))
        announce = _parse_url(announce_text) if announce_text is not None else None
        comment = _as_str(top.get("comment"))
        creator = _as_str(top.get("created by"))

        piece_len = _as_int(info.pop("piece length", None))
        if piece_len is None:
            raise InfoError("Info must specify piece length")

        pieces = _as_bytes(info.pop("pieces", None))
        if pieces is None or len(pieces) % 20:
            raise InfoError("Info must provide valid hashes")
        hashes = [pieces[i : i + 20] for i in range(0, len(pieces), 20)]

        private = False
        if "private" in info:
            flag = _as_int(info.pop("private"))
            if flag not in (0, 1):
                raise InfoError("private key must be an integer equal to 0 or 1 if present!")
            private = flag == 1

        be_name = None
        if "name" in info:
            be_name = _as_bytes(info["name"])
            if be_name is None:
                raise InfoError("name field must be a bitstring!")

        files = _parse_files(info)
        if not files:
            raise InfoError("Torrent must contain at least one file")
        first = files[0].path
        if first.is_absolute():
            raise InfoError("File paths must be relative")
        if not first.parts:
            raise InfoError("File path must not be empty")
        name = first.parts[0]

        tiers = top.get("announce-list")
        url_list = []
        for tier in tiers if isinstance(tiers, list) else []:
            urls = []
            for entry in tier if isinstance(tier, list) else []:
                text = _as_str(entry)
                url = _parse_url(text) if text is not None else None
                if url is not None:
                    urls.append(url)
            random.shuffle(urls)
            url_list.append(urls)

        return cls(
            name=name,
            announce=announce,
            creator=creator,
            comment=comment,
            piece_len=piece_len,
            total_len=sum(f.length for f in files),
            hashes=hashes,
            hash=info_hash,
            files=files,
            private=private,
            be_name=be_name,
            piece_idx=cls.generate_piece_idx(len(hashes), piece_len, files),
            url_list=url_list,
        )

    def complete(self) -> bool:
        """Whether the full metadata (piece hashes) is known."""
        return bool(self.hashes)

    def to_bencode(self) -> dict:
        """The info dictionary as a bencodable value."""
        info: dict[str, Any] = {}
        if self.be_name is not None:
            info["name"] = self.be_name
        if self.private:
            info["private"] = 1
        info["piece length"] = self.piece_len
        info["pieces"] = b"".join(self.hashes)
        if len(self.files) == 1:
            info["length"] = self.files[0].length
        else:
            info["files"] = [
                {"length": f.length, "path": str(f.path).encode("utf-8")} for f in self.files
            ]
        return info

    def to_torrent_bencode(self) -> dict:
        """A whole .torrent dictionary as a bencodable value."""
        torrent: dict[str, Any] = {}
        if self.announce is not None:
            torrent["announce"] = self.announce.encode("utf-8")
        torrent["info"] = self.to_bencode()
        return torrent

    @staticmethod
    def generate_piece_idx(pieces: int, piece_len: int, files: Sequence[TorrentFile]) -> list[tuple[int, int]]:
        """Map each piece index to the file index and offset where it starts."""
        piece_idx = []
        file = 0
        offset = 0
        for _ in range(pieces):
            piece_idx.append((file, offset))
            offset += piece_len
            while file < len(files) and offset >= files[file].length:
                offset -= files[file].length
                file += 1
        return piece_idx

    def block_len(self, idx: int, offset: int) -> int:
        """Length of the block at the given piece index and offset."""
        if idx != self.pieces() - 1:
            return BLOCK_SIZE
        last_piece_len = self.piece_len_at(idx)
        last_block_len = last_piece_len - offset
        if offset < last_piece_len and last_block_len <= BLOCK_SIZE:
            return last_block_len
        return BLOCK_SIZE

    def piece_len_at(self, idx: int) -> int:
        """Length of the piece at idx; 0 if the metadata is incomplete."""
        if not self.complete():
            return 0
        if idx != max(self.pieces() - 1, 0):
            return self.piece_len
        return self.total_len - self.piece_len * (self.pieces() - 1)

    def pieces(self) -> int:
        """Number of pieces."""
        return len(self.hashes)

    def block_disk_locs(
        self, index: int, begin: int, priorities: Optional[Sequence[int]] = None
    ) -> Iterator[Location]:
        """File locations covered by the block at index/begin."""
        return iter_locations(self, priorities, index, begin, self.block_len(index, begin))

    def piece_disk_locs(self, index: int) -> Iterator[Location]:
        """File locations covered by the piece at index."""
        return iter_locations(self, None, index, 0, self.piece_len_at(index))


def _parse_files(info: dict) -> list[TorrentFile]:
    entries = info.get("files")
    if isinstance(entries, list):
        name = _as_str(info.get("name"))
        if name is None:
            raise InfoError("Multifile mode must have a name field")
        root = PurePosixPath(name)
        files = []
        for entry in entries:
            file = TorrentFile.from_bencode(entry)
            file.path = root / file.path
            files.append(file)
        return files
    rest = {k: v for k, v in info.items() if k != "files"}
    return [TorrentFile.from_bencode(rest)]


def iter_locations(
    info: Info,
    priorities: Optional[Sequence[int]],
    index: int,
    begin: int,
    length: int,
) -> Iterator[Location]:
    """Yield the file spans that `length` bytes at index/begin occupy."""
    file, fidx = info.piece_idx[index]
    fidx += begin
    while info.files[file].length < fidx:
        fidx -= info.files[file].length
        file += 1

    data_start = 0
    while True:
        f_len = info.files[file].length
        written = min(f_len - fidx, length)
        yield Location(
            file=file,
            file_len=f_len,
            offset=fidx,
            start=data_start,
            end=data_start + written,
            allocate=priorities is not None and priorities[file] != 0,
            info=info,
        )
        if written == length:
            return
        fidx -= f_len - written
        file += 1
        length -= written
        data_start += written