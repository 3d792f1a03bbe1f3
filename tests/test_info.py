import base64
import hashlib
from pathlib import PurePosixPath

import pytest

from torrentcore.info import (
    Info,
    InfoError,
    Location,
    TorrentFile,
    bdecode,
    bencode,
    iter_locations,
)


def with_pieces(pieces):
    return Info(
        piece_len=16_384,
        total_len=16_384 * pieces,
        hashes=[b"\x00"] * pieces,
        files=[TorrentFile(PurePosixPath(""), 16_384 * pieces)],
    )


def with_pieces_scale(pieces, scale):
    return Info(
        piece_len=16_384 * scale,
        total_len=16_384 * pieces * scale,
        hashes=[b"\x00"] * pieces,
    )


def single_file_torrent():
    info = {
        "name": b"file.bin",
        "length": 30,
        "piece length": 16,
        "pieces": b"a" * 20 + b"b" * 20,
    }
    return {
        "announce": b"http://tracker.example.com/announce",
        "comment": b"hello",
        "created by": b"maker",
        "info": info,
    }


def multi_file_torrent():
    info = {
        "name": b"dir",
        "piece length": 16,
        "pieces": b"c" * 20 * 2,
        "files": [
            {"length": 10, "path": [b"a", b"one.txt"]},
            {"length": 20, "path": [b"two.txt"]},
        ],
    }
    return {"info": info}


# --- carried over cases ---------------------------------------------------


def test_correct_piece_len():
    scale = 3
    pieces = 15
    info = with_pieces_scale(pieces, scale)
    end = 16_700
    info.total_len += end
    info.hashes.append(b"")
    for i in range(pieces):
        assert info.piece_len_at(i) == info.piece_len
        for o in range(scale):
            assert info.block_len(i, o * 16_384) == 16_384
    assert info.piece_len_at(pieces) == end
    assert info.block_len(pieces, 0) == 16_384
    assert info.block_len(pieces, 16_384) == end % 16_384


def test_loc_iter_bounds():
    info = with_pieces(4)
    info.files = [
        TorrentFile(PurePosixPath(""), 40000),
        TorrentFile(PurePosixPath(""), 10000),
    ]
    info.total_len = 50000
    info.piece_idx = Info.generate_piece_idx(len(info.hashes), info.piece_len, info.files)

    locs = info.block_disk_locs(0, 0)
    n = next(locs)
    assert (n.start, n.end, n.file, n.offset) == (0, 16384, 0, 0)
    assert next(locs, None) is None

    locs = info.block_disk_locs(1, 0)
    n = next(locs)
    assert (n.start, n.end, n.file, n.offset) == (0, 16384, 0, 16384)
    assert next(locs, None) is None

    locs = info.block_disk_locs(2, 0)
    n = next(locs)
    assert (n.start, n.end, n.file, n.offset) == (0, 7232, 0, 16384 * 2)
    n = next(locs)
    assert (n.start, n.end, n.file, n.offset) == (7232, 16384, 1, 0)

    locs = info.block_disk_locs(3, 0)
    n = next(locs)
    assert (n.start, n.end, n.file, n.offset) == (0, 848, 1, 16384 - 7232)


# --- bencode ----------------------------------------------------------------


def test_bencode_known_encoding():
    assert bencode({"b": 1, "a": b"x"}) == b"d1:a1:x1:bi1ee"
    assert bencode([1, "spam", -3]) == b"li1e4:spami-3ee"


def test_bdecode_round_trip():
    value = {"list": [1, b"two", {"x": b""}], "num": 42}
    assert bdecode(bencode(value)) == value


@pytest.mark.parametrize("data", [b"i12", b"5:ab", b"x", b"i1ei2e", b"d1:ae"])
def test_bdecode_rejects_malformed(data):
    with pytest.raises(ValueError):
        bdecode(data)


# --- from_bencode -----------------------------------------------------------


def test_from_bencode_single_file():
    torrent = single_file_torrent()
    info = Info.from_bencode(torrent)
    assert info.name == "file.bin"
    assert info.total_len == 30
    assert info.pieces() == 2
    assert info.piece_len == 16
    assert info.comment == "hello"
    assert info.creator == "maker"
    assert info.announce == "http://tracker.example.com/announce"
    assert info.be_name == b"file.bin"
    assert info.hash == hashlib.sha1(bencode(torrent["info"])).digest()
    assert info.files == [TorrentFile(PurePosixPath("file.bin"), 30)]
    assert info.piece_len_at(1) == 14


def test_from_bencode_multi_file():
    info = Info.from_bencode(multi_file_torrent())
    assert info.name == "dir"
    assert [str(f.path) for f in info.files] == ["dir/a/one.txt", "dir/two.txt"]
    assert info.total_len == 30
    assert info.piece_idx[0] == (0, 0)


def test_from_bencode_announce_list():
    torrent = single_file_torrent()
    torrent["announce-list"] = [[b"udp://a.example.com:80", b"not a url"], [b"http://b.example.com/"]]
    info = Info.from_bencode(torrent)
    assert info.url_list == [["udp://a.example.com:80"], ["http://b.example.com/"]]


def test_from_bencode_private_flag():
    torrent = single_file_torrent()
    torrent["info"]["private"] = 1
    assert Info.from_bencode(torrent).private is True
    torrent["info"]["private"] = 2
    with pytest.raises(InfoError):
        Info.from_bencode(torrent)


def test_from_bencode_bad_pieces():
    torrent = single_file_torrent()
    torrent["info"]["pieces"] = b"a" * 21
    with pytest.raises(InfoError, match="valid hashes"):
        Info.from_bencode(torrent)


def test_from_bencode_missing_piece_length():
    torrent = single_file_torrent()
    del torrent["info"]["piece length"]
    with pytest.raises(InfoError, match="piece length"):
        Info.from_bencode(torrent)


def test_from_bencode_missing_info():
    with pytest.raises(InfoError, match="invalid info field"):
        Info.from_bencode({"announce": b"http://x.example.com"})


def test_from_bencode_file_without_length():
    torrent = single_file_torrent()
    del torrent["info"]["length"]
    with pytest.raises(InfoError, match="length and name or path"):
        Info.from_bencode(torrent)


def test_torrent_bencode_round_trip_keeps_hash():
    info = Info.from_bencode(single_file_torrent())
    again = Info.from_bencode(bdecode(bencode(info.to_torrent_bencode())))
    assert again.hash == info.hash
    assert again.announce == info.announce
    assert again.total_len == info.total_len


def test_to_bencode_multi_file_uses_string_paths():
    info = Info.from_bencode(multi_file_torrent())
    encoded = info.to_bencode()
    assert encoded["files"][0] == {"length": 10, "path": b"dir/a/one.txt"}
    assert "length" not in encoded


# --- magnet -----------------------------------------------------------------


def test_from_magnet_hex():
    hex_hash = "0123456789abcdef0123456789abcdef01234567"
    info = Info.from_magnet(
        f"magnet:?xt=urn:btih:{hex_hash}&dn=My+File&tr=http%3A%2F%2Ft.example.com%2Fann"
    )
    assert info.hash == bytes.fromhex(hex_hash)
    assert info.name == "My File"
    assert info.url_list == [["http://t.example.com/ann"]]
    assert info.complete() is False
    assert info.piece_len_at(0) == 0


def test_from_magnet_base32():
    raw = bytes(range(20))
    encoded = base64.b32encode(raw).decode()
    info = Info.from_magnet(f"magnet:?xt=urn:btih:{encoded}")
    assert info.hash == raw
    assert info.name == ""


def test_from_magnet_wrong_scheme():
    with pytest.raises(InfoError, match="magnet URL scheme"):
        Info.from_magnet("http://example.com/?xt=urn:btih:" + "0" * 40)


def test_from_magnet_without_hash():
    with pytest.raises(InfoError, match="No hash"):
        Info.from_magnet("magnet:?dn=nothing")


# --- locations --------------------------------------------------------------


def test_generate_piece_idx_invariant():
    files = [TorrentFile(PurePosixPath("a"), 15), TorrentFile(PurePosixPath("b"), 5), TorrentFile(PurePosixPath("c"), 10)]
    idx = Info.generate_piece_idx(3, 10, files)
    assert len(idx) == 3
    for i, (file, offset) in enumerate(idx):
        assert sum(f.length for f in files[:file]) + offset == i * 10


def test_piece_disk_locs_cover_whole_piece():
    info = Info.from_bencode(multi_file_torrent())
    locs = list(info.piece_disk_locs(0))
    assert [loc.file for loc in locs] == [0, 1]
    assert sum(loc.end - loc.start for loc in locs) == info.piece_len_at(0)
    assert locs[0].end == locs[1].start


def test_iter_locations_returns_locations():
    info = Info.from_bencode(single_file_torrent())
    locs = list(iter_locations(info, None, 1, 0, 14))
    assert locs == [Location(file=0, file_len=30, offset=16, start=0, end=14, allocate=False, info=info)]