# torrentcore

Building blocks for BitTorrent clients. It is written in plain Python and has
no third-party dependencies.

## What it provides

- `torrentcore.info`
  - `Info.from_bencode` parses a decoded `.torrent` dictionary.
  - `Info.from_magnet` parses a magnet link.
  - `Info` gives piece and block lengths (`pieces()`, `piece_len_at()`,
    `block_len()`).
  - `block_disk_locs()` and `piece_disk_locs()` map a block or a piece onto
    the files it covers, as `Location` records.
  - `to_bencode()` and `to_torrent_bencode()` turn the metadata back into
    bencodable dictionaries.
  - The module also has a small bencode codec, `bencode` and `bdecode`.
  - Malformed metadata raises `InfoError`.
- `torrentcore.message`
  - Peer wire protocol messages: `Handshake`, `KeepAlive`, `Choke`,
    `Unchoke`, `Interested`, `Uninterested`, `Have`, `BitfieldMessage`,
    `Request`, `Piece`, `Cancel`, `Port` and `Extension`.
  - Each message has `encode()`, which returns its wire bytes.
  - `Bitfield` keeps track of which pieces a peer holds.
- `torrentcore.writer`
  - `Writer` sends messages over a non-blocking connection, which is any
    object with `write(data)`.
  - After a short write it picks up again when `writable()` is called.
  - Messages that cannot go out yet wait in `write_queue`.
- `torrentcore.reader`
  - `Reader` parses incoming messages step by step from a connection with
    `read(n)`.
  - `readable()` returns a message, or `ReadResult.BLOCKED` when no more data
    is available yet.
  - Malformed input or end of stream raises `ReadError`.
- `torrentcore.peer`
  - `PeerConn` joins a socket-like object with a `Reader` and a `Writer`.
  - `Peer` tracks the state of one remote peer: choke and interest on both
    sides, the pieces the peer holds, and its request queue limit
    (`queue_reqs()`).
  - `Peer` also records the extension ids the peer announced (`ExtIds`) and
    the DHT ports it reports in `dht_nodes`.
  - When the peer breaks the protocol, `Peer` raises `ProtocolError`.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Examples

Reading a `.torrent` file:

```python
from torrentcore.info import Info, bdecode

with open("example.torrent", "rb") as fh:
    info = Info.from_bencode(bdecode(fh.read()))

print(info.name, info.pieces(), info.total_len)
for loc in info.piece_disk_locs(0):
    print(loc.file, loc.offset, loc.start, loc.end)
```

A magnet link gives an incomplete `Info`. It holds only the info hash, the
display name and the tracker list:

```python
info = Info.from_magnet("magnet:?xt=urn:btih:" + "0" * 40 + "&dn=example")
assert not info.complete()
```

Writing and reading a message:

```python
import io
from torrentcore.message import Have
from torrentcore.reader import Reader
from torrentcore.writer import Writer

out = io.BytesIO()
Writer().write_message(Have(1), out)
assert out.getvalue() == b"\x00\x00\x00\x05\x04\x00\x00\x00\x01"

reader = Reader(handshake=False)
assert reader.readable(io.BytesIO(out.getvalue())) == Have(1)
```

## What it does not do

This package is a set of protocol and metadata primitives, not a complete
client. It does not:

- open network connections;
- talk to trackers or the DHT;
- pick pieces or choke peers;
- read or write piece data on disk;
- keep a session.

There is no command-line program. Those parts are left to the code that uses
these building blocks.