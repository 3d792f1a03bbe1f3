"""BitTorrent metainfo, bencoding, wire messages, and peer reader/writer state."""

__version__ = "0.1.0"
__all__ = ["info", "message", "writer", "reader", "peer"]