[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "torrentcore"
version = "0.1.0"
description = "BitTorrent metainfo parsing, piece layout and peer wire protocol primitives"
requires-python = ">=3.10"
keywords = ["bittorrent", "torrent", "bencode", "magnet", "peer-wire-protocol"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["torrentcore"]

[tool.pytest.ini_options]
addopts = "-ra"
