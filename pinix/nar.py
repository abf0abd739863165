"""NAR serialization, used to content-address fetched source trees.

A fetched tarball is unpacked and its tree hashed the way
``builtins.fetchTarball`` does it: serialize to NAR, SHA-256 the
stream, and derive a "source" store path from that digest.

NAR keeps only what is reproducible: file contents, the executable bit,
symlink targets and sorted directory entries. Every token is framed as
uint64_le(length) + bytes + zero padding to 8 bytes.

See: nix/src/libutil/archive.cc
"""

import hashlib
import os
import struct
from pathlib import Path
from typing import Iterator


def _frame(token: str | bytes) -> bytes:
    if isinstance(token, str):
        token = token.encode()
    padding = -len(token) % 8
    return struct.pack("<Q", len(token)) + token + b"\0" * padding


def _node(path: Path) -> Iterator[bytes]:
    yield _frame("(")
    yield _frame("type")
    if path.is_symlink():
        yield _frame("symlink")
        yield _frame("target")
        yield _frame(os.readlink(path))
    elif path.is_file():
        yield _frame("regular")
        if os.access(path, os.X_OK):
            yield _frame("executable")
            yield _frame("")
        yield _frame("contents")
        yield _frame(path.read_bytes())
    elif path.is_dir():
        yield _frame("directory")
        for entry in sorted(os.listdir(path)):
            yield _frame("entry")
            yield _frame("(")
            yield _frame("name")
            yield _frame(entry)
            yield _frame("node")
            yield from _node(path / entry)
            yield _frame(")")
    else:
        raise ValueError(f"unsupported file type: {path}")
    yield _frame(")")


def nar_chunks(path: str | Path) -> Iterator[bytes]:
    yield _frame("nix-archive-1")
    yield from _node(Path(path))


def nar_serialize(path: str | Path) -> bytes:
    return b"".join(nar_chunks(path))


def nar_hash(path: str | Path) -> bytes:
    """SHA-256 of the NAR stream, what ``nix hash path`` prints."""
    digest = hashlib.sha256()
    for chunk in nar_chunks(path):
        digest.update(chunk)
    return digest.digest()
