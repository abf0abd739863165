"""Hash helpers for content-addressed package refs.

Store path hashes are SHA-256 digests XOR-folded to 160 bits and printed
in nix32, the base32 dialect Nix uses for store paths:

  - alphabet "0123456789abcdfghijklmnpqrsvwxyz" (no e, o, t, u)
  - 5-bit groups are emitted from the highest bit offset down to zero,
    so the string reads "backwards" compared to RFC 4648

A 20-byte folded hash prints as 32 characters, a full digest as 52.

See: nix/src/libutil/hash.cc : compressHash(), printHash32()
"""

import hashlib

NIX32_ALPHABET = "0123456789abcdfghijklmnpqrsvwxyz"
_NIX32_VALUES = {ch: value for value, ch in enumerate(NIX32_ALPHABET)}


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fold(digest: bytes, size: int) -> bytes:
    """XOR-fold ``digest`` into ``size`` bytes.

    Byte i of the input lands on byte ``i % size`` of the output, so
    every input byte contributes (unlike truncation).
    """
    folded = bytearray(size)
    for index, byte in enumerate(digest):
        folded[index % size] ^= byte
    return bytes(folded)


def nix32_encode(data: bytes) -> str:
    """Print ``data`` in nix32."""
    length = (len(data) * 8 + 4) // 5
    chars = []
    for group in reversed(range(length)):
        bit = group * 5
        byte, shift = divmod(bit, 8)
        value = data[byte] >> shift
        if byte + 1 < len(data):
            value |= data[byte + 1] << (8 - shift)
        chars.append(NIX32_ALPHABET[value & 0x1F])
    return "".join(chars)


def nix32_decode(text: str) -> bytes:
    """Parse a nix32 string back into bytes."""
    size = len(text) * 5 // 8
    out = bytearray(size)
    for group, ch in enumerate(reversed(text)):
        if ch not in _NIX32_VALUES:
            raise ValueError(f"invalid nix32 character: {ch!r}")
        value = _NIX32_VALUES[ch]
        byte, shift = divmod(group * 5, 8)
        out[byte] |= (value << shift) & 0xFF
        spill = value >> (8 - shift)
        if spill and byte + 1 < size:
            out[byte + 1] |= spill
    return bytes(out)
