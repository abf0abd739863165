"""Fixed-output fetchurl derivation, the equivalent of <nix/fetchurl.nix>.

``builtin:fetchurl`` is implemented inside the Nix daemon, so a fetch
needs no other package. Because the derivation is fixed-output, its
path depends only on the name and the expected sha256, never on the
URL it is fetched from.

Hashes may be given as 64-char hex, 52-char nix32 or "sha256-<base64>".
"""

import base64

from pinix.hashing import nix32_decode
from pinpkgs.drv import Package, drv

FETCHURL_ENV_BASE = {
    "impureEnvVars": "http_proxy https_proxy ftp_proxy all_proxy no_proxy",
    "preferLocalBuild": "1",
}


def sha256_to_hex(value: str) -> str:
    """Normalize a sha256 given in hex, nix32 or SRI form to hex."""
    if value.startswith("sha256-"):
        raw = base64.b64decode(value[len("sha256-"):])
    elif len(value) == 64:
        raw = bytes.fromhex(value)
    elif len(value) == 52:
        raw = nix32_decode(value)
    else:
        raise ValueError(f"unrecognised sha256 hash: {value!r}")
    if len(raw) != 32:
        raise ValueError(f"sha256 hash has {len(raw)} bytes: {value!r}")
    return raw.hex()


def fetchurl(name: str, url: str, sha256: str, *,
             executable: bool = False, unpack: bool = False) -> Package:
    """A fetch of ``url`` pinned to ``sha256``.

    ``unpack`` makes it a recursive fetch (like fetchzip/fetchTarball)
    addressed by the NAR hash of the unpacked tree.
    """
    hex_hash = sha256_to_hex(sha256)
    mode = "recursive" if unpack else "flat"
    return drv(
        name=name,
        builder="builtin:fetchurl",
        system="builtin",
        output_hash=hex_hash,
        output_hash_mode=mode,
        env={
            **FETCHURL_ENV_BASE,
            "executable": "1" if executable else "",
            "outputHash": hex_hash,
            "outputHashAlgo": "sha256",
            "outputHashMode": mode,
            "unpack": "1" if unpack else "",
            "url": url,
            "urls": url,
        },
    )
