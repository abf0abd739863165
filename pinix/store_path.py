"""Store path computation for package refs.

Every package ref in pinix is named by a store path,
``/nix/store/<hash>-<name>``, computed exactly as Nix computes it so the
same descriptor always yields the same paths. The hash is:

    nix32(fold(sha256("<type>:sha256:<inner hex>:/nix/store:<name>"), 20))

where <type> says what kind of object it is:

    "text[:<ref>...]"     text files, e.g. a serialized .drv
    "source[:<ref>...]"   a fetched source tree (inner hash = NAR hash)
    "output:<name>"       a derivation output (inner = modulo hash)

Reference lists are sorted and joined with ':'; with no references the
type carries no trailing colon.

See: nix/src/libstore/store-api.cc : makeStorePath()
"""

from pinix.hashing import fold, nix32_encode, sha256

STORE_DIR = "/nix/store"
STORE_HASH_BYTES = 20


def make_store_path(kind: str, inner_hash: bytes, name: str) -> str:
    fingerprint = f"{kind}:sha256:{inner_hash.hex()}:{STORE_DIR}:{name}"
    digest = fold(sha256(fingerprint.encode()), STORE_HASH_BYTES)
    return f"{STORE_DIR}/{nix32_encode(digest)}-{name}"


def _with_refs(kind: str, references: list[str] | None) -> str:
    return ":".join([kind, *sorted(references or [])])


def make_text_store_path(name: str, content: bytes,
                         references: list[str] | None = None) -> str:
    """Path of a text object (``builtins.toFile``, a .drv file)."""
    return make_store_path(_with_refs("text", references), sha256(content), name)


def make_source_store_path(name: str, nar_hash: bytes,
                           references: list[str] | None = None) -> str:
    """Path of an imported source tree, keyed by its NAR hash."""
    return make_store_path(_with_refs("source", references), nar_hash, name)


def make_fixed_output_path(name: str, content_hash: bytes, *,
                           recursive: bool = False) -> str:
    """Path of a fixed-output derivation (fetchurl) with a sha256 hash.

    Recursive sha256 outputs are addressed like source imports; flat
    ones go through an intermediate "fixed:out:" descriptor.
    """
    if recursive:
        return make_store_path("source", content_hash, name)
    inner = sha256(f"fixed:out:sha256:{content_hash.hex()}:".encode())
    return make_store_path("output:out", inner, name)


def make_output_path(drv_hash: bytes, output: str, name: str) -> str:
    """Path of a derivation output. Non-"out" outputs get a suffix."""
    suffix = "" if output == "out" else f"-{output}"
    return make_store_path(f"output:{output}", drv_hash, name + suffix)
