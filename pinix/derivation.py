"""Derivations and their ATerm serialization.

A derivation is the buildable description behind every package ref and
behind the shell environment itself. It is written out as ATerm:

    Derive([outputs],[inputDrvs],[inputSrcs],"system","builder",[args],[env])

Outputs, input derivations, input sources and env entries are sorted;
args keep their order. A fixed-output derivation (a fetchurl) has a
single "out" whose hash_algo/hash_value pin the expected content.

See: nix/src/libstore/derivations.cc
"""

from dataclasses import dataclass, field

from pinix.hashing import sha256


@dataclass
class DerivationOutput:
    path: str
    hash_algo: str = ""  # "sha256" or "r:sha256" for fixed outputs
    hash_value: str = ""


@dataclass
class Derivation:
    outputs: dict[str, DerivationOutput] = field(default_factory=dict)
    input_drvs: dict[str, list[str]] = field(default_factory=dict)  # drv path -> outputs
    input_srcs: list[str] = field(default_factory=list)
    platform: str = ""
    builder: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    @property
    def is_fixed_output(self) -> bool:
        out = self.outputs.get("out")
        return len(self.outputs) == 1 and out is not None and out.hash_algo != ""

    def to_json(self) -> dict:
        """Shape used by ``pinix show`` (mirrors ``nix derivation show``)."""
        return {
            "outputs": {
                name: {"path": o.path, "hashAlgo": o.hash_algo, "hash": o.hash_value}
                for name, o in self.outputs.items()
            },
            "inputDrvs": self.input_drvs,
            "inputSrcs": self.input_srcs,
            "system": self.platform,
            "builder": self.builder,
            "args": self.args,
            "env": self.env,
        }


_ESCAPES = str.maketrans({"\\": "\\\\", '"': '\\"', "\n": "\\n", "\r": "\\r", "\t": "\\t"})


def _q(s: str) -> str:
    return '"' + s.translate(_ESCAPES) + '"'


def _list(items) -> str:
    return "[" + ",".join(items) + "]"


def serialize(drv: Derivation) -> str:
    """Serialize a Derivation to ATerm."""
    outputs = _list(
        f"({_q(name)},{_q(o.path)},{_q(o.hash_algo)},{_q(o.hash_value)})"
        for name, o in sorted(drv.outputs.items())
    )
    input_drvs = _list(
        f"({_q(path)},{_list(_q(o) for o in sorted(outs))})"
        for path, outs in sorted(drv.input_drvs.items())
    )
    input_srcs = _list(_q(s) for s in sorted(drv.input_srcs))
    args = _list(_q(a) for a in drv.args)
    env = _list(f"({_q(k)},{_q(v)})" for k, v in sorted(drv.env.items()))
    return (
        f"Derive({outputs},{input_drvs},{input_srcs},"
        f"{_q(drv.platform)},{_q(drv.builder)},{args},{env})"
    )


def hash_derivation_modulo(drv: Derivation,
                           drv_hashes: dict[str, bytes] | None = None) -> bytes:
    """The hash output paths are computed from.

    Fixed-output derivations hash only their pinned content, so how a
    source is fetched never changes its path. Any other derivation is
    hashed with its own output paths blanked and every input .drv path
    replaced by that input's modulo hash (from ``drv_hashes``).

    See: nix/src/libstore/derivations.cc : hashDerivationModulo()
    """
    if drv.is_fixed_output:
        out = drv.outputs["out"]
        return sha256(f"fixed:out:{out.hash_algo}:{out.hash_value}:{out.path}".encode())

    drv_hashes = drv_hashes or {}
    inputs = {}
    for path, outs in drv.input_drvs.items():
        if path not in drv_hashes:
            raise ValueError(f"missing hash for input derivation: {path}")
        inputs[drv_hashes[path].hex()] = sorted(outs)

    masked = Derivation(
        outputs={n: DerivationOutput("", o.hash_algo, o.hash_value)
                 for n, o in drv.outputs.items()},
        input_drvs=inputs,
        input_srcs=list(drv.input_srcs),
        platform=drv.platform,
        builder=drv.builder,
        args=list(drv.args),
        env=dict(drv.env),
    )
    return sha256(serialize(masked).encode())
