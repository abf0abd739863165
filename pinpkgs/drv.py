"""Package refs: derivations with computed output paths.

A package ref is what every binding in a package set points at, and
what an environment lists as its build inputs. Its identity is its .drv
store path, computed from the full derivation closure, so two refs are
the same package exactly when their drv_path is equal:

    rustc = drv(name="rustc-1.28.0", builder="/bin/sh",
                args=["-c", "..."], env={"version": "1.28.0"})
    str(rustc)   # /nix/store/...-rustc-1.28.0

Nothing is built. Output paths are derived the way Nix derives them,
which keeps a descriptor reproducible without a store.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any

from pinix.derivation import (
    Derivation,
    DerivationOutput,
    hash_derivation_modulo,
    serialize,
)
from pinix.store_path import (
    make_fixed_output_path,
    make_output_path,
    make_text_store_path,
)

DEFAULT_SYSTEM = "x86_64-linux"


def _input_hashes(deps: list[Package], hashes: dict[str, bytes]) -> None:
    """Fill ``hashes`` with modulo hashes of ``deps`` and their closure.

    Inputs are hashed with their output paths filled in; only the
    derivation being created has its own outputs masked.
    """
    for dep in deps:
        if dep.drv_path in hashes:
            continue
        _input_hashes(dep.deps, hashes)
        hashes[dep.drv_path] = hash_derivation_modulo(dep.drv, hashes)


@dataclass(frozen=True)
class Package:
    """A resolved derivation. ``str(pkg)`` is its default output path."""

    name: str
    drv: Derivation = field(compare=False, repr=False)
    drv_path: str
    outputs: dict[str, str] = field(compare=False)
    _args: dict[str, Any] = field(compare=False, repr=False)  # drv() kwargs, for override()

    def __hash__(self) -> int:
        return hash(self.drv_path)

    @property
    def out(self) -> str:
        return self.outputs["out"]

    @property
    def version(self) -> str:
        return self.drv.env.get("version", "")

    @property
    def deps(self) -> list[Package]:
        return self._args.get("deps") or []

    @property
    def bin(self) -> str:
        return f"{self.out}/bin"

    def __str__(self) -> str:
        return self.out

    def override(self, **kw) -> Package:
        """Re-derive with changed arguments, like ``pkg.override``."""
        return drv(**{**self._args, **kw})


def drv(
    name: str,
    builder: str,
    system: str = DEFAULT_SYSTEM,
    args: list[str] | None = None,
    env: dict[str, str] | None = None,
    output_names: list[str] | None = None,
    deps: list[Package] | None = None,
    srcs: list[str] | None = None,
    output_hash: str | None = None,
    output_hash_mode: str = "flat",
) -> Package:
    """Create a Package with computed output paths and .drv store path.

    Args:
        name:             Derivation name (the store path suffix).
        builder:          Builder executable, or "builtin:fetchurl".
        system:           Platform the derivation is built on.
        args:             Arguments to the builder.
        env:              Extra environment variables.
        output_names:     Outputs (default ["out"]).
        deps:             Input derivations.
        srcs:             Input source store paths.
        output_hash:      sha256 hex for a fixed-output derivation.
        output_hash_mode: "flat" or "recursive" (fixed outputs only).
    """
    args = list(args or [])
    env = dict(env or {})
    output_names = list(output_names or ["out"])
    deps = list(deps or [])
    srcs = list(srcs or [])
    orig_args = dict(
        name=name, builder=builder, system=system, args=args, env=env,
        output_names=output_names, deps=deps, srcs=srcs,
        output_hash=output_hash, output_hash_mode=output_hash_mode,
    )

    fixed = output_hash is not None
    if fixed and output_names != ["out"]:
        raise ValueError(f"fixed-output derivation {name!r} must have only 'out'")
    recursive = output_hash_mode == "recursive"
    algo = ("r:sha256" if recursive else "sha256") if fixed else ""

    drv_obj = Derivation(
        outputs={n: DerivationOutput("", algo, output_hash or "") for n in output_names},
        input_drvs={dep.drv_path: list(dep.outputs) for dep in deps},
        input_srcs=sorted(srcs),
        platform=system,
        builder=builder,
        args=list(args),
        env=dict(env),
    )
    drv_obj.env.setdefault("name", name)
    drv_obj.env.setdefault("builder", builder)
    drv_obj.env.setdefault("system", system)

    if fixed:
        outputs = {"out": make_fixed_output_path(
            name, bytes.fromhex(output_hash), recursive=recursive)}
    else:
        for n in output_names:
            drv_obj.env.setdefault(n, "")
        hashes: dict[str, bytes] = {}
        _input_hashes(deps, hashes)
        drv_hash = hash_derivation_modulo(drv_obj, hashes)
        outputs = {n: make_output_path(drv_hash, n, name) for n in output_names}

    for n, path in outputs.items():
        drv_obj.outputs[n] = DerivationOutput(path, algo, output_hash or "")
        drv_obj.env[n] = path

    refs = sorted(drv_obj.input_drvs) + sorted(srcs)
    drv_path = make_text_store_path(name + ".drv", serialize(drv_obj).encode(), refs)

    return Package(
        name=name,
        drv=drv_obj,
        drv_path=drv_path,
        outputs=outputs,
        _args=orig_args,
    )
