"""Lazy, immutable package sets.

A package set maps attribute names to package refs, nested package sets
(``darwin.apple_sdk.frameworks``) or plain values (functions such as
``rust_channel_of``). Every binding is a thunk forced on first read and
memoised, matching Nix's lazy attribute sets:

    pkgs = PackageSet.from_mapping({"carnix": carnix, "darwin": {"cf-private": cf}})
    pkgs.carnix
    pkgs["carnix"]
    pkgs.select("darwin.cf-private")

Sets are never mutated. Overlays (see pinpkgs.overlay) produce new sets.
All sets taking part in one fixed point share an evaluation stack, so a
binding that needs its own value raises CircularOverlayError instead of
recursing until Python gives up.
"""

import inspect
from collections.abc import Mapping
from typing import Any, Callable, Iterator

from pinpkgs.errors import CircularOverlayError

Thunk = Callable[[], Any]

_INTERNALS = frozenset({"_thunks", "_cache", "_stack", "_recipe"})


def constant(value: Any) -> Thunk:
    return lambda: value


class PackageSet(Mapping):
    """Lazily-evaluated, read-only attribute set."""

    def __init__(self, thunks: dict[str, Thunk] | None = None, *,
                 stack: list | None = None):
        object.__setattr__(self, "_thunks", dict(thunks or {}))
        object.__setattr__(self, "_cache", {})
        object.__setattr__(self, "_stack", [] if stack is None else stack)
        object.__setattr__(self, "_recipe", None)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "PackageSet":
        """Wrap already-evaluated values. Nested dicts become nested sets."""
        thunks = {}
        for name, value in values.items():
            if isinstance(value, Mapping) and not isinstance(value, PackageSet):
                value = cls.from_mapping(value)
            thunks[name] = constant(value)
        return cls(thunks)

    # --- evaluation ---

    def _force(self, name: str) -> Any:
        cache = self._cache
        if name in cache:
            return cache[name]
        key = (id(self), name)
        stack = self._stack
        if key in stack:
            start = stack.index(key)
            raise CircularOverlayError([n for _, n in stack[start:]] + [name])
        stack.append(key)
        try:
            value = self._thunks[name]()
        finally:
            stack.pop()
        cache[name] = value
        return value

    def _bind(self, thunks: dict[str, Thunk]) -> None:
        """Install the thunks of a fixed point. Only fix() calls this."""
        object.__setattr__(self, "_thunks", dict(thunks))
        self._cache.clear()

    # --- Mapping interface ---

    def __getitem__(self, name: str) -> Any:
        if name not in self._thunks:
            raise KeyError(name)
        return self._force(name)

    def __contains__(self, name: object) -> bool:
        return name in self._thunks

    def __iter__(self) -> Iterator[str]:
        return iter(self._thunks)

    def __len__(self) -> int:
        return len(self._thunks)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__") or name in _INTERNALS:
            raise AttributeError(name)
        if name not in self._thunks:
            raise AttributeError(f"package set has no attribute {name!r}")
        return self._force(name)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("package sets are immutable; apply an overlay instead")

    def __delattr__(self, name: str) -> None:
        raise AttributeError("package sets are immutable; apply an overlay instead")

    def __repr__(self) -> str:
        return f"<PackageSet with {len(self._thunks)} attributes>"

    # --- helpers ---

    def thunks(self) -> dict[str, Thunk]:
        return dict(self._thunks)

    def select(self, path: str) -> Any:
        """Look up a dotted attribute path, like ``lib.attrByPath``."""
        value: Any = self
        walked = []
        for part in path.split("."):
            walked.append(part)
            if isinstance(value, PackageSet):
                if part not in value:
                    raise KeyError(".".join(walked))
                value = value[part]
            elif hasattr(value, part):
                value = getattr(value, part)
            else:
                raise KeyError(".".join(walked))
        return value

    def call(self, fn):
        """Resolve fn's parameters from this package set and call it.

        Like Nix's callPackage: each parameter name is looked up as an
        attribute of the set.

            pkgs.call(lambda rustc, cargo: [rustc, cargo])
        """
        kwargs = {}
        for name in inspect.signature(fn).parameters:
            if name == "self":
                continue
            if name not in self._thunks:
                raise AttributeError(
                    f"package set has no attribute {name!r} "
                    f"(required by {fn.__qualname__})"
                )
            kwargs[name] = self._force(name)
        return fn(**kwargs)
