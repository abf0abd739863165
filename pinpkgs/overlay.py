"""Overlay composition via a lazy fixed point.

Nix's overlay pattern in Python:

    Nix:    rust_replace = self: super: { rustc = super.rustChannelOf {...}; };
    Python: def rust_replace(final, prev):
                return {"rustc": lambda: prev.rust_channel_of(...).compiler}

An overlay is a function ``(final, prev) -> dict``. ``prev`` is the set
as left by the base and all earlier overlays; ``final`` is the finished
fixed point, so an overlay may refer to bindings that later overlays
define. Callables in the returned dict are zero-argument thunks, forced
lazily; other values are bound as they are (to bind a function itself,
return ``{"f": lambda: f}``). Later overlays shadow
earlier bindings (last writer wins).

Because ``final`` is only complete once every overlay has returned, an
overlay must not read from ``final`` at the top level of its body, only
inside thunks.

    pkgs = apply(base, [moz_overlay, rust_replace, unstable_overlay])

Every call to apply() builds a fresh fixed point. Nothing is cached
across calls, so applying a non-idempotent overlay twice is visible.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from pinpkgs.errors import OverlayConflictError
from pinpkgs.package_set import PackageSet, Thunk, constant

logger = logging.getLogger(__name__)

OverlayFn = Callable[[PackageSet, PackageSet], Mapping[str, Any]]


@dataclass(frozen=True)
class Overlay:
    name: str
    fn: OverlayFn

    def __call__(self, final: PackageSet, prev: PackageSet) -> Mapping[str, Any]:
        return self.fn(final, prev)


def as_overlay(obj: Overlay | OverlayFn, name: str | None = None) -> Overlay:
    if isinstance(obj, Overlay):
        return obj
    return Overlay(name or getattr(obj, "__name__", "<overlay>"), obj)


def _as_thunk(value: Any) -> Thunk:
    if callable(value) and not isinstance(value, PackageSet):
        return value
    return constant(value)


def fix(f: Callable[[PackageSet], dict[str, Thunk]]) -> PackageSet:
    """Compute the fixed point of ``f``, like ``lib.fix``.

    ``f`` receives the (still empty) result set and returns its thunks.
    Thunks close over the result, so forcing one can read any other
    binding of the finished set.
    """
    result = PackageSet()
    result._bind(f(result))
    return result


def compose_overlays(base: dict[str, Thunk], overlays: Iterable[Overlay], *,
                     allow_shadowing: bool = True):
    """Fold overlays over ``base`` into a function suitable for fix().

    Like ``lib.composeManyExtensions``: each overlay sees the merge of
    the base and all earlier layers as ``prev``.
    """
    return _compose(base, [(as_overlay(o), allow_shadowing) for o in overlays])


def _compose(base: dict[str, Thunk], layers: list[tuple[Overlay, bool]]):
    def composed(final: PackageSet) -> dict[str, Thunk]:
        layer = dict(base)
        for overlay, allow_shadowing in layers:
            prev = PackageSet(layer, stack=final._stack)
            result = overlay(final, prev)
            if not allow_shadowing:
                for name in result:
                    if name in layer:
                        raise OverlayConflictError(name, overlay.name)
            logger.debug("overlay %s binds %s", overlay.name, ", ".join(sorted(result)) or "nothing")
            layer = {**layer, **{n: _as_thunk(v) for n, v in result.items()}}
        return layer

    return composed


def _split_base(base: PackageSet | Mapping[str, Any]) -> tuple[dict[str, Thunk], list[tuple[Overlay, bool]]]:
    """Thunks and overlay layers a set was made from.

    A set produced by apply() is re-fixed from its own base and overlays,
    so the earlier bindings see the new ``final`` (like ``pkgs.extend``).
    Each earlier overlay keeps the shadowing policy it was applied with.
    """
    if isinstance(base, PackageSet):
        if base._recipe is not None:
            return base._recipe
        return base.thunks(), []
    return PackageSet.from_mapping(base).thunks(), []


def apply(base: PackageSet | Mapping[str, Any],
          overlays: Iterable[Overlay | OverlayFn], *,
          allow_shadowing: bool = True) -> PackageSet:
    """Apply ``overlays`` to ``base`` in order and return the new set.

    With ``allow_shadowing=False`` an overlay of this call rebinding an
    existing name raises OverlayConflictError instead of silently winning.
    """
    base_thunks, earlier = _split_base(base)
    layers = earlier + [(as_overlay(o), allow_shadowing) for o in overlays]
    result = fix(_compose(base_thunks, layers))
    object.__setattr__(result, "_recipe", (base_thunks, layers))
    return result


class OverlayRegistry:
    """An ordered, named sequence of overlays over an explicit base set.

    The base is passed in rather than looked up from an ambient
    ``<nixpkgs>``; the same registry can be applied any number of times.

        registry = OverlayRegistry(base)
        registry.register("rust_replace", rust_replace)

        @registry.register("unstable")
        def unstable(final, prev): ...

        pkgs = registry.apply()
    """

    def __init__(self, base: PackageSet | Mapping[str, Any],
                 overlays: Iterable[Overlay | OverlayFn] = ()):
        self.base = base
        self._overlays: list[Overlay] = []
        self.extend(overlays)

    @property
    def names(self) -> list[str]:
        return [o.name for o in self._overlays]

    @property
    def overlays(self) -> list[Overlay]:
        return list(self._overlays)

    def __len__(self) -> int:
        return len(self._overlays)

    def register(self, name: str, fn: OverlayFn | None = None):
        if fn is None:
            def decorator(f: OverlayFn) -> OverlayFn:
                self.register(name, f)
                return f
            return decorator
        self._overlays.append(Overlay(name, fn))
        return fn

    def extend(self, overlays: Iterable[Overlay | OverlayFn]) -> None:
        self._overlays.extend(as_overlay(o) for o in overlays)

    def apply(self, *, allow_shadowing: bool = True) -> PackageSet:
        logger.info("applying %d overlays: %s", len(self._overlays), ", ".join(self.names))
        return apply(self.base, self._overlays, allow_shadowing=allow_shadowing)
