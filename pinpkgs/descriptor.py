"""Descriptor files: a shell environment declared in TOML.

    name = "moz_overlay_shell"
    overlays = ["overlays/unstable.py"]
    hook = "echo ready"

    [toolchain]
    catalog = "https://example.org/rust-channels.toml"
    channel = "1.28.0"            # or strategy = "latest-stable"

    [packages.carnix]
    version = "0.9.8"
    url = "https://example.org/carnix-0.9.8.tar.gz"
    sha256 = "..."

    [[inputs]]
    packages = ["carnix", "_1password"]

    [[inputs]]
    platform = "darwin"
    packages = ["darwin.cf-private"]

    [[intercept]]
    command = "op"
    special_arg = "signin"

instantiate() turns a loaded descriptor into an environment in a fixed
order: fetch the catalog, compose overlays, resolve the toolchain,
build the environment, render the hook. The first error aborts.
"""

from __future__ import annotations

import hashlib
import importlib.util
import logging
import re
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any

from pinpkgs.channels import (
    Catalog,
    ChannelResolver,
    ChannelSpec,
    RemoteCatalog,
    ResolutionStrategy,
    ToolchainRef,
    channel_overlay,
    host_target,
    toolchain_overlay,
)
from pinpkgs.config import Settings
from pinpkgs.drv import Package
from pinpkgs.environment import (
    EnvironmentDescriptor,
    PlatformCondition,
    build_environment,
    matches,
)
from pinpkgs.errors import DescriptorError, MissingToolchainBindingError
from pinpkgs.fetcher import Fetcher
from pinpkgs.fetchurl import fetchurl
from pinpkgs.overlay import Overlay, OverlayRegistry, as_overlay
from pinpkgs.package_set import PackageSet
from pinpkgs.pkgs.binary_package import make_binary_package
from pinpkgs.pkgs.rust_component import nix_system
from pinpkgs.shell_hook import HookInterceptionRule, render_hook

logger = logging.getLogger(__name__)

_STORE_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9+\-._?=]")


@dataclass(frozen=True)
class PackageEntry:
    name: str
    url: str
    sha256: str
    version: str = ""
    system: str | None = None


@dataclass(frozen=True)
class ToolchainSection:
    catalog: str
    channel: ChannelSpec
    compiler: str = "rustc"
    build_tool: str = "cargo"


@dataclass(frozen=True)
class InputGroup:
    condition: PlatformCondition
    packages: tuple[str, ...]


@dataclass(frozen=True)
class ShellSpec:
    path: Path
    name: str
    toolchain: ToolchainSection | None = None
    packages: tuple[PackageEntry, ...] = ()
    overlays: tuple[Path, ...] = ()
    inputs: tuple[InputGroup, ...] = ()
    intercept: tuple[HookInterceptionRule, ...] = ()
    hook: str | None = None


# --- loading ---

def _require_str(value: Any, *, what: str, path: Path) -> str:
    if not isinstance(value, str) or not value:
        raise DescriptorError(path, f"'{what}' must be a non-empty string")
    return value


def _table_list(value: Any, *, what: str, path: Path) -> list[dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list) and all(isinstance(x, dict) for x in value):
        return value
    raise DescriptorError(path, f"'{what}' must be a table or array-of-tables")


def _load_toolchain(raw: Any, path: Path) -> ToolchainSection | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise DescriptorError(path, "[toolchain] must be a table")
    catalog = _require_str(raw.get("catalog"), what="toolchain.catalog", path=path)
    try:
        strategy = ResolutionStrategy(raw.get("strategy", "exact"))
    except ValueError:
        raise DescriptorError(
            path, f"toolchain.strategy must be 'exact' or 'latest-stable', got {raw.get('strategy')!r}"
        ) from None
    if strategy is ResolutionStrategy.EXACT_VERSION:
        channel = ChannelSpec(_require_str(raw.get("channel"), what="toolchain.channel", path=path))
    else:
        channel = ChannelSpec(raw.get("channel") or "stable", strategy)
    return ToolchainSection(
        catalog=catalog,
        channel=channel,
        compiler=raw.get("compiler", "rustc"),
        build_tool=raw.get("build_tool", "cargo"),
    )


def _load_packages(raw: Any, path: Path, prefix: str = "") -> list[PackageEntry]:
    """``[packages.a]`` entries; nested tables give dotted names (``darwin.cf-private``)."""
    if raw is None:
        return []
    if not isinstance(raw, dict):
        raise DescriptorError(path, "[packages] must be a table")
    out = []
    for key, table in raw.items():
        name = prefix + key
        if not isinstance(table, dict):
            raise DescriptorError(path, f"packages.{name} must be a table")
        if "url" not in table:
            out.extend(_load_packages(table, path, prefix=name + "."))
            continue
        out.append(PackageEntry(
            name=name,
            url=_require_str(table.get("url"), what=f"packages.{name}.url", path=path),
            sha256=_require_str(table.get("sha256"), what=f"packages.{name}.sha256", path=path),
            version=str(table.get("version", "")),
            system=table.get("system"),
        ))
    return out


def _load_inputs(raw: Any, path: Path) -> list[InputGroup]:
    groups = []
    for i, table in enumerate(_table_list(raw, what="inputs", path=path), start=1):
        names = table.get("packages")
        if not isinstance(names, list) or not all(isinstance(n, str) and n for n in names):
            raise DescriptorError(path, f"[[inputs]] entry {i} requires 'packages' (array of strings)")
        try:
            condition = PlatformCondition.parse(table.get("platform", "any"))
        except ValueError as e:
            raise DescriptorError(path, f"[[inputs]] entry {i}: {e}") from None
        groups.append(InputGroup(condition, tuple(names)))
    return groups


def _load_intercept(raw: Any, path: Path) -> list[HookInterceptionRule]:
    rules = []
    for i, table in enumerate(_table_list(raw, what="intercept", path=path), start=1):
        command = _require_str(table.get("command"), what=f"intercept[{i}].command", path=path)
        try:
            rules.append(HookInterceptionRule(command, table.get("special_arg", "signin")))
        except ValueError as e:
            raise DescriptorError(path, f"[[intercept]] entry {i}: {e}") from None
    return rules


def load_descriptor(path: str | Path) -> ShellSpec:
    path = Path(path)
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise DescriptorError(path, f"cannot read descriptor: {e.strerror or e}") from e
    except tomllib.TOMLDecodeError as e:
        raise DescriptorError(path, f"invalid TOML: {e}") from e

    known = {"name", "overlays", "hook", "toolchain", "packages", "inputs", "intercept"}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise DescriptorError(path, f"unknown top-level keys: {', '.join(unknown)}")

    overlays = raw.get("overlays", [])
    if not isinstance(overlays, list) or not all(isinstance(o, str) for o in overlays):
        raise DescriptorError(path, "'overlays' must be an array of file paths")
    hook = raw.get("hook")
    if hook is not None and not isinstance(hook, str):
        raise DescriptorError(path, "'hook' must be a string")

    return ShellSpec(
        path=path,
        name=_require_str(raw.get("name"), what="name", path=path),
        toolchain=_load_toolchain(raw.get("toolchain"), path),
        packages=tuple(_load_packages(raw.get("packages"), path)),
        overlays=tuple(path.parent / o for o in overlays),
        inputs=tuple(_load_inputs(raw.get("inputs"), path)),
        intercept=tuple(_load_intercept(raw.get("intercept"), path)),
        hook=hook,
    )


# --- overlay files ---

def _load_module(py_file: Path, *, module_name: str) -> ModuleType:
    spec = importlib.util.spec_from_file_location(module_name, py_file)
    if spec is None or spec.loader is None:
        raise ImportError(f"could not load overlay module from {py_file}")
    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    try:
        spec.loader.exec_module(mod)
    except Exception:
        sys.modules.pop(module_name, None)
        raise
    return mod


def load_overlay_file(py_file: Path) -> list[Overlay]:
    """Overlays defined by a python file: ``overlay`` or ``OVERLAYS``."""
    if not py_file.is_file():
        raise DescriptorError(py_file, "overlay file not found")
    digest = hashlib.sha256(str(py_file.resolve()).encode()).hexdigest()[:12]
    mod = _load_module(py_file, module_name=f"pinix_overlay_{py_file.stem}_{digest}")
    if callable(getattr(mod, "overlay", None)):
        return [as_overlay(mod.overlay, py_file.stem)]
    overlays = getattr(mod, "OVERLAYS", None)
    if isinstance(overlays, (list, tuple)):
        return [as_overlay(o) for o in overlays]
    raise DescriptorError(py_file, "overlay file must define overlay(final, prev) or OVERLAYS")


# --- instantiation ---

def _store_name(url: str) -> str:
    return _STORE_NAME_UNSAFE.sub("_", url.rstrip("/").rsplit("/", 1)[-1]) or "source"


def _nest(entries: dict[str, Package]) -> dict[str, Any]:
    tree: dict[str, Any] = {}
    for dotted, ref in entries.items():
        *parents, leaf = dotted.split(".")
        node = tree
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = ref
    return tree


def base_package_set(spec: ShellSpec, system: str) -> PackageSet:
    """The explicit base registry for the descriptor's overlays."""
    refs = {}
    for entry in spec.packages:
        try:
            src = fetchurl(_store_name(entry.url), entry.url, entry.sha256)
        except ValueError as e:
            raise DescriptorError(spec.path, f"packages.{entry.name}.sha256: {e}") from e
        pname = entry.name.rsplit(".", 1)[-1]
        refs[entry.name] = make_binary_package(pname, entry.version, src,
                                               system=entry.system or system)
    return PackageSet.from_mapping(_nest(refs))


@dataclass
class Instance:
    spec: ShellSpec
    packages: PackageSet
    toolchain: ToolchainRef
    environment: EnvironmentDescriptor
    overlays: list[str] = field(default_factory=list)

    def activation_script(self) -> str:
        return self.environment.activation_script()


def _select(pkgs: PackageSet, name: str, spec: ShellSpec) -> Package:
    try:
        return pkgs.select(name)
    except KeyError:
        raise DescriptorError(spec.path, f"package set has no attribute {name!r}") from None


def instantiate(spec: ShellSpec, settings: Settings, *,
                fetcher: Fetcher | None = None,
                catalog: Catalog | None = None) -> Instance:
    """Resolve ``spec`` into an environment for the configured host."""
    fetcher = fetcher or Fetcher(settings.cache_dir, settings.fetch_timeout)
    target = host_target(settings.host_platform, settings.host_machine)
    system = nix_system(target)
    overlays: list[Overlay] = []
    compiler, build_tool = "rustc", "cargo"

    if spec.toolchain is not None:
        compiler, build_tool = spec.toolchain.compiler, spec.toolchain.build_tool
        catalog = catalog or RemoteCatalog(spec.toolchain.catalog, fetcher)
        logger.info("catalog %s lists %d channels", catalog.source, len(catalog.channels))
        resolver = ChannelResolver(catalog, target=target,
                                   compiler=compiler, build_tool=build_tool)
        overlays.append(channel_overlay(resolver))
        overlays.append(toolchain_overlay(spec.toolchain.channel,
                                          compiler=compiler, build_tool=build_tool))
    for py_file in spec.overlays:
        overlays.extend(load_overlay_file(py_file))

    registry = OverlayRegistry(base_package_set(spec, system), overlays)
    pkgs = registry.apply()

    if compiler not in pkgs or build_tool not in pkgs:
        raise MissingToolchainBindingError(spec.name)
    toolchain = ToolchainRef(pkgs[compiler], pkgs[build_tool],
                             getattr(pkgs.get("rust"), "channel", ""))

    base_inputs: list[Package] = []
    conditional: list[tuple[PlatformCondition, Package]] = []
    for group in spec.inputs:
        for name in group.packages:
            if group.condition is PlatformCondition.ANY:
                base_inputs.append(_select(pkgs, name, spec))
            elif matches(group.condition, settings.host_platform):
                conditional.append((group.condition, _select(pkgs, name, spec)))
            else:
                # Like lib.optionals: the other platform's inputs are never evaluated.
                logger.debug("not evaluating %s (%s only)", name, group.condition.value)

    logger.info("installing shell hook for %s",
                ", ".join(r.command for r in spec.intercept) or "no commands")
    hook = render_hook(spec.intercept, spec.hook) or None
    environment = build_environment(spec.name, toolchain, base_inputs, conditional,
                                    hook, settings.host_platform)
    return Instance(spec, pkgs, toolchain, environment, registry.names)

