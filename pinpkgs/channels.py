"""Channel catalog and toolchain resolution.

A channel is a named release of the toolchain ("1.28.0", "1.80.1").
The catalog lists channels, each with a Rust-style distribution
manifest:

    [channel."1.28.0"]
    date = "2018-08-02"

    [channel."1.28.0".pkg.rustc]
    version = "1.28.0 (9634041f0 2018-07-30)"

    [channel."1.28.0".pkg.rustc.target.x86_64-unknown-linux-gnu]
    available = true
    url = "https://static.rust-lang.org/dist/2018-08-02/rustc-1.28.0-x86_64-unknown-linux-gnu.tar.gz"
    hash = "<sha256 hex>"

Resolving a channel yields a ToolchainRef: the compiler and the build
tool, both taken from that one manifest. Two strategies exist, pinned
(exact channel name, no partial matching) and latest stable (highest
X.Y.Z release listed), because both appear in real descriptors:

    rust_1_28 = (super.rustChannelOf { channel = "1.28.0"; }).rust;
    rust = rust_1_28; #super.rustChannels.stable.rust;
"""

import enum
import logging
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pinpkgs.drv import Package
from pinpkgs.errors import (
    CatalogFormatError,
    CatalogUnavailableError,
    FetchError,
    UnavailableComponentError,
    UnknownChannelError,
)
from pinpkgs.fetchurl import fetchurl
from pinpkgs.overlay import Overlay
from pinpkgs.package_set import PackageSet
from pinpkgs.pkgs.rust_component import make_rust_component

logger = logging.getLogger(__name__)

_RELEASE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")

_ARCH_ALIASES = {"amd64": "x86_64", "x64": "x86_64", "arm64": "aarch64"}


class ResolutionStrategy(enum.Enum):
    EXACT_VERSION = "exact"
    LATEST_STABLE = "latest-stable"


@dataclass(frozen=True)
class ChannelSpec:
    channel_name: str
    strategy: ResolutionStrategy = ResolutionStrategy.EXACT_VERSION

    @classmethod
    def latest_stable(cls) -> "ChannelSpec":
        return cls("stable", ResolutionStrategy.LATEST_STABLE)


@dataclass(frozen=True)
class ToolchainRef:
    compiler: Package
    build_tool: Package
    channel: str = ""

    @property
    def version(self) -> str:
        return self.compiler.version


def host_target(host_platform: str, machine: str) -> str:
    """Rust target triple for the detected host."""
    arch = _ARCH_ALIASES.get(machine.lower(), machine.lower())
    if host_platform == "darwin":
        return f"{arch}-apple-darwin"
    if host_platform == "linux":
        return f"{arch}-unknown-linux-gnu"
    raise ValueError(f"no toolchain target for {arch} on {host_platform}")


def release_key(name: str) -> tuple[int, int, int] | None:
    m = _RELEASE.match(name)
    return tuple(int(g) for g in m.groups()) if m else None


class Catalog:
    """Channel listing with one manifest per channel."""

    def __init__(self, channels: Mapping[str, Mapping[str, Any]], source: str = "<memory>"):
        self._channels = dict(channels)
        self.source = source

    @classmethod
    def from_toml(cls, text: str, source: str = "<memory>") -> "Catalog":
        try:
            doc = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            raise CatalogFormatError(source, e) from e
        channels = doc.get("channel")
        if not isinstance(channels, dict):
            raise CatalogFormatError(source, "missing [channel.<name>] tables")
        return cls(channels, source)

    @property
    def channels(self) -> list[str]:
        return list(self._channels)

    def manifest(self, name: str) -> Mapping[str, Any]:
        if name not in self._channels:
            raise UnknownChannelError(name, f"not in catalog {self.source}")
        return self._channels[name]

    def latest_stable(self) -> str:
        releases = [n for n in self.channels if release_key(n) is not None]
        if not releases:
            raise UnknownChannelError("stable", f"no releases in catalog {self.source}")
        return max(releases, key=release_key)


class RemoteCatalog(Catalog):
    """A catalog fetched from a URL the first time it is read."""

    def __init__(self, url: str, fetcher):
        super().__init__({}, url)
        self.url = url
        self.fetcher = fetcher
        self._loaded = False

    def _load(self) -> None:
        if self._loaded:
            return
        logger.info("fetching channel catalog %s", self.url)
        try:
            data = self.fetcher.fetch(self.url)
        except FetchError as e:
            raise CatalogUnavailableError(self.url, e) from e
        try:
            text = data.decode()
        except UnicodeDecodeError as e:
            raise CatalogFormatError(self.url, e) from e
        self._channels = Catalog.from_toml(text, self.url)._channels
        self._loaded = True

    @property
    def channels(self) -> list[str]:
        self._load()
        return super().channels

    def manifest(self, name: str) -> Mapping[str, Any]:
        self._load()
        return super().manifest(name)


class ChannelResolver:
    """Resolves channel specs against an explicit catalog handle."""

    def __init__(self, catalog: Catalog, *, target: str,
                 compiler: str = "rustc", build_tool: str = "cargo",
                 builder: str = "/bin/sh"):
        self.catalog = catalog
        self.target = target
        self.compiler = compiler
        self.build_tool = build_tool
        self.builder = builder

    def _channel_name(self, spec: ChannelSpec) -> str:
        if spec.strategy is ResolutionStrategy.LATEST_STABLE:
            return self.catalog.latest_stable()
        return spec.channel_name

    def _pkg(self, channel: str, manifest: Mapping[str, Any], component: str) -> Mapping[str, Any]:
        pkg = (manifest.get("pkg") or {}).get(component)
        if not isinstance(pkg, Mapping):
            raise UnavailableComponentError(channel, component, self.target)
        return pkg

    def _component(self, channel: str, manifest: Mapping[str, Any], component: str,
                   release: str) -> Package:
        pkg = self._pkg(channel, manifest, component)
        targets = pkg.get("target") or {}
        entry = targets.get(self.target) or targets.get("*")
        if not entry or not entry.get("available", True) or "url" not in entry:
            raise UnavailableComponentError(channel, component, self.target)
        version = (pkg.get("version") or release).split()[0]
        try:
            src = fetchurl(f"{component}-{version}-{self.target}.tar.gz",
                           entry["url"], entry["hash"])
        except (KeyError, ValueError) as e:
            raise CatalogFormatError(self.catalog.source,
                                     f"{channel}: bad {component} entry: {e}") from e
        return make_rust_component(component, release, src, self.target,
                                   component_version=version, builder=self.builder)

    def resolve(self, spec: ChannelSpec | str) -> ToolchainRef:
        if isinstance(spec, str):
            spec = ChannelSpec(spec)
        name = self._channel_name(spec)
        manifest = self.catalog.manifest(name)
        # Both refs carry the release version reported by the compiler.
        release = (self._pkg(name, manifest, self.compiler).get("version") or name).split()[0]
        toolchain = ToolchainRef(
            compiler=self._component(name, manifest, self.compiler, release),
            build_tool=self._component(name, manifest, self.build_tool, release),
            channel=name,
        )
        logger.info("resolved channel %s (%s): %s, %s", name, spec.strategy.value,
                    toolchain.compiler.name, toolchain.build_tool.name)
        return toolchain


def resolve(spec: ChannelSpec | str, catalog: Catalog, *, target: str) -> ToolchainRef:
    return ChannelResolver(catalog, target=target).resolve(spec)


def channel_overlay(resolver: ChannelResolver) -> Overlay:
    """Overlay exposing the resolver to later overlays.

    Binds ``rust_channel_of(spec)`` and ``rust_channels.stable``, the
    way nixpkgs-mozilla adds ``rustChannelOf`` and ``rustChannels``.
    """
    def channels(final, prev):
        return {
            "rust_channel_of": lambda: resolver.resolve,
            "rust_channels": lambda: PackageSet({
                "stable": lambda: resolver.resolve(ChannelSpec.latest_stable()),
            }),
        }
    return Overlay("channels", channels)


def toolchain_overlay(spec: ChannelSpec | str, *,
                      compiler: str = "rustc", build_tool: str = "cargo") -> Overlay:
    """Pin the compiler and build tool to one channel.

    Binds ``rust`` to the resolved ToolchainRef and the compiler and
    build-tool names to its two refs, read back through ``final`` so a
    later overlay rebinding ``rust`` moves both together.
    Needs channel_overlay() earlier in the chain.
    """
    def toolchain(final, prev):
        return {
            "rust": lambda: prev.rust_channel_of(spec),
            compiler: lambda: final.rust.compiler,
            build_tool: lambda: final.rust.build_tool,
        }
    return Overlay("toolchain", toolchain)
