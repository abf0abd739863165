"""Tests for the channel catalog and toolchain resolution."""

import pytest

from pinpkgs.channels import (
    Catalog,
    ChannelResolver,
    ChannelSpec,
    RemoteCatalog,
    ResolutionStrategy,
    channel_overlay,
    host_target,
    release_key,
    resolve,
    toolchain_overlay,
)
from pinpkgs.errors import (
    CatalogFormatError,
    CatalogUnavailableError,
    FetchError,
    UnavailableComponentError,
    UnknownChannelError,
)
from pinpkgs.overlay import apply
from pinpkgs.package_set import PackageSet

HASH = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
TARGET = "x86_64-apple-darwin"

CATALOG = f"""
[channel."1.28.0".pkg.rustc]
version = "1.28.0 (9634041f0 2018-07-30)"
[channel."1.28.0".pkg.rustc.target.{TARGET}]
url = "https://static.rust-lang.org/dist/2018-08-02/rustc-1.28.0-{TARGET}.tar.gz"
hash = "{HASH}"
[channel."1.28.0".pkg.cargo]
version = "0.29.0 (af9e40c26 2018-07-05)"
[channel."1.28.0".pkg.cargo.target.{TARGET}]
url = "https://static.rust-lang.org/dist/2018-08-02/cargo-0.29.0-{TARGET}.tar.gz"
hash = "{HASH}"

[channel."1.9.0".pkg.rustc]
version = "1.9.0"
[channel."1.9.0".pkg.rustc.target.{TARGET}]
url = "https://static.rust-lang.org/dist/rustc-1.9.0-{TARGET}.tar.gz"
hash = "{HASH}"
[channel."1.9.0".pkg.cargo]
version = "0.10.0"
[channel."1.9.0".pkg.cargo.target.{TARGET}]
url = "https://static.rust-lang.org/dist/cargo-0.10.0-{TARGET}.tar.gz"
hash = "{HASH}"

[channel.nightly.pkg.rustc]
version = "1.30.0-nightly"
[channel.nightly.pkg.rustc.target.{TARGET}]
available = false

[channel."1.10.0".pkg.rustc]
version = "1.10.0"
[channel."1.10.0".pkg.rustc.target.{TARGET}]
url = "https://static.rust-lang.org/dist/rustc-1.10.0-{TARGET}.tar.gz"
hash = "{HASH}"
[channel."1.10.0".pkg.cargo]
version = "0.11.0"
[channel."1.10.0".pkg.cargo.target.{TARGET}]
url = "https://static.rust-lang.org/dist/cargo-0.11.0-{TARGET}.tar.gz"
hash = "{HASH}"
"""


class FakeFetcher:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def fetch(self, url):
        self.requests.append(url)
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def catalog():
    return Catalog.from_toml(CATALOG, "test-catalog")


@pytest.fixture
def resolver(catalog):
    return ChannelResolver(catalog, target=TARGET)


class TestResolve:
    def test_exact_version(self, resolver):
        toolchain = resolver.resolve("1.28.0")
        assert toolchain.compiler.version == "1.28.0"
        assert toolchain.build_tool.version == "1.28.0"
        assert toolchain.version == "1.28.0"
        assert toolchain.channel == "1.28.0"

    def test_refs_name_and_component_version(self, resolver):
        toolchain = resolver.resolve(ChannelSpec("1.28.0"))
        assert toolchain.compiler.name == "rustc-1.28.0"
        assert toolchain.build_tool.name == "cargo-1.28.0"
        assert toolchain.build_tool.drv.env["componentVersion"] == "0.29.0"
        assert toolchain.compiler.drv.env["target"] == TARGET

    def test_unknown_channel(self, resolver):
        with pytest.raises(UnknownChannelError, match="'9.9.9'"):
            resolver.resolve("9.9.9")

    def test_no_partial_match(self, resolver):
        with pytest.raises(UnknownChannelError):
            resolver.resolve("1.28")

    def test_module_level_resolve(self, catalog):
        assert resolve("1.28.0", catalog, target=TARGET).version == "1.28.0"

    def test_deterministic(self, resolver):
        assert resolver.resolve("1.28.0") == resolver.resolve("1.28.0")

    def test_unavailable_target(self, catalog):
        with pytest.raises(UnavailableComponentError) as exc:
            ChannelResolver(catalog, target="riscv64gc-unknown-linux-gnu").resolve("1.28.0")
        assert exc.value.component == "rustc"
        assert isinstance(exc.value, UnknownChannelError)

    def test_unavailable_flag(self, resolver):
        with pytest.raises(UnavailableComponentError, match="no rustc"):
            resolver.resolve("nightly")

    def test_missing_component(self, resolver):
        catalog = Catalog({"1.0.0": {"pkg": {}}})
        with pytest.raises(UnavailableComponentError):
            ChannelResolver(catalog, target=TARGET).resolve("1.0.0")

    def test_bad_hash_is_format_error(self):
        catalog = Catalog({"1.0.0": {"pkg": {
            "rustc": {"version": "1.0.0", "target": {TARGET: {"url": "u", "hash": "nope"}}},
            "cargo": {"version": "1.0.0", "target": {TARGET: {"url": "u", "hash": "nope"}}},
        }}})
        with pytest.raises(CatalogFormatError, match="bad rustc entry"):
            ChannelResolver(catalog, target=TARGET).resolve("1.0.0")


class TestLatestStable:
    def test_release_key(self):
        assert release_key("1.10.0") == (1, 10, 0)
        assert release_key("nightly") is None
        assert release_key("1.28") is None

    def test_numeric_ordering(self, catalog):
        assert catalog.latest_stable() == "1.28.0"

    def test_strategy(self, resolver):
        toolchain = resolver.resolve(ChannelSpec.latest_stable())
        assert toolchain.channel == "1.28.0"
        assert ChannelSpec.latest_stable().strategy is ResolutionStrategy.LATEST_STABLE

    def test_no_releases(self):
        with pytest.raises(UnknownChannelError, match="no releases"):
            Catalog({"nightly": {}}).latest_stable()


class TestCatalog:
    def test_channels(self, catalog):
        assert catalog.channels == ["1.28.0", "1.9.0", "nightly", "1.10.0"]

    def test_invalid_toml(self):
        with pytest.raises(CatalogFormatError, match="malformed channel catalog"):
            Catalog.from_toml("[channel", "bad")

    def test_missing_channel_table(self):
        with pytest.raises(CatalogFormatError, match="missing"):
            Catalog.from_toml('title = "x"', "bad")

    def test_remote_fetched_lazily_once(self):
        fetcher = FakeFetcher({"https://example.org/c.toml": CATALOG.encode()})
        remote = RemoteCatalog("https://example.org/c.toml", fetcher)
        assert fetcher.requests == []
        assert "1.28.0" in remote.channels
        remote.manifest("1.28.0")
        assert fetcher.requests == ["https://example.org/c.toml"]

    def test_remote_unreachable(self):
        url = "https://example.org/c.toml"
        remote = RemoteCatalog(url, FakeFetcher({url: FetchError(url, "timed out")}))
        with pytest.raises(CatalogUnavailableError, match="example.org/c.toml"):
            remote.channels

    def test_remote_not_utf8(self):
        url = "https://example.org/c.toml"
        remote = RemoteCatalog(url, FakeFetcher({url: b"\xff\xfe"}))
        with pytest.raises(CatalogFormatError):
            remote.manifest("1.28.0")


class TestHostTarget:
    def test_linux(self):
        assert host_target("linux", "x86_64") == "x86_64-unknown-linux-gnu"

    def test_darwin_arm64(self):
        assert host_target("darwin", "arm64") == "aarch64-apple-darwin"

    def test_unsupported(self):
        with pytest.raises(ValueError, match="win32"):
            host_target("win32", "AMD64")


class TestOverlays:
    def test_toolchain_overlay_binds_compiler_and_build_tool(self, resolver):
        pkgs = apply(PackageSet(), [channel_overlay(resolver), toolchain_overlay("1.28.0")])
        assert pkgs.rustc.name == "rustc-1.28.0"
        assert pkgs.cargo.name == "cargo-1.28.0"
        assert pkgs.rust.channel == "1.28.0"

    def test_rust_channels_stable(self, resolver):
        pkgs = apply(PackageSet(), [channel_overlay(resolver)])
        assert pkgs.rust_channels.stable.channel == "1.28.0"
        assert pkgs.rust_channel_of("1.9.0").version == "1.9.0"

    def test_later_overlay_repins_both(self, resolver):
        def back_to_1_10(final, prev):
            return {"rust": lambda: prev.rust_channel_of("1.10.0")}

        pkgs = apply(PackageSet(), [channel_overlay(resolver), toolchain_overlay("1.28.0"),
                                    back_to_1_10])
        assert pkgs.rustc.version == pkgs.cargo.version == "1.10.0"

    def test_unknown_channel_surfaces_on_read(self, resolver):
        pkgs = apply(PackageSet(), [channel_overlay(resolver), toolchain_overlay("9.9.9")])
        with pytest.raises(UnknownChannelError):
            pkgs.rustc
