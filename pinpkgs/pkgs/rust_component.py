"""rustc / cargo from a Rust distribution tarball.

Like nixpkgs-mozilla's rust-overlay: the official installer tarball for
one component and target is fetched (fixed-output) and its install.sh
is run into $out. No compilation happens.
"""

from pinpkgs.drv import Package, drv

INSTALL_SH = """\
set -e
mkdir -p "$TMPDIR/unpack"
tar -xzf "$src" -C "$TMPDIR/unpack" --strip-components=1
"$TMPDIR/unpack/install.sh" --prefix="$out" --disable-ldconfig
"""

_OS_SYSTEMS = {"linux": "linux", "darwin": "darwin"}


def nix_system(target: str) -> str:
    """Rust target triple -> Nix system double.

    "x86_64-unknown-linux-gnu" -> "x86_64-linux"
    "aarch64-apple-darwin"     -> "aarch64-darwin"
    """
    arch, _, rest = target.partition("-")
    for token, system in _OS_SYSTEMS.items():
        if token in rest:
            return f"{arch}-{system}"
    return f"{arch}-{rest.split('-')[-1]}"


def make_rust_component(component: str, version: str, src: Package, target: str, *,
                        component_version: str | None = None,
                        builder: str = "/bin/sh") -> Package:
    """Install one component of a Rust release.

    Args:
        component: Manifest component name ("rustc", "cargo").
        version: Release the component belongs to ("1.28.0").
        src: The component tarball (fetchurl).
        target: Rust target triple the tarball was built for.
        component_version: The component's own version when it differs
            from the release (cargo 0.29.0 ships in Rust 1.28.0).
        builder: Shell that runs the installer.
    """
    return drv(
        name=f"{component}-{version}",
        builder=builder,
        system=nix_system(target),
        args=["-c", INSTALL_SH],
        deps=[src],
        env={
            "pname": component,
            "version": version,
            "componentVersion": component_version or version,
            "src": str(src),
            "target": target,
        },
    )
