"""Prebuilt binary packages (carnix, _1password, ...) from a pinned archive.

The archive is fetched with fetchurl and unpacked into $out; its
``bin/`` (or its top-level executables) end up on PATH. A descriptor
declares these under ``[packages.<name>]``.
"""

from pinpkgs.drv import DEFAULT_SYSTEM, Package, drv

UNPACK_SH = """\
set -e
mkdir -p "$out"
case "$src" in
  *.zip) unzip -q "$src" -d "$out" ;;
  *) tar -xf "$src" -C "$out" ;;
esac
if [ ! -d "$out/bin" ]; then
  mkdir "$out/bin"
  find "$out" -maxdepth 1 -type f -perm -u+x -exec mv {} "$out/bin/" \\;
fi
"""


def make_binary_package(pname: str, version: str, src: Package,
                        system: str = DEFAULT_SYSTEM,
                        builder: str = "/bin/sh") -> Package:
    name = f"{pname}-{version}" if version else pname
    return drv(
        name=name,
        builder=builder,
        system=system,
        args=["-c", UNPACK_SH],
        deps=[src],
        env={
            "pname": pname,
            "version": version,
            "src": str(src),
        },
    )
