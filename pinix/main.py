#!/usr/bin/env python3
"""pinix: pinned shell environments in Python."""

import argparse
import json
import logging
import sys

from pinix.hashing import nix32_encode
from pinix.nar import nar_hash
from pinix.op import Op, OpError
from pinpkgs.channels import ChannelResolver, ChannelSpec, RemoteCatalog, host_target
from pinpkgs.config import Settings
from pinpkgs.descriptor import instantiate, load_descriptor
from pinpkgs.errors import PinixError
from pinpkgs.fetcher import Fetcher
from pinpkgs.pkgs.rust_component import nix_system

logger = logging.getLogger("pinix")

_LOGGERS = ("pinix", "pinpkgs")


def _setup_logger(verbose: bool, level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    for name in _LOGGERS:
        lg = logging.getLogger(name)
        lg.setLevel(logging.DEBUG if verbose else level)
        lg.handlers[:] = [handler]
        lg.propagate = False


def _instance(args, settings):
    return instantiate(load_descriptor(args.descriptor), settings)


def cmd_shell(args, settings):
    sys.stdout.write(_instance(args, settings).activation_script())


def cmd_show(args, settings):
    inst = _instance(args, settings)
    system = nix_system(host_target(settings.host_platform, settings.host_machine))
    pkg = inst.environment.to_package(system)
    info = {
        "name": inst.environment.name,
        "drvPath": pkg.drv_path,
        "toolchain": {
            "channel": inst.toolchain.channel,
            "compiler": str(inst.toolchain.compiler),
            "build_tool": str(inst.toolchain.build_tool),
        },
        "overlays": inst.overlays,
        "buildInputs": [str(ref) for ref in inst.environment.build_inputs],
        "derivation": pkg.drv.to_json(),
    }
    json.dump(info, sys.stdout, indent=2)
    print()


def cmd_resolve(args, settings):
    fetcher = Fetcher(settings.cache_dir, settings.fetch_timeout)
    target = args.target or host_target(settings.host_platform, settings.host_machine)
    resolver = ChannelResolver(RemoteCatalog(args.catalog, fetcher), target=target)
    spec = ChannelSpec.latest_stable() if args.latest_stable else ChannelSpec(args.channel)
    toolchain = resolver.resolve(spec)
    print(f"channel: {toolchain.channel}")
    print(f"version: {toolchain.version}")
    for ref in (toolchain.compiler, toolchain.build_tool):
        print(f"{ref.drv.env['pname']}: {ref} ({ref.drv_path})")


def cmd_fetch(args, settings):
    source = Fetcher(settings.cache_dir, settings.fetch_timeout).fetch_tarball(args.url, args.name)
    if args.hash:
        print(f"sha256:{nix32_encode(nar_hash(source.path))}")
    print(source.store_path)


def cmd_op_password(args, settings):
    op = Op.which()
    session = op.env_account_session(args.subdomain) if args.subdomain else op.env_session()
    password = session.get_item(args.uuid).password()
    if password is None:
        raise OpError(f"item {args.uuid} has no password")
    print(password)


def main(argv=None):
    parser = argparse.ArgumentParser(prog="pinix", description="Pinned shell environments")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    sub = parser.add_subparsers(dest="command")

    # shell
    p = sub.add_parser("shell", help="Print the activation script of a descriptor")
    p.add_argument("descriptor")
    p.set_defaults(func=cmd_shell)

    # show
    p = sub.add_parser("show", help="Show the environment derivation as JSON")
    p.add_argument("descriptor")
    p.set_defaults(func=cmd_show)

    # resolve
    p = sub.add_parser("resolve", help="Resolve a toolchain channel from a catalog")
    p.add_argument("channel", nargs="?", default="stable")
    p.add_argument("--catalog", required=True, help="URL of the channel catalog")
    p.add_argument("--latest-stable", action="store_true",
                   help="Ignore CHANNEL and pick the highest release")
    p.add_argument("--target", help="Rust target triple (default: the host)")
    p.set_defaults(func=cmd_resolve)

    # fetch
    p = sub.add_parser("fetch", help="Prefetch a tarball into the cache")
    p.add_argument("url")
    p.add_argument("--name", default="source", help="Store name of the unpacked tree")
    p.add_argument("--hash", action="store_true", help="Also print the NAR hash")
    p.set_defaults(func=cmd_fetch)

    # op-password
    p = sub.add_parser("op-password", help="Print an item's password via op")
    p.add_argument("uuid")
    p.add_argument("--subdomain", help="Use OP_SESSION_<subdomain>")
    p.set_defaults(func=cmd_op_password)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = Settings.from_env()
        _setup_logger(args.verbose, settings.log_level)
    except ValueError as e:
        print(f"pinix: {e}", file=sys.stderr)
        return 1

    try:
        args.func(args, settings)
    except (PinixError, OpError, ValueError) as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
