"""Tests for environment assembly."""

import pytest

from pinpkgs.channels import ToolchainRef
from pinpkgs.drv import drv
from pinpkgs.environment import (
    EnvironmentDescriptor,
    PlatformCondition,
    build_environment,
    matches,
)
from pinpkgs.errors import MissingToolchainBindingError


def _pkg(name):
    return drv(name=name, builder="/bin/sh", args=["-c", f"echo {name} > $out"],
               env={"version": "1.28.0"})


A, B, C, D = _pkg("carnix"), _pkg("_1password"), _pkg("cf-private"), _pkg("glibc-locales")
TOOLCHAIN = ToolchainRef(_pkg("rustc"), _pkg("cargo"), "1.28.0")


def test_order_on_darwin():
    env = build_environment("moz_overlay_shell", TOOLCHAIN, [A, B],
                            [(PlatformCondition.DARWIN, C), (PlatformCondition.LINUX, D)],
                            None, "darwin")
    assert list(env.build_inputs) == [A, B, TOOLCHAIN.compiler, TOOLCHAIN.build_tool, C]


def test_order_on_linux():
    env = build_environment("s", TOOLCHAIN, [A],
                            [(PlatformCondition.DARWIN, C), (PlatformCondition.LINUX, D),
                             (PlatformCondition.ANY, B)],
                            None, "linux")
    assert list(env.build_inputs) == [A, TOOLCHAIN.compiler, TOOLCHAIN.build_tool, D, B]


def test_no_deduplication():
    env = build_environment("s", TOOLCHAIN, [TOOLCHAIN.compiler], [], None, "linux")
    assert list(env.build_inputs).count(TOOLCHAIN.compiler) == 2


def test_missing_toolchain():
    with pytest.raises(MissingToolchainBindingError, match="'s'"):
        build_environment("s", None, [A], [], None, "linux")


def test_missing_build_tool():
    with pytest.raises(MissingToolchainBindingError, match="build tool"):
        build_environment("s", ToolchainRef(A, None), [], [], None, "linux")


def test_matches():
    assert matches(PlatformCondition.ANY, "freebsd")
    assert matches(PlatformCondition.DARWIN, "darwin")
    assert not matches(PlatformCondition.DARWIN, "linux")


def test_parse_condition():
    assert PlatformCondition.parse("Darwin") is PlatformCondition.DARWIN
    with pytest.raises(ValueError, match="expected one of: any, darwin, linux"):
        PlatformCondition.parse("windows")


class TestDescriptor:
    def test_path_entries_in_order(self):
        env = EnvironmentDescriptor("s", (A, B))
        assert env.path_entries() == [A.out + "/bin", B.out + "/bin"]

    def test_activation_script(self):
        env = EnvironmentDescriptor("moz_overlay_shell", (A,), "echo ready\n")
        script = env.activation_script()
        assert script.splitlines() == [
            "export PINIX_SHELL_NAME=moz_overlay_shell",
            f'export PATH={A.out}/bin"${{PATH:+:$PATH}}"',
            "echo ready",
        ]

    def test_activation_script_without_inputs(self):
        assert EnvironmentDescriptor("s", ()).activation_script() == "export PINIX_SHELL_NAME=s\n"

    def test_to_package(self):
        env = EnvironmentDescriptor("moz_overlay_shell", (A, B, A), "echo hi")
        pkg = env.to_package()
        assert pkg.name == "moz_overlay_shell"
        assert pkg.drv.env["buildInputs"] == f"{A} {B} {A}"
        assert pkg.drv.env["shellHook"] == "echo hi"
        assert set(pkg.drv.input_drvs) == {A.drv_path, B.drv_path}

    def test_to_package_hook_changes_path(self):
        a = EnvironmentDescriptor("s", (A,), "echo one").to_package()
        b = EnvironmentDescriptor("s", (A,), "echo two").to_package()
        assert a.out != b.out
