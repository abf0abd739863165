"""Environment derivations: the shell a descriptor resolves to.

The Python equivalent of

    stdenv.mkDerivation {
      name = "moz_overlay_shell";
      buildInputs = [ rustc cargo carnix _1password ]
        ++ stdenv.lib.optionals stdenv.isDarwin [ darwin.cf-private ... ];
      shellHook = '' ... '';
    }

build_environment() orders inputs as: base inputs, then the compiler
and build tool of the resolved toolchain, then every conditional input
whose platform condition holds on the host, in declaration order.
Inputs are not deduplicated; if two overlays pinned the same compiler
twice, both entries stay.
"""

from __future__ import annotations

import enum
import logging
import shlex
from dataclasses import dataclass
from typing import Iterable, Sequence

from pinpkgs.channels import ToolchainRef
from pinpkgs.drv import DEFAULT_SYSTEM, Package, drv
from pinpkgs.errors import MissingToolchainBindingError

logger = logging.getLogger(__name__)


class PlatformCondition(enum.Enum):
    ANY = "any"
    DARWIN = "darwin"
    LINUX = "linux"

    @classmethod
    def parse(cls, value: str) -> PlatformCondition:
        try:
            return cls(value.lower())
        except ValueError:
            choices = ", ".join(c.value for c in cls)
            raise ValueError(f"unknown platform condition {value!r} (expected one of: {choices})") from None


def matches(condition: PlatformCondition, host_platform: str) -> bool:
    if condition is PlatformCondition.ANY:
        return True
    return condition.value == host_platform


# Env that nixpkgs' mkShell puts on every shell derivation.
MKSHELL_DEFAULTS = {
    "nobuildPhase": "echo\necho \"This derivation is not meant to be built, aborting\";\necho\nexit 1\n",
    "phases": "nobuildPhase",
    "preferLocalBuild": "1",
    "nativeBuildInputs": "",
    "propagatedBuildInputs": "",
}


@dataclass(frozen=True)
class EnvironmentDescriptor:
    name: str
    build_inputs: tuple[Package, ...]
    hook_script: str | None = None

    def path_entries(self) -> list[str]:
        """``bin`` directories for PATH, in build-input order."""
        return [ref.bin for ref in self.build_inputs]

    def to_package(self, system: str = DEFAULT_SYSTEM, builder: str = "/bin/sh") -> Package:
        """The environment as a derivation with its own store path."""
        env = dict(MKSHELL_DEFAULTS)
        env["buildInputs"] = " ".join(str(ref) for ref in self.build_inputs)
        env["shellHook"] = self.hook_script or ""
        return drv(
            name=self.name,
            builder=builder,
            system=system,
            args=["-c", 'eval "$nobuildPhase"'],
            deps=_unique(self.build_inputs),
            env=env,
        )

    def activation_script(self) -> str:
        """Bash to ``eval`` in the calling shell to enter the environment."""
        lines = [f"export PINIX_SHELL_NAME={shlex.quote(self.name)}"]
        entries = self.path_entries()
        if entries:
            path = ":".join(shlex.quote(p) for p in entries)
            lines.append(f'export PATH={path}"${{PATH:+:$PATH}}"')
        if self.hook_script:
            lines.append(self.hook_script.rstrip("\n"))
        return "\n".join(lines) + "\n"


def _unique(refs: Iterable[Package]) -> list[Package]:
    # The derivation's inputDrvs are a set; buildInputs keep duplicates.
    seen = set()
    out = []
    for ref in refs:
        if ref.drv_path not in seen:
            seen.add(ref.drv_path)
            out.append(ref)
    return out


def build_environment(
    name: str,
    toolchain: ToolchainRef | None,
    base_inputs: Sequence[Package],
    conditional_inputs: Sequence[tuple[PlatformCondition, Package]],
    hook_script: str | None,
    host_platform: str,
) -> EnvironmentDescriptor:
    """Assemble the environment for ``host_platform``.

    Raises MissingToolchainBindingError when the toolchain (or either
    of its refs) was never resolved.
    """
    if toolchain is None:
        raise MissingToolchainBindingError(name)
    if toolchain.compiler is None:
        raise MissingToolchainBindingError(name, "compiler")
    if toolchain.build_tool is None:
        raise MissingToolchainBindingError(name, "build tool")

    inputs = [*base_inputs, toolchain.compiler, toolchain.build_tool]
    for condition, ref in conditional_inputs:
        if matches(condition, host_platform):
            inputs.append(ref)
        else:
            logger.debug("skipping %s (%s only)", ref.name, condition.value)

    logger.info("environment %s: %d build inputs on %s", name, len(inputs), host_platform)
    return EnvironmentDescriptor(name=name, build_inputs=tuple(inputs), hook_script=hook_script)
