"""Command interception installed by the shell hook.

Some commands print shell statements meant for the *calling* shell,
``op signin`` being the motivating case:

    $ op signin my
    export OP_SESSION_my="..."

Run as a child process those exports are lost, so the hook defines a
shell function that evaluates the output when the first argument is
the special one and forwards everything else untouched:

    function op {
      if [ "$1" == signin ]; then
        eval $(command op "$@")
      else
        command op "$@"
      fi
    }

HookInterceptionRule.render() produces that function. ShellSession
models the same behaviour in Python (a session env plus installed
functions) so it can be driven and tested without a real shell.

An interceptor has two states. It starts in PASS_THROUGH and enters
EVAL_MODE only while handling one special-argument invocation, then
returns to PASS_THROUGH. Only the first argument is inspected. If the
real command does not exist the runner's own failure propagates.
"""

import enum
import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Mapping, Sequence

logger = logging.getLogger(__name__)

_FUNCTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")
_ASSIGNMENT = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=(.*)$", re.DOTALL)


def identity(args: list[str]) -> list[str]:
    return list(args)


class InterceptorState(enum.Enum):
    PASS_THROUGH = "pass-through"
    EVAL_MODE = "eval"


@dataclass(frozen=True)
class HookInterceptionRule:
    """Intercept ``command`` when its first argument is ``special_arg``.

    ``rewrite`` maps the argument list before the real command runs in
    eval mode. In the rendered bash function it is applied to the
    single token ``"$@"``, so it can add or reorder arguments around it.
    """

    command: str
    special_arg: str = "signin"
    rewrite: Callable[[list[str]], list[str]] = field(default=identity, compare=False)

    def __post_init__(self):
        if not _FUNCTION_NAME.match(self.command):
            raise ValueError(f"not a valid shell function name: {self.command!r}")
        if not self.special_arg:
            raise ValueError(f"intercepting {self.command!r} needs a non-empty special argument")

    def render(self) -> str:
        name = self.command
        argv = " ".join(self.rewrite(['"$@"']))
        return (
            f"function {name} {{\n"
            f'  if [ "$1" == {shlex.quote(self.special_arg)} ]; then\n'
            f"    eval $(command {name} {argv})\n"
            f"  else\n"
            f'    command {name} "$@"\n'
            f"  fi\n"
            f"}}\n"
        )


def render_hook(rules: Sequence[HookInterceptionRule], extra: str | None = None) -> str:
    """Shell hook text: every rule's function, then ``extra``."""
    parts = [rule.render() for rule in rules]
    if extra:
        parts.append(extra.rstrip("\n") + "\n")
    return "".join(parts)


def parse_env_statements(text: str) -> list[tuple[str, str | None]]:
    """Environment changes made by evaluating ``text`` in a shell.

    Understands ``export NAME=VALUE``, ``NAME=VALUE`` and ``unset NAME``
    (one statement per line or ``;``). Quotes are removed; parameter
    expansion is not performed. ``None`` marks an unset. Anything else
    (comments, ``echo``, ``A=1 cmd``) changes nothing and is skipped.
    A line that does not tokenize, such as ``Couldn't sign in``, is
    skipped too, as ``eval`` would report it and carry on.
    """
    changes: list[tuple[str, str | None]] = []
    for line in text.splitlines():
        lexer = shlex.shlex(line, posix=True, punctuation_chars=";")
        lexer.whitespace_split = True
        try:
            tokens = list(lexer)
        except ValueError as e:
            logger.debug("skipping unparsable line (%s)", e)
            continue
        statement: list[str] = []
        for token in [*tokens, ";"]:
            if token != ";":
                statement.append(token)
                continue
            changes.extend(_statement_changes(statement))
            statement = []
    return changes


def _statement_changes(words: list[str]) -> list[tuple[str, str | None]]:
    if not words:
        return []
    head, rest = words[0], words[1:]
    if head == "export":
        out = []
        for word in rest:
            m = _ASSIGNMENT.match(word)
            if m:
                out.append((m.group(1), m.group(2)))
        return out
    if head == "unset":
        return [(word, None) for word in rest if not word.startswith("-")]
    assignments = [_ASSIGNMENT.match(word) for word in words]
    if all(assignments):
        return [(m.group(1), m.group(2)) for m in assignments]
    return []


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str = ""


class CommandRunner:
    """Runs the real command. Output is captured only in eval mode."""

    def run(self, argv: Sequence[str], *, env: Mapping[str, str], capture: bool) -> CommandResult:
        logger.debug("RUN %s", shlex.join(argv))
        cp = subprocess.run(
            list(argv),
            env=dict(env),
            text=True,
            stdout=subprocess.PIPE if capture else None,
            check=False,
        )
        return CommandResult(cp.returncode, cp.stdout if capture else "")


class Interceptor:
    def __init__(self, rule: HookInterceptionRule):
        self.rule = rule
        self.state = InterceptorState.PASS_THROUGH

    def __call__(self, session: "ShellSession", args: list[str]) -> int:
        command = self.rule.command
        if not args or args[0] != self.rule.special_arg:
            return session.runner.run([command, *args], env=session.env, capture=False).returncode

        self.state = InterceptorState.EVAL_MODE
        try:
            result = session.runner.run(
                [command, *self.rule.rewrite(list(args))], env=session.env, capture=True,
            )
            session.apply(parse_env_statements(result.stdout))
            return result.returncode
        finally:
            self.state = InterceptorState.PASS_THROUGH


class ShellSession:
    """A shell session: its environment and the functions installed in it."""

    def __init__(self, env: Mapping[str, str] | None = None,
                 runner: CommandRunner | None = None):
        self.env = dict(os.environ if env is None else env)
        self.runner = runner or CommandRunner()
        self.functions: dict[str, Interceptor] = {}

    def install(self, rule: HookInterceptionRule) -> Interceptor:
        interceptor = Interceptor(rule)
        self.functions[rule.command] = interceptor
        return interceptor

    def apply(self, changes: list[tuple[str, str | None]]) -> None:
        for name, value in changes:
            if value is None:
                self.env.pop(name, None)
            else:
                self.env[name] = value
        if changes:
            # Names only; values are often secrets.
            logger.debug("session env updated: %s", ", ".join(n for n, _ in changes))

    def invoke(self, command: str, *args: str) -> int:
        """Run ``command args...`` as the user would type it."""
        interceptor = self.functions.get(command)
        if interceptor is None:
            return self.runner.run([command, *args], env=self.env, capture=False).returncode
        return interceptor(self, list(args))
