"""Tests for shell hook rendering and command interception."""

import pytest

from pinpkgs.shell_hook import (
    CommandResult,
    CommandRunner,
    HookInterceptionRule,
    InterceptorState,
    ShellSession,
    parse_env_statements,
    render_hook,
)


class FakeRunner:
    """Records invocations and answers with canned output."""

    def __init__(self, outputs=None, returncode=0):
        self.outputs = outputs or {}
        self.returncode = returncode
        self.calls = []

    def run(self, argv, *, env, capture):
        self.calls.append((list(argv), capture))
        return CommandResult(self.returncode, self.outputs.get(tuple(argv), "") if capture else "")


SIGNIN_OUTPUT = 'export OP_SESSION_my="tok-123"\n# This command is meant to be used with your shell\n'


def _session(**kw):
    runner = FakeRunner({("op", "signin", "my"): SIGNIN_OUTPUT}, **kw)
    session = ShellSession(env={"PATH": "/bin"}, runner=runner)
    interceptor = session.install(HookInterceptionRule("op"))
    return session, runner, interceptor


class TestInterception:
    def test_signin_output_applied(self):
        session, runner, _ = _session()
        assert session.invoke("op", "signin", "my") == 0
        assert session.env["OP_SESSION_my"] == "tok-123"
        assert runner.calls == [(["op", "signin", "my"], True)]

    def test_other_arguments_pass_through(self):
        session, runner, _ = _session()
        before = dict(session.env)
        session.invoke("op", "list", "items")
        assert runner.calls == [(["op", "list", "items"], False)]
        assert session.env == before

    def test_zero_arguments_pass_through(self):
        session, runner, _ = _session()
        session.invoke("op")
        assert runner.calls == [(["op"], False)]

    def test_only_first_argument_inspected(self):
        session, runner, _ = _session()
        session.invoke("op", "get", "signin")
        assert runner.calls == [(["op", "get", "signin"], False)]

    def test_state_returns_to_pass_through(self):
        session, runner, interceptor = _session()
        seen = []
        real_run = runner.run

        def spy(argv, **kw):
            seen.append(interceptor.state)
            return real_run(argv, **kw)

        runner.run = spy
        session.invoke("op", "signin", "my")
        session.invoke("op", "list")
        assert seen == [InterceptorState.EVAL_MODE, InterceptorState.PASS_THROUGH]
        assert interceptor.state is InterceptorState.PASS_THROUGH

    def test_failed_signin_returns_code(self):
        session, runner, interceptor = _session(returncode=145)
        assert session.invoke("op", "signin", "other") == 145
        assert "OP_SESSION_other" not in session.env
        assert interceptor.state is InterceptorState.PASS_THROUGH

    def test_failed_signin_with_unbalanced_quote(self):
        runner = FakeRunner({("op", "signin", "my"): "Couldn't sign in: bad password\n"}, returncode=1)
        session = ShellSession(env={"PATH": "/bin"}, runner=runner)
        interceptor = session.install(HookInterceptionRule("op"))
        assert session.invoke("op", "signin", "my") == 1
        assert session.env == {"PATH": "/bin"}
        assert interceptor.state is InterceptorState.PASS_THROUGH

    def test_rewrite_applies_in_eval_mode(self):
        runner = FakeRunner({("op", "signin", "my", "--output=raw"): "export TOKEN=x\n"})
        session = ShellSession(env={}, runner=runner)
        session.install(HookInterceptionRule("op", rewrite=lambda args: [*args, "--output=raw"]))
        session.invoke("op", "signin", "my")
        assert session.env["TOKEN"] == "x"

    def test_uninstalled_command_runs_directly(self):
        session, runner, _ = _session()
        session.invoke("carnix", "signin")
        assert runner.calls == [(["carnix", "signin"], False)]

    def test_missing_command_propagates(self):
        session = ShellSession(env={"PATH": ""}, runner=CommandRunner())
        interceptor = session.install(HookInterceptionRule("pinix-no-such-command"))
        with pytest.raises(FileNotFoundError):
            session.invoke("pinix-no-such-command", "signin")
        assert interceptor.state is InterceptorState.PASS_THROUGH

    def test_real_runner_captures_in_eval_mode(self, tmp_path):
        script = tmp_path / "fakeop"
        script.write_text('#!/bin/sh\necho "export OP_SESSION_my=\'from script\'"\n')
        script.chmod(0o755)
        session = ShellSession(env={"PATH": f"{tmp_path}:/usr/bin:/bin"})
        session.install(HookInterceptionRule("fakeop"))
        assert session.invoke("fakeop", "signin") == 0
        assert session.env["OP_SESSION_my"] == "from script"


class TestRule:
    def test_render(self):
        assert HookInterceptionRule("op").render() == (
            "function op {\n"
            '  if [ "$1" == signin ]; then\n'
            '    eval $(command op "$@")\n'
            "  else\n"
            '    command op "$@"\n'
            "  fi\n"
            "}\n"
        )

    def test_render_rewrite(self):
        rule = HookInterceptionRule("op", rewrite=lambda args: [*args, "--raw"])
        assert 'eval $(command op "$@" --raw)' in rule.render()

    def test_invalid_name(self):
        with pytest.raises(ValueError, match="shell function name"):
            HookInterceptionRule("op; rm -rf /")

    def test_empty_special_arg(self):
        with pytest.raises(ValueError, match="non-empty special argument"):
            HookInterceptionRule("op", special_arg="")

    def test_render_hook_appends_extra(self):
        hook = render_hook([HookInterceptionRule("op")], "echo ready")
        assert hook.startswith("function op {")
        assert hook.endswith("}\necho ready\n")

    def test_render_hook_empty(self):
        assert render_hook([]) == ""


class TestParseEnv:
    def test_export_and_assignment(self):
        assert parse_env_statements('export A="1 2"; B=3\n') == [("A", "1 2"), ("B", "3")]

    def test_unset(self):
        assert parse_env_statements("unset A B") == [("A", None), ("B", None)]

    def test_ignores_other_commands(self):
        text = "# comment\necho hi\nA=1 cmd\n"
        assert parse_env_statements(text) == []

    def test_skips_unparsable_lines(self):
        text = "Couldn't sign in\nexport OP_SESSION_my=tok\n"
        assert parse_env_statements(text) == [("OP_SESSION_my", "tok")]

    def test_apply_unset(self):
        session = ShellSession(env={"A": "1"}, runner=FakeRunner())
        session.apply([("A", None), ("B", "2")])
        assert session.env == {"B": "2"}
