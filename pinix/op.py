"""Client for the 1Password ``op`` command line tool.

The shell environment exposes ``op`` with ``signin`` intercepted, so a
session token ends up in the shell as ``OP_SESSION_<subdomain>``. This
module picks that token up again and reads items through ``op``:

    session = Op.which().env_session()
    item = session.get_item("nq4ouvbqvfbpcmyblaqo3wnkyy")
    item.password()

Only the subset pinix needs is implemented: locating the binary,
finding a session, ``op get item`` and password extraction.
"""

import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Mapping

logger = logging.getLogger(__name__)

SESSION_PREFIX = "OP_SESSION_"


class OpError(Exception):
    pass


class MissingOpCommandError(OpError):
    def __init__(self, command: str = "op"):
        super().__init__(f"{command} command not found in PATH")
        self.command = command


class MissingSessionVariableError(OpError):
    def __init__(self, variable: str | None = None):
        if variable:
            msg = f"session environment variable {variable} is not set"
        else:
            msg = f"could not find any {SESSION_PREFIX}* session environment variable"
        super().__init__(msg)
        self.variable = variable


class MultipleSessionVariablesError(OpError):
    def __init__(self, names: list[str]):
        super().__init__(f"more than one session environment variable found: {names}")
        self.names = names


class OpGetError(OpError):
    def __init__(self, uuid: str, stderr: str, returncode: int):
        super().__init__(f"op get error for {uuid} code: {returncode}, {stderr.strip()}")
        self.uuid = uuid
        self.stderr = stderr
        self.returncode = returncode


@dataclass
class OpItemField:
    name: str
    type: str
    value: str
    designation: str | None = None


@dataclass
class OpItem:
    uuid: str
    vault_uuid: str
    changer_uuid: str
    title: str
    ainfo: str = ""
    password_value: str | None = None      # set for password items
    fields: list[OpItemField] = field(default_factory=list)  # set for logins

    @classmethod
    def from_json(cls, data: dict) -> "OpItem":
        if not isinstance(data, dict) or not isinstance(data.get("uuid"), str):
            raise OpError("op returned an item without a uuid")
        overview = data.get("overview") or {}
        details = data.get("details") or {}
        fields = [
            OpItemField(
                name=f.get("name", ""),
                type=f.get("type", ""),
                value=f.get("value", ""),
                designation=f.get("designation"),
            )
            for f in details.get("fields") or []
        ]
        return cls(
            uuid=data["uuid"],
            vault_uuid=data.get("vaultUuid", ""),
            changer_uuid=data.get("changerUuid", ""),
            title=overview.get("title", ""),
            ainfo=overview.get("ainfo", ""),
            password_value=details.get("password"),
            fields=fields,
        )

    def password(self) -> str | None:
        """The item's password, for password and login items alike."""
        if self.password_value is not None:
            return self.password_value
        for f in self.fields:
            if f.designation == "password":
                return f.value
        return None


@dataclass(frozen=True)
class Op:
    command: str

    @classmethod
    def which(cls, path: str | None = None) -> "Op":
        found = shutil.which("op", path=path)
        if found is None:
            raise MissingOpCommandError()
        return cls(found)

    def session(self, token: str) -> "OpSession":
        return OpSession(self, token)

    def env_account_session(self, subdomain: str,
                            env: Mapping[str, str] | None = None) -> "OpSession":
        env = os.environ if env is None else env
        variable = SESSION_PREFIX + subdomain
        if variable not in env:
            raise MissingSessionVariableError(variable)
        return self.session(env[variable])

    def env_session(self, env: Mapping[str, str] | None = None) -> "OpSession":
        """The single signed-in session found in ``env``."""
        env = os.environ if env is None else env
        names = sorted(k for k in env if k.startswith(SESSION_PREFIX))
        if not names:
            raise MissingSessionVariableError()
        if len(names) > 1:
            raise MultipleSessionVariablesError(names)
        logger.debug("using op session from %s", names[0])
        return self.session(env[names[0]])


@dataclass(frozen=True)
class OpSession:
    op: Op
    token: str

    def get_item(self, uuid: str) -> OpItem:
        argv = [self.op.command, "get", "item", "--session", self.token, uuid]
        # Log without the token.
        logger.debug("RUN %s get item --session *** %s", self.op.command, uuid)
        cp = subprocess.run(argv, capture_output=True, text=True, check=False)
        if cp.returncode != 0:
            raise OpGetError(uuid, cp.stderr, cp.returncode)
        return OpItem.from_json(json.loads(cp.stdout))
