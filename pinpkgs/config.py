from __future__ import annotations

import os
import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


def xdg_cache_home(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    return Path(env.get("XDG_CACHE_HOME") or Path.home() / ".cache")


def detect_host_platform() -> str:
    """"darwin", "linux", ... read from the running interpreter."""
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


@dataclass(frozen=True)
class Settings:
    cache_dir: Path
    host_platform: str
    host_machine: str
    fetch_timeout: float | None = None  # seconds; None blocks until the server answers
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        # Read once; nothing re-reads the host platform after this.
        env = os.environ if env is None else env
        cache = env.get("PINIX_CACHE_DIR")
        timeout = env.get("PINIX_FETCH_TIMEOUT")
        try:
            fetch_timeout = float(timeout) if timeout else None
        except ValueError:
            raise ValueError(f"PINIX_FETCH_TIMEOUT must be a number of seconds, got {timeout!r}") from None
        return cls(
            cache_dir=Path(cache).expanduser() if cache else xdg_cache_home(env) / "pinix",
            host_platform=env.get("PINIX_HOST_PLATFORM") or detect_host_platform(),
            host_machine=env.get("PINIX_HOST_MACHINE") or platform.machine(),
            fetch_timeout=fetch_timeout,
            log_level=(env.get("PINIX_LOG_LEVEL") or "INFO").upper(),
        )
