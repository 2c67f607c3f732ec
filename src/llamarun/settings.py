"""Environment-driven settings for the llama runtime."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, TypeVar

from dotenv import load_dotenv
from pydantic import BaseModel

from llamarun.constants import (
    DEFAULT_LOG_LINES,
    DEFAULT_PORT,
    DEFAULT_PORT_SCAN_SIZE,
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    DEFAULT_READY_POLL_SECONDS,
    DEFAULT_READY_TIMEOUT_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_PORT,
    ENV_DEBUG,
    ENV_LOG_LINES,
    ENV_PORT,
    ENV_PORT_SCAN_SIZE,
    ENV_PROBE_TIMEOUT,
    ENV_READY_POLL,
    ENV_READY_TIMEOUT,
    ENV_REQUEST_TIMEOUT,
    ENV_SERVER_HOST,
    ENV_SERVER_PORT,
    LEGACY_PORT_END,
    LEGACY_PORT_START,
)

logger = logging.getLogger("llamarun.settings")

T = TypeVar("T")

_FALSE_VALUES = {"", "0", "false", "no", "off"}


class RuntimeSettings(BaseModel):
    """Complete configuration for the runtime.

    This is the single source of truth for every tunable. All default values
    are defined here and should not be repeated elsewhere.
    """

    default_port: int = DEFAULT_PORT
    scan_size: int = DEFAULT_PORT_SCAN_SIZE
    ready_timeout: float = DEFAULT_READY_TIMEOUT_SECONDS
    ready_poll_interval: float = DEFAULT_READY_POLL_SECONDS
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    log_lines: int = DEFAULT_LOG_LINES
    debug: bool = False
    server_host: str = DEFAULT_SERVER_HOST
    server_port: int = DEFAULT_SERVER_PORT

    @property
    def scan_range(self) -> range:
        """Fallback ports tried after the default port, ascending."""
        start = self.default_port + 1
        return range(start, min(start + self.scan_size, 65536))

    def running_port_candidates(self) -> list[int]:
        """Ports that may host a server left behind by a previous session."""
        candidates = [self.default_port, *self.scan_range]
        for port in range(LEGACY_PORT_START, LEGACY_PORT_END + 1):
            if port not in candidates:
                candidates.append(port)
        return candidates

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> RuntimeSettings:
        """Build settings from the environment, loading a .env file first if present.

        Args:
            env_file: Explicit .env path. Defaults to ``.env`` in the working directory.

        Returns:
            RuntimeSettings instance
        """
        dotenv_file = env_file or Path.cwd() / ".env"
        if dotenv_file.exists():
            load_dotenv(dotenv_file)

        return cls(
            default_port=_env(ENV_PORT, int, DEFAULT_PORT),
            scan_size=_env(ENV_PORT_SCAN_SIZE, int, DEFAULT_PORT_SCAN_SIZE),
            ready_timeout=_env(ENV_READY_TIMEOUT, float, DEFAULT_READY_TIMEOUT_SECONDS),
            ready_poll_interval=_env(ENV_READY_POLL, float, DEFAULT_READY_POLL_SECONDS),
            probe_timeout=_env(ENV_PROBE_TIMEOUT, float, DEFAULT_PROBE_TIMEOUT_SECONDS),
            request_timeout=_env(
                ENV_REQUEST_TIMEOUT, float, DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            log_lines=_env(ENV_LOG_LINES, int, DEFAULT_LOG_LINES),
            debug=os.getenv(ENV_DEBUG, "").strip().lower() not in _FALSE_VALUES,
            server_host=os.getenv(ENV_SERVER_HOST, DEFAULT_SERVER_HOST).strip()
            or DEFAULT_SERVER_HOST,
            server_port=_env(ENV_SERVER_PORT, int, DEFAULT_SERVER_PORT),
        )


def _env(name: str, parse: Callable[[str], T], default: T) -> T:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return parse(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}; using {default}")
        return default
