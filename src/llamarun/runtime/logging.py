"""Centralized logging for the llama runtime (component loggers and log capture)."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import TextIO

from llamarun.constants import DEFAULT_LOG_LINES, LOG_EXCERPT_MAX_CHARS
from llamarun.models import LogLine, LogStream


class RuntimeLogComponent(str, Enum):
    """Where a log originated (used for fine-grained filtering)."""

    SUPERVISOR = "supervisor"
    PORTS = "ports"
    HEALTH = "health"
    PROXY = "proxy"
    PROCESS_CONTROL = "process_control"
    SERVER = "server"
    LLAMA = "llama"


_LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

_configured = False


def configure_runtime_logging(level: int = logging.INFO) -> None:
    """Attach a single stream handler to every component logger."""
    global _configured

    formatter = logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for component in RuntimeLogComponent:
        logger = logging.getLogger(f"llamarun.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.propagate = False

    _configured = True


def get_logger(component: RuntimeLogComponent) -> logging.Logger:
    """Get a runtime logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"llamarun.{component.value}")
    if not _configured and not logger.handlers:
        # Avoid "No handlers could be found" warnings when logging was never configured.
        logger.addHandler(logging.NullHandler())
    return logger


def _now_timestamp() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())


# =============================================================================
# Log Capture
# =============================================================================


class LogRingBuffer:
    """Bounded FIFO of the most recent child output lines.

    Appends come from two concurrent drains (stdout, stderr). Every access
    holds the lock only for the deque operation itself.
    """

    def __init__(self, max_lines: int = DEFAULT_LOG_LINES) -> None:
        self._lines: deque[LogLine] = deque(maxlen=max_lines)
        self._lock = threading.Lock()

    @property
    def max_lines(self) -> int:
        return self._lines.maxlen or 0

    def push(self, content: str, stream: LogStream = "stdout") -> None:
        entry = LogLine(timestamp=_now_timestamp(), stream=stream, content=content)
        with self._lock:
            self._lines.append(entry)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    def snapshot(self) -> list[LogLine]:
        """Return a copy of the buffered lines, oldest first."""
        with self._lock:
            return list(self._lines)

    def lines(self) -> list[str]:
        return [entry.content for entry in self.snapshot()]

    def tail_text(self, max_chars: int = LOG_EXCERPT_MAX_CHARS) -> str:
        """Trailing excerpt of the captured output, used in failure messages."""
        text = "\n".join(self.lines())
        if len(text) > max_chars:
            return f"...{text[-max_chars:]}"
        return text

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


async def drain_stream(
    stream: asyncio.StreamReader,
    buffer: LogRingBuffer,
    stream_name: LogStream,
    *,
    log_file: TextIO | None = None,
) -> None:
    """Read complete lines from a child pipe until EOF and push them into the buffer.

    Args:
        stream: The child's stdout or stderr reader
        buffer: Shared ring buffer
        stream_name: Which pipe this is
        log_file: Optional file that also receives every line
    """
    llama_logger = get_logger(RuntimeLogComponent.LLAMA)
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # Line longer than the reader limit; asyncio already discarded it.
            continue
        if not line:
            break
        text = line.decode("utf-8", errors="replace").rstrip("\r\n")
        buffer.push(text, stream_name)
        llama_logger.debug(f"{stream_name} | {text}")
        if log_file is not None:
            try:
                log_file.write(text + "\n")
                log_file.flush()
            except (OSError, ValueError):
                # File closed underneath us on shutdown; the buffer still has the line.
                log_file = None
