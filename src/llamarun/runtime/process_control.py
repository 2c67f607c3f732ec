"""Process tracking and robust stop helpers for the llama-server child.

Design goals:
- Only stop processes we started (tracked by pid + create_time).
- Prefer graceful shutdown (terminate first), escalate deterministically to kill.
- Stop the whole process tree so helper processes do not outlive the server.
- The owned process is always terminated, whichever path drops it.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import ClassVar, TextIO

import psutil
from pydantic import BaseModel, ConfigDict

from llamarun.errors import SpawnError
from llamarun.runtime.logging import (
    LogRingBuffer,
    RuntimeLogComponent,
    drain_stream,
    get_logger,
)

logger = get_logger(RuntimeLogComponent.PROCESS_CONTROL)

# Child output lines can be long (model metadata dumps); raise asyncio's 64 KiB default.
_STREAM_LIMIT = 1024 * 1024


class TrackedProcess(BaseModel):
    """A process we started and are allowed to manage.

    create_time protects against PID reuse.
    """

    pid: int | None = None
    create_time: float | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


def track_process(pid: int) -> TrackedProcess | None:
    """Create a TrackedProcess for a running PID, recording create_time."""
    try:
        proc = psutil.Process(pid)
        return TrackedProcess(pid=pid, create_time=float(proc.create_time()))
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def validate_tracked(tp: TrackedProcess) -> psutil.Process | None:
    """Return a psutil.Process only if PID matches create_time (prevents PID reuse bugs)."""
    if tp.pid is None or tp.create_time is None:
        return None
    try:
        proc = psutil.Process(tp.pid)
        if abs(float(proc.create_time()) - float(tp.create_time)) > 0.001:
            return None
        return proc
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def _terminate_tree(root: psutil.Process, timeout: float) -> None:
    """Terminate a process tree: children first, then the root, killing stragglers."""
    try:
        children = root.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []

    procs = [*children, root]
    for p in procs:
        try:
            p.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    if alive:
        for p in alive:
            try:
                p.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        psutil.wait_procs(alive, timeout=max(0.5, timeout / 2))


def stop_tracked_process(
    tp: TrackedProcess, *, name: str, terminate_timeout: float = 3.0
) -> None:
    """Stop a tracked process and its children (blocking).

    Args:
        tp: Process to stop
        name: Label used in logs
        terminate_timeout: Grace period before escalating to kill
    """
    proc = validate_tracked(tp)
    if proc is None:
        return
    logger.debug(f"Stopping {name} pid={tp.pid}")
    _terminate_tree(proc, timeout=terminate_timeout)


def kill_tracked_now(tp: TrackedProcess) -> None:
    """Kill immediately without waiting; safe to call from finalizers."""
    proc = validate_tracked(tp)
    if proc is None:
        return
    try:
        proc.kill()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass


# =============================================================================
# Owned process handle
# =============================================================================


class OwnedProcess:
    """The single llama-server child owned by the supervisor.

    Wraps the asyncio process together with its two log drains and optional
    log file. ``terminate()`` is the normal release path; the finalizer kills
    the child if the handle is dropped without it.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        tracked: TrackedProcess | None,
        args: list[str],
        drains: list[asyncio.Task[None]],
        log_file: TextIO | None = None,
    ) -> None:
        self.process: asyncio.subprocess.Process = process
        self.tracked: TrackedProcess | None = tracked
        self.args: list[str] = args
        self._drains: list[asyncio.Task[None]] = drains
        self._log_file: TextIO | None = log_file
        self._released: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def is_alive(self) -> bool:
        """Non-blocking liveness check."""
        if self.process.returncode is not None:
            return False
        if self.tracked is None:
            return True
        proc = validate_tracked(self.tracked)
        if proc is None:
            return False
        try:
            return proc.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def terminate(self, timeout: float = 3.0) -> int | None:
        """Stop the process tree, reap the child and close the log capture.

        Idempotent.

        Returns:
            The child's exit code
        """
        if self._released:
            return self.process.returncode
        self._released = True

        if self.process.returncode is None:
            if self.tracked is not None:
                await asyncio.to_thread(
                    stop_tracked_process,
                    self.tracked,
                    name="llama-server",
                    terminate_timeout=timeout,
                )
            else:
                try:
                    self.process.kill()
                except ProcessLookupError:
                    pass
        returncode = await self.process.wait()

        # Pipes close once the child is gone; drains finish on EOF.
        if self._drains:
            _, pending = await asyncio.wait(self._drains, timeout=timeout)
            for task in pending:
                task.cancel()
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None
        logger.info(f"llama-server pid={self.pid} exited with code {returncode}")
        return returncode

    def __del__(self) -> None:
        if not self._released and self.tracked is not None:
            kill_tracked_now(self.tracked)


def _open_log_file(path: Path) -> TextIO:
    path.parent.mkdir(parents=True, exist_ok=True)
    return path.open("a", encoding="utf-8")


async def spawn_owned_process(
    args: list[str],
    buffer: LogRingBuffer,
    *,
    log_file: Path | None = None,
) -> OwnedProcess:
    """Spawn the server with piped output drained into ``buffer`` (and ``log_file``).

    Args:
        args: Full argument vector, executable first
        buffer: Ring buffer receiving stdout and stderr lines
        log_file: Optional file that also receives every line

    Returns:
        OwnedProcess handle

    Raises:
        SpawnError: If the log file cannot be opened or the OS rejects the process
    """
    handle: TextIO | None = None
    if log_file is not None:
        try:
            handle = _open_log_file(log_file)
        except OSError as e:
            raise SpawnError(f"Failed to open log file {log_file}: {e}") from e

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )
    except OSError as e:
        if handle is not None:
            handle.close()
        raise SpawnError(f"Failed to start llama-server: {e}") from e

    assert process.stdout is not None and process.stderr is not None, (
        "stdout and stderr must not be None"
    )
    drains = [
        asyncio.create_task(
            drain_stream(process.stdout, buffer, "stdout", log_file=handle)
        ),
        asyncio.create_task(
            drain_stream(process.stderr, buffer, "stderr", log_file=handle)
        ),
    ]
    tracked = track_process(process.pid)
    logger.info(f"Spawned llama-server pid={process.pid} (parent pid={os.getpid()})")
    return OwnedProcess(process, tracked, list(args), drains, handle)
