"""Lifecycle of the single supervised llama-server process.

State machine: idle -> starting -> ready -> stopping -> idle, with "attached"
standing in for "ready" when the healthy server on our port was not spawned
by us. The lock in RuntimeState is never held across an await: state is read,
released, acted upon, then re-acquired to write results.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import threading
from pathlib import Path

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from llamarun.constants import LLAMA_RUNTIME_DIR, LLAMA_SERVER_NAMES, LOOPBACK_HOST
from llamarun.errors import (
    ExecutableNotFoundError,
    ModelNotFoundError,
    NoFreePortError,
    ProcessExitedError,
    ReadinessTimeoutError,
    SpawnError,
    StartAbortedError,
)
from llamarun.models import (
    HealthProbeResult,
    RuntimePhase,
    StartParams,
    StartResult,
    StatusResult,
)
from llamarun.runtime.health import HealthProber
from llamarun.runtime.logging import LogRingBuffer, RuntimeLogComponent, get_logger
from llamarun.runtime.ports import pick_port
from llamarun.runtime.process_control import OwnedProcess, spawn_owned_process
from llamarun.settings import RuntimeSettings

logger = get_logger(RuntimeLogComponent.SUPERVISOR)


class RuntimeState:
    """Port and owned child, guarded by a short-held lock.

    Invariant: ``child is None`` implies ``port is None`` unless the port
    belongs to a healthy server we attached to (phase ATTACHED).
    """

    def __init__(self) -> None:
        self.lock: threading.Lock = threading.Lock()
        self.port: int | None = None
        self.child: OwnedProcess | None = None
        self.phase: RuntimePhase = RuntimePhase.IDLE

    def clear(self) -> None:
        """Reset to idle. Caller must hold the lock."""
        self.port = None
        self.child = None
        self.phase = RuntimePhase.IDLE


# =============================================================================
# Launch helpers
# =============================================================================


def _executable_name(name: str) -> str:
    return f"{name}.exe" if os.name == "nt" else name


def resolve_server_executable(tool_root: str | Path | None) -> Path:
    """Locate llama-server under ``<tool_root>/runtime/llama``.

    Args:
        tool_root: Directory holding runtime/ and models/. Defaults to the working directory.

    Returns:
        Absolute path to the executable

    Raises:
        ExecutableNotFoundError: Listing every path that was checked
    """
    if tool_root is None or not str(tool_root).strip():
        root = Path.cwd()
    else:
        root = Path(str(tool_root).strip().replace("\\", "/"))

    checked: list[Path] = []
    for name in LLAMA_SERVER_NAMES:
        candidate = root.joinpath(*LLAMA_RUNTIME_DIR, _executable_name(name))
        checked.append(candidate)
        if candidate.is_file():
            return candidate.resolve()
    raise ExecutableNotFoundError(checked)


def build_launch_args(
    server_path: Path, model_path: str, port: int, params: StartParams
) -> list[str]:
    """Compose the llama-server command line, executable first."""
    args = [
        str(server_path),
        "--model",
        model_path,
        "--host",
        LOOPBACK_HOST,
        "--port",
        str(port),
    ]
    if params.context_length > 0:
        args.extend(["--ctx-size", str(params.context_length)])
    return args


def validate_model_path(model_path: str | Path) -> str:
    path = str(model_path).strip()
    if not path:
        raise ModelNotFoundError("GGUF model path is required.")
    if not Path(path).is_file():
        raise ModelNotFoundError(f"Model file not found: {path}")
    return path


# =============================================================================
# Supervisor
# =============================================================================


class RuntimeSupervisor:
    """Owns the llama-server child: start, status and stop.

    Attributes:
        settings: Runtime settings (ports, readiness budget)
        state: Shared runtime state
        log_buffer: Ring buffer fed by the child's output
        prober: Health prober used for attach detection and readiness
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        state: RuntimeState,
        log_buffer: LogRingBuffer,
        prober: HealthProber,
    ) -> None:
        self.settings: RuntimeSettings = settings
        self.state: RuntimeState = state
        self.log_buffer: LogRingBuffer = log_buffer
        self.prober: HealthProber = prober

    async def __aenter__(self) -> RuntimeSupervisor:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def current_port(self) -> int | None:
        with self.state.lock:
            return self.state.port

    async def _choose_port(self, explicit_port: int | None) -> tuple[int, bool]:
        """Return (port, known_healthy)."""
        if explicit_port is not None:
            return explicit_port, False

        running = await self.prober.find_running_port(
            self.settings.running_port_candidates()
        )
        if running is not None:
            return running, True

        port = await asyncio.to_thread(
            pick_port, self.settings.default_port, self.settings.scan_range
        )
        if port is None:
            scan = self.settings.scan_range
            checked = str(self.settings.default_port)
            if scan:
                checked += f" and {scan.start}-{scan.stop - 1}"
            raise NoFreePortError(
                f"No free port near {self.settings.default_port} (checked {checked})."
            )
        return port, False

    async def start(
        self,
        model_path: str | Path,
        tool_root: str | Path | None = None,
        port: int | None = None,
        params: StartParams | None = None,
        log_file: str | Path | None = None,
    ) -> StartResult:
        """Bring llama-server up on a port and wait until it answers health probes.

        Re-entrant: returns immediately when a live child we own, or a healthy
        server we can attach to, already holds the target port.

        Args:
            model_path: GGUF model file
            tool_root: Directory holding runtime/llama/llama-server
            port: Explicit port override
            params: Start parameters (context length)
            log_file: Optional file that also receives the child's output

        Returns:
            StartResult with the port in use

        Raises:
            ModelNotFoundError, ExecutableNotFoundError, NoFreePortError: before any side effect
            SpawnError, ReadinessTimeoutError, ProcessExitedError, StartAbortedError:
                after rolling the state back
        """
        model = validate_model_path(model_path)
        server_path = resolve_server_executable(tool_root)
        target, known_healthy = await self._choose_port(port)

        stale: OwnedProcess | None = None
        with self.state.lock:
            child = self.state.child
            if child is not None and self.state.port == target and child.is_alive():
                return StartResult(port=target)
            if child is not None and not child.is_alive():
                stale = child
                self.state.clear()
        if stale is not None:
            logger.info(f"Clearing exited llama-server pid={stale.pid}")
            await stale.terminate()

        if known_healthy or await self.prober.is_healthy(target):
            return await self._attach(target)

        params = params or StartParams()
        args = build_launch_args(server_path, model, target, params)
        self.log_buffer.clear()
        logger.info(f"Starting llama-server: {shlex.join(args)}")
        try:
            new_child = await spawn_owned_process(
                args,
                self.log_buffer,
                log_file=Path(log_file) if log_file else None,
            )
        except SpawnError:
            await self.stop()
            raise

        with self.state.lock:
            previous = self.state.child
            self.state.child = new_child
            self.state.port = target
            self.state.phase = RuntimePhase.STARTING
        if previous is not None:
            logger.info(f"Replacing llama-server pid={previous.pid}")
            await previous.terminate()

        loop = asyncio.get_running_loop()
        started_at = loop.time()
        try:
            result = await self._await_readiness(new_child, target)
        except RetryError:
            elapsed = loop.time() - started_at
            await self._discard(new_child)
            raise ReadinessTimeoutError(
                elapsed=elapsed,
                port=target,
                model_path=model,
                launch_args=args,
                log_excerpt=self.log_buffer.tail_text(),
            ) from None
        except BaseException:
            await self._discard(new_child)
            raise

        with self.state.lock:
            if self.state.child is new_child:
                self.state.phase = RuntimePhase.READY
        logger.info(
            f"llama-server ready after {loop.time() - started_at:.1f}s at {result.endpoint}"
        )
        return StartResult(port=target)

    async def _attach(self, port: int) -> StartResult:
        """Claim a healthy port we did not spawn; replaces any child we own."""
        with self.state.lock:
            previous = self.state.child
            self.state.child = None
            self.state.port = port
            self.state.phase = RuntimePhase.ATTACHED
        if previous is not None:
            logger.info(f"Replacing llama-server pid={previous.pid}")
            await previous.terminate()
        logger.info(f"Attached to running llama-server on port {port}")
        return StartResult(port=port, attached=True)

    async def _await_readiness(self, child: OwnedProcess, port: int) -> HealthProbeResult:
        """Sleep, probe, repeat until healthy or the readiness budget runs out.

        Raises:
            RetryError: Budget exhausted without a healthy probe
            ProcessExitedError: The child died while loading
            StartAbortedError: The child was stopped or replaced meanwhile
        """
        loop = asyncio.get_running_loop()
        started_at = loop.time()

        async def probe_once() -> HealthProbeResult:
            with self.state.lock:
                owned = self.state.child is child
            if not owned:
                raise StartAbortedError(
                    "llama-server start aborted: the runtime was stopped or replaced "
                    "while the model was loading."
                )
            if not child.is_alive():
                raise ProcessExitedError(child.returncode, self.log_buffer.tail_text())
            result = await self.prober.probe(port)
            logger.info(
                f"[readiness] elapsedSeconds={loop.time() - started_at:.0f} "
                f"port={port} healthy={result.healthy}"
            )
            return result

        await asyncio.sleep(self.settings.ready_poll_interval)
        retrying = AsyncRetrying(
            stop=stop_after_delay(self.settings.ready_timeout),
            wait=wait_fixed(self.settings.ready_poll_interval),
            retry=retry_if_result(lambda r: not r.healthy),
        )
        return await retrying(probe_once)

    async def _discard(self, child: OwnedProcess) -> None:
        """Roll back to idle if ``child`` is still the owned one, then terminate it."""
        with self.state.lock:
            if self.state.child is child:
                self.state.clear()
        await child.terminate()

    async def status(self) -> StatusResult:
        """Reconcile the recorded state with the child's liveness or the attached port's health."""
        with self.state.lock:
            child = self.state.child
            port = self.state.port
            phase = self.state.phase

        if child is not None:
            if child.is_alive():
                return StatusResult(running=True, port=port, pid=child.pid, phase=phase)
            with self.state.lock:
                if self.state.child is child:
                    self.state.clear()
            logger.warning(
                f"llama-server pid={child.pid} exited with code {child.returncode}"
            )
            await child.terminate()
            return StatusResult(running=False)

        if port is not None:
            if await self.prober.is_healthy(port):
                return StatusResult(
                    running=True, port=port, attached=True, phase=RuntimePhase.ATTACHED
                )
            with self.state.lock:
                if self.state.child is None and self.state.port == port:
                    self.state.clear()
            logger.warning(f"Attached llama-server on port {port} stopped answering")

        return StatusResult(running=False)

    async def stop(self) -> None:
        """Kill and reap the owned child, if any. Safe to call when nothing is running."""
        with self.state.lock:
            child = self.state.child
            self.state.child = None
            self.state.port = None
            self.state.phase = RuntimePhase.STOPPING if child is not None else RuntimePhase.IDLE
        if child is None:
            return
        try:
            await child.terminate()
        finally:
            with self.state.lock:
                if self.state.child is None and self.state.phase == RuntimePhase.STOPPING:
                    self.state.phase = RuntimePhase.IDLE
