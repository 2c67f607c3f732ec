"""Exception hierarchy for the llama runtime.

Every error carries a stable ``code`` so the management API can report it
without string matching. Nothing here is fatal to the host process.
"""

from __future__ import annotations

from pathlib import Path
from typing import ClassVar


class LlamaRuntimeError(Exception):
    """Base error type for all runtime failures."""

    code: ClassVar[str] = "RUNTIME_ERROR"


# === Input errors ===


class ModelNotFoundError(LlamaRuntimeError):
    """Model path is empty or does not point at a file."""

    code: ClassVar[str] = "MODEL_NOT_FOUND"


class ExecutableNotFoundError(LlamaRuntimeError):
    """No llama-server executable was found under the tool root."""

    code: ClassVar[str] = "EXECUTABLE_NOT_FOUND"

    def __init__(self, checked: list[Path]):
        self.checked = checked
        paths = "\n".join(f"  - {p}" for p in checked)
        super().__init__(
            "Could not find the llama-server executable. "
            f"Expected it under <tool_root>/runtime/llama. Checked:\n{paths}"
        )


class RunIdInUseError(LlamaRuntimeError):
    """A cancellable call with the same run id is still in flight."""

    code: ClassVar[str] = "RUN_ID_IN_USE"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run id {run_id!r} is already in use by an in-flight request")


# === Resource / lifecycle errors ===


class NoFreePortError(LlamaRuntimeError):
    code: ClassVar[str] = "NO_FREE_PORT"


class SpawnError(LlamaRuntimeError):
    """The OS refused to create the llama-server process."""

    code: ClassVar[str] = "SPAWN_FAILED"


class ReadinessTimeoutError(LlamaRuntimeError):
    """The child was spawned but never answered a health probe in time."""

    code: ClassVar[str] = "READINESS_TIMEOUT"

    def __init__(
        self,
        *,
        elapsed: float,
        port: int,
        model_path: str,
        launch_args: list[str],
        log_excerpt: str,
    ):
        self.elapsed = elapsed
        self.port = port
        self.model_path = model_path
        self.launch_args = launch_args
        self.log_excerpt = log_excerpt
        message = (
            f"llama-server did not become ready within {elapsed:.0f} seconds. "
            f"port={port} model_path={model_path} launch_args=[{' '.join(launch_args)}]"
        )
        if log_excerpt:
            message += f"\n\nLast llama-server output:\n{log_excerpt}"
        super().__init__(message)


class ProcessExitedError(LlamaRuntimeError):
    """The child exited before it became ready."""

    code: ClassVar[str] = "PROCESS_EXITED"

    def __init__(self, returncode: int | None, log_excerpt: str = ""):
        self.returncode = returncode
        self.log_excerpt = log_excerpt
        message = f"llama-server exited with code {returncode} before becoming ready."
        if log_excerpt:
            message += f"\n\nLast llama-server output:\n{log_excerpt}"
        super().__init__(message)


class StartAbortedError(LlamaRuntimeError):
    """A stop() or a newer start() replaced the child while it was loading."""

    code: ClassVar[str] = "START_ABORTED"


class NotStartedError(LlamaRuntimeError):
    code: ClassVar[str] = "NOT_STARTED"

    def __init__(self) -> None:
        super().__init__(
            "Runtime not started. Start the runtime with a GGUF model first."
        )


# === Request errors ===


class CompletionError(LlamaRuntimeError):
    """The completion endpoint failed after every fallback was tried."""

    code: ClassVar[str] = "COMPLETION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int | None = None,
        body: str = "",
    ):
        self.url = url
        self.status_code = status_code
        self.body = body
        endpoint = (
            f"{url} HTTP {status_code}" if status_code is not None else f"{url} (no response)"
        )
        super().__init__(f"{message}\nEndpoint: {endpoint}")


class StreamInterruptedError(CompletionError):
    """An established `/completion` stream broke before it finished.

    ``body`` holds the text accumulated before the break.
    """

    code: ClassVar[str] = "STREAM_INTERRUPTED"


class RunCancelledError(LlamaRuntimeError):
    """The run was cancelled through the cancel registry."""

    code: ClassVar[str] = "RUN_CANCELLED"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id!r} cancelled.")
