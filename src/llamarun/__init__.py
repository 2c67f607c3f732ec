"""Supervisor and completion proxy for a locally spawned llama-server."""

__version__ = "0.1.0"

from llamarun.errors import LlamaRuntimeError  # noqa: E402
from llamarun.models import (  # noqa: E402
    ChatOptions,
    GenerateOptions,
    StartParams,
    StartResult,
    StatusResult,
    StreamToken,
)
from llamarun.runtime.core import LlamaRuntime  # noqa: E402
from llamarun.settings import RuntimeSettings  # noqa: E402

__all__ = [
    "ChatOptions",
    "GenerateOptions",
    "LlamaRuntime",
    "LlamaRuntimeError",
    "RuntimeSettings",
    "StartParams",
    "StartResult",
    "StatusResult",
    "StreamToken",
    "__version__",
]
