"""Centralized Pydantic models, enums, and type aliases for llamarun."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field

from llamarun.constants import (
    CHAT_DEFAULT_MAX_TOKENS,
    CHAT_DEFAULT_TEMPERATURE,
    GENERATE_DEFAULT_MAX_TOKENS,
    GENERATE_DEFAULT_TEMPERATURE,
    GENERATE_DEFAULT_TOP_P,
    MAX_TEMPERATURE,
)


# === Type Aliases ===

ActionStatus = Literal["success", "error"]

LogStream = Literal["stdout", "stderr"]


# === Enums ===


class RuntimePhase(str, Enum):
    """Lifecycle phase of the supervised llama-server."""

    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    ATTACHED = "attached"
    STOPPING = "stopping"


# === Runtime Parameters ===


class StartParams(BaseModel):
    """Parameters accepted by start().

    Only context_length reaches the child (as --ctx-size); the sampling fields
    are carried for callers that keep one params object per session.
    """

    temperature: float = 0.0
    top_p: float = 0.0
    max_tokens: int = 0
    context_length: int = 0


class GenerateOptions(BaseModel):
    """Sampling options for raw /completion requests.

    Out-of-domain or unset values fall back to defaults instead of failing.
    """

    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None

    def normalized(self) -> tuple[float, float, int]:
        """Return (temperature, top_p, max_tokens) with defaults applied."""
        temperature = self.temperature
        if temperature is None or not 0.0 < temperature <= MAX_TEMPERATURE:
            temperature = GENERATE_DEFAULT_TEMPERATURE
        top_p = self.top_p
        if top_p is None or not 0.0 < top_p <= 1.0:
            top_p = GENERATE_DEFAULT_TOP_P
        max_tokens = self.max_tokens
        if max_tokens is None or max_tokens <= 0:
            max_tokens = GENERATE_DEFAULT_MAX_TOKENS
        return temperature, top_p, max_tokens


class ChatOptions(BaseModel):
    """Sampling options for chat requests."""

    temperature: float | None = None
    max_tokens: int | None = None

    def normalized(self) -> tuple[float, int]:
        """Return (temperature, max_tokens) with defaults applied."""
        temperature = self.temperature
        if temperature is None or not 0.0 <= temperature <= MAX_TEMPERATURE:
            temperature = CHAT_DEFAULT_TEMPERATURE
        max_tokens = self.max_tokens
        if max_tokens is None or max_tokens <= 0:
            max_tokens = CHAT_DEFAULT_MAX_TOKENS
        return temperature, max_tokens


# === Results ===


class StartResult(BaseModel):
    port: int
    attached: bool = False


class StatusResult(BaseModel):
    """Reconciled view of the runtime state."""

    running: bool
    port: int | None = None
    pid: int | None = None
    attached: bool = False
    phase: RuntimePhase = RuntimePhase.IDLE


class HealthProbeResult(BaseModel):
    """Outcome of one probe pass; endpoint is the URL that answered 200."""

    healthy: bool
    endpoint: str | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class StreamToken(BaseModel):
    """One streamed text fragment, published while a streaming call runs."""

    run_id: str | None = None
    content: str

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class LogLine(BaseModel):
    """A single line captured from the child's stdout or stderr."""

    timestamp: str
    stream: LogStream
    content: str

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


# === Management API Bodies ===


class StartRequest(BaseModel):
    model_path: str
    tool_root: str | None = None
    port: int | None = None
    params: StartParams = Field(default_factory=StartParams)
    log_file: str | None = None


class GenerateRequest(BaseModel):
    prompt: str
    stream: bool = False
    options: GenerateOptions = Field(default_factory=GenerateOptions)
    run_id: str | None = None


class ChatRequest(BaseModel):
    system_prompt: str
    user_prompt: str
    options: ChatOptions = Field(default_factory=ChatOptions)
    run_id: str | None = None
    stream: bool = False


class CompletionResponse(BaseModel):
    text: str
    run_id: str | None = None


class ActionResponse(BaseModel):
    """Response model for actions."""

    status: ActionStatus
    message: str

    @classmethod
    def success(cls, message: str) -> ActionResponse:
        return cls(status="success", message=message)


class ErrorResponse(BaseModel):
    status: ActionStatus = "error"
    code: str
    message: str
