"""FastAPI management server exposing the llama runtime over loopback HTTP.

Routes:
- `/config`: current settings (read-only)
- `/runtime/*`: start, status, stop, health, generate, chat, cancel, logs
- `/runtime/events`: Server-Sent Events stream of generated tokens
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from llamarun import __version__
from llamarun.constants import RUNTIME_API_PREFIX
from llamarun.errors import (
    CompletionError,
    ExecutableNotFoundError,
    LlamaRuntimeError,
    ModelNotFoundError,
    NoFreePortError,
    NotStartedError,
    ReadinessTimeoutError,
    RunCancelledError,
    RunIdInUseError,
)
from llamarun.models import (
    ActionResponse,
    ChatRequest,
    CompletionResponse,
    ErrorResponse,
    GenerateRequest,
    HealthProbeResult,
    LogLine,
    StartRequest,
    StartResult,
    StatusResult,
)
from llamarun.runtime.core import LlamaRuntime
from llamarun.runtime.logging import RuntimeLogComponent, get_logger
from llamarun.settings import RuntimeSettings

logger = get_logger(RuntimeLogComponent.SERVER)

# Keep-alive comment interval for idle event streams
_EVENTS_KEEPALIVE_SECONDS = 15.0

_STATUS_BY_ERROR: list[tuple[type[LlamaRuntimeError], int]] = [
    (ModelNotFoundError, 400),
    (ExecutableNotFoundError, 400),
    (RunIdInUseError, 409),
    (RunCancelledError, 409),
    (NotStartedError, 503),
    (NoFreePortError, 503),
    (CompletionError, 502),
    (ReadinessTimeoutError, 504),
]


def status_code_for(error: LlamaRuntimeError) -> int:
    """HTTP status used to report a runtime error."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_runtime_server(runtime: LlamaRuntime) -> FastAPI:
    """Create the management FastAPI app.

    Args:
        runtime: Runtime shared by every route

    Returns:
        FastAPI app instance
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
        try:
            yield
        finally:
            # Never leave a llama-server behind when the management server exits.
            await runtime.aclose()

    app = FastAPI(
        title="llamarun",
        description="Supervisor and completion proxy for a local llama-server",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(LlamaRuntimeError)
    async def _runtime_error_handler(
        _: Request, exc: LlamaRuntimeError
    ) -> JSONResponse:
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"{exc.code}: {exc}")
        body = ErrorResponse(code=exc.code, message=str(exc))
        return JSONResponse(status_code=status_code, content=body.model_dump())

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"message": "llamarun", "status": "running"}

    @app.get("/config", response_model=RuntimeSettings)
    async def get_config() -> RuntimeSettings:
        return runtime.settings

    # === Lifecycle ===

    @app.post(f"{RUNTIME_API_PREFIX}/start", response_model=StartResult)
    async def start_runtime(request: StartRequest) -> StartResult:
        return await runtime.start(
            request.model_path,
            tool_root=request.tool_root,
            port=request.port,
            params=request.params,
            log_file=request.log_file,
        )

    @app.get(f"{RUNTIME_API_PREFIX}/status", response_model=StatusResult)
    async def get_status() -> StatusResult:
        return await runtime.status()

    @app.post(f"{RUNTIME_API_PREFIX}/stop", response_model=ActionResponse)
    async def stop_runtime() -> ActionResponse:
        await runtime.stop()
        return ActionResponse.success("Runtime stopped")

    @app.get(f"{RUNTIME_API_PREFIX}/health/{{port}}", response_model=HealthProbeResult)
    async def health(port: int) -> HealthProbeResult:
        return await runtime.health_check_status(port)

    # === Completions ===

    @app.post(f"{RUNTIME_API_PREFIX}/generate", response_model=CompletionResponse)
    async def generate(request: GenerateRequest) -> CompletionResponse:
        text = await runtime.generate(
            request.prompt,
            stream=request.stream,
            options=request.options,
            run_id=request.run_id,
        )
        return CompletionResponse(text=text, run_id=request.run_id)

    @app.post(f"{RUNTIME_API_PREFIX}/chat", response_model=CompletionResponse)
    async def chat(request: ChatRequest) -> CompletionResponse:
        text = await runtime.chat(
            request.system_prompt,
            request.user_prompt,
            options=request.options,
            run_id=request.run_id,
            stream=request.stream,
        )
        return CompletionResponse(text=text, run_id=request.run_id)

    @app.post(f"{RUNTIME_API_PREFIX}/cancel/{{run_id}}", response_model=ActionResponse)
    async def cancel(run_id: str) -> ActionResponse:
        if runtime.cancel(run_id):
            return ActionResponse.success(f"Run {run_id} cancelled")
        return ActionResponse.success(f"Run {run_id} is not in flight")

    # === Diagnostics ===

    @app.get(f"{RUNTIME_API_PREFIX}/logs", response_model=list[LogLine])
    async def get_logs() -> list[LogLine]:
        return runtime.logs()

    @app.get(f"{RUNTIME_API_PREFIX}/events")
    async def stream_events(
        run_id: Annotated[
            str | None, Query(description="Only stream tokens of this run")
        ] = None,
    ) -> StreamingResponse:
        """Stream generated tokens using Server-Sent Events (SSE)."""

        async def event_generator() -> AsyncGenerator[str, None]:
            with runtime.subscribe_tokens(run_id) as queue:
                while True:
                    try:
                        token = await asyncio.wait_for(
                            queue.get(), timeout=_EVENTS_KEEPALIVE_SECONDS
                        )
                    except asyncio.TimeoutError:
                        yield ": keep-alive\n\n"
                        continue
                    yield f"data: {json.dumps(token.model_dump())}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app


def run_runtime_server(settings: RuntimeSettings | None = None) -> None:
    """Run the management server on the configured loopback host and port.

    Args:
        settings: Runtime settings; read from the environment when omitted
    """
    import uvicorn

    settings = settings or RuntimeSettings.from_env()
    app = create_runtime_server(LlamaRuntime(settings))

    config = uvicorn.Config(
        app=app,
        host=settings.server_host,
        port=settings.server_port,
        log_level="info",
    )

    server = uvicorn.Server(config)
    logger.info(
        f"Management server listening on http://{settings.server_host}:{settings.server_port}"
    )
    asyncio.run(server.serve())
