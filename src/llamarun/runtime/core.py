"""LlamaRuntime: single entry point for the local llama-server runtime.

Builds every collaborator once (state, log buffer, prober, supervisor,
cancel registry, token channel, proxy) and passes them by reference, so the
application holds exactly one runtime object instead of module globals.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import httpx

from llamarun.constants import LOOPBACK_HOST
from llamarun.models import (
    ChatOptions,
    GenerateOptions,
    HealthProbeResult,
    LogLine,
    StartParams,
    StartResult,
    StatusResult,
    StreamToken,
)
from llamarun.runtime.cancel import CancelRegistry
from llamarun.runtime.events import TokenBroadcaster
from llamarun.runtime.health import HealthProber
from llamarun.runtime.logging import LogRingBuffer
from llamarun.runtime.proxy import CompletionProxy, TokenCallback
from llamarun.runtime.supervisor import RuntimeState, RuntimeSupervisor
from llamarun.settings import RuntimeSettings


class LlamaRuntime:
    """Start, query, stop and talk to the supervised llama-server.

    Attributes:
        settings: Runtime settings
        state: Port and owned child
        log_buffer: Recent child output
        prober: Health prober
        supervisor: Process supervisor
        registry: Cancellation registry
        broadcaster: Token event channel
        proxy: Completion proxy
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings: RuntimeSettings = settings or RuntimeSettings()
        self.state: RuntimeState = RuntimeState()
        self.log_buffer: LogRingBuffer = LogRingBuffer(self.settings.log_lines)
        self.prober: HealthProber = HealthProber(
            host=LOOPBACK_HOST,
            timeout=self.settings.probe_timeout,
            transport=transport,
            debug=self.settings.debug,
        )
        self.supervisor: RuntimeSupervisor = RuntimeSupervisor(
            self.settings, self.state, self.log_buffer, self.prober
        )
        self.registry: CancelRegistry = CancelRegistry()
        self.broadcaster: TokenBroadcaster = TokenBroadcaster()
        self.proxy: CompletionProxy = CompletionProxy(
            self.supervisor.current_port,
            self.registry,
            self.broadcaster,
            host=LOOPBACK_HOST,
            request_timeout=self.settings.request_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> LlamaRuntime:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # === Lifecycle ===

    async def start(
        self,
        model_path: str | Path,
        tool_root: str | Path | None = None,
        port: int | None = None,
        params: StartParams | None = None,
        log_file: str | Path | None = None,
    ) -> StartResult:
        return await self.supervisor.start(
            model_path, tool_root=tool_root, port=port, params=params, log_file=log_file
        )

    async def status(self) -> StatusResult:
        return await self.supervisor.status()

    async def stop(self) -> None:
        await self.supervisor.stop()

    async def health_check(self, port: int) -> bool:
        return await self.prober.is_healthy(port)

    async def health_check_status(self, port: int) -> HealthProbeResult:
        return await self.prober.probe(port)

    def current_port(self) -> int | None:
        return self.supervisor.current_port()

    # === Completions ===

    async def generate(
        self,
        prompt: str,
        stream: bool = False,
        options: GenerateOptions | None = None,
        run_id: str | None = None,
        on_token: TokenCallback | None = None,
    ) -> str:
        return await self.proxy.generate(
            prompt, stream=stream, options=options, run_id=run_id, on_token=on_token
        )

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        options: ChatOptions | None = None,
        run_id: str | None = None,
        stream: bool = False,
        on_token: TokenCallback | None = None,
    ) -> str:
        return await self.proxy.chat(
            system_prompt,
            user_prompt,
            options=options,
            run_id=run_id,
            stream=stream,
            on_token=on_token,
        )

    def cancel(self, run_id: str) -> bool:
        return self.proxy.cancel(run_id)

    # === Diagnostics ===

    def logs(self) -> list[LogLine]:
        """Snapshot of the most recent child output lines."""
        return self.log_buffer.snapshot()

    @contextmanager
    def subscribe_tokens(
        self, run_id: str | None = None
    ) -> Iterator[asyncio.Queue[StreamToken]]:
        """Queue of streamed tokens for ``run_id`` (or every run) while open."""
        with self.broadcaster.subscribe(run_id) as queue:
            yield queue

    async def aclose(self) -> None:
        """Stop the child and release HTTP clients."""
        try:
            await self.stop()
        finally:
            await self.proxy.aclose()
            await self.prober.aclose()
