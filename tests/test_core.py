"""Tests for the LlamaRuntime facade."""

from __future__ import annotations

import httpx
import pytest

from llamarun.errors import NotStartedError
from llamarun.runtime.core import LlamaRuntime


def streaming_server(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200, content=b'data: {"content":"to"}\ndata: {"content":"ken"}\ndata: [DONE]\n'
    )


class TestLlamaRuntime:
    """Tests for wiring between the facade and its collaborators."""

    @pytest.mark.asyncio
    async def test_proxy_follows_supervisor_port(self) -> None:
        async with LlamaRuntime(transport=httpx.MockTransport(streaming_server)) as runtime:
            with pytest.raises(NotStartedError):
                await runtime.generate("p")

            with runtime.state.lock:
                runtime.state.port = 11435
            assert runtime.current_port() == 11435

            with runtime.subscribe_tokens("run-1") as queue:
                text = await runtime.generate("p", stream=True, run_id="run-1")
                tokens = [queue.get_nowait().content for _ in range(queue.qsize())]

            assert text == "token"
            assert tokens == ["to", "ken"]
            assert runtime.cancel("run-1") is False

        assert runtime.current_port() is None

    @pytest.mark.asyncio
    async def test_logs_snapshot(self) -> None:
        runtime = LlamaRuntime()
        runtime.log_buffer.push("hello")
        assert [line.content for line in runtime.logs()] == ["hello"]
        await runtime.aclose()
        await runtime.aclose()

    def test_settings_shared(self) -> None:
        runtime = LlamaRuntime()
        assert runtime.supervisor.settings is runtime.settings
        assert runtime.log_buffer.max_lines == runtime.settings.log_lines
        assert runtime.proxy.registry is runtime.registry
        assert runtime.proxy.broadcaster is runtime.broadcaster
