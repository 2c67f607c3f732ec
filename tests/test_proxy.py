"""Tests for the completion proxy."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

import httpx
import pytest

from llamarun.errors import (
    CompletionError,
    NotStartedError,
    RunCancelledError,
    RunIdInUseError,
    StreamInterruptedError,
)
from llamarun.models import ChatOptions, GenerateOptions, StreamToken
from llamarun.runtime.cancel import CancelRegistry
from llamarun.runtime.events import TokenBroadcaster
from llamarun.runtime.proxy import CompletionProxy

PORT = 11435
CHAT_URL = f"http://127.0.0.1:{PORT}/v1/chat/completions"
COMPLETION_URL = f"http://127.0.0.1:{PORT}/completion"


def sse(*payloads: str) -> bytes:
    return "".join(f"data: {p}\n" for p in payloads).encode()


def make_proxy(handler, port: int | None = PORT) -> tuple[CompletionProxy, list[httpx.Request]]:
    """Proxy whose HTTP traffic goes to ``handler``; returns (proxy, recorded requests)."""
    requests: list[httpx.Request] = []

    async def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        response = handler(request)
        if asyncio.iscoroutine(response):
            response = await response
        return response

    proxy = CompletionProxy(
        lambda: port,
        CancelRegistry(),
        TokenBroadcaster(),
        transport=httpx.MockTransport(recording),
    )
    return proxy, requests


def body_of(request: httpx.Request) -> dict:
    return json.loads(request.content)


class TestProxyClient:
    """Tests for client lifecycle and preconditions."""

    @pytest.mark.asyncio
    async def test_http_client_lifecycle(self) -> None:
        proxy, _ = make_proxy(lambda r: httpx.Response(200))
        client1 = proxy._get_http_client()
        assert client1 is proxy._get_http_client()
        await client1.aclose()
        assert client1 is not proxy._get_http_client()
        await proxy.aclose()

    @pytest.mark.asyncio
    async def test_not_started(self) -> None:
        proxy, requests = make_proxy(lambda r: httpx.Response(200), port=None)
        with pytest.raises(NotStartedError):
            await proxy.generate("hi")
        with pytest.raises(NotStartedError):
            await proxy.chat("sys", "user", run_id="r1")
        assert requests == []
        assert "r1" not in proxy.registry


class TestGenerate:
    """Tests for raw /completion requests."""

    @pytest.mark.asyncio
    async def test_non_streaming(self) -> None:
        proxy, requests = make_proxy(
            lambda r: httpx.Response(200, json={"content": "  Paris.\n"})
        )
        text = await proxy.generate("Capital of France?")
        assert text == "Paris."
        assert str(requests[0].url) == COMPLETION_URL
        assert body_of(requests[0]) == {
            "prompt": "Capital of France?",
            "n_predict": 2048,
            "temperature": 0.7,
            "top_p": 0.9,
            "stream": False,
        }

    @pytest.mark.asyncio
    async def test_options_normalized(self) -> None:
        proxy, requests = make_proxy(lambda r: httpx.Response(200, json={"content": "x"}))
        await proxy.generate(
            "p", options=GenerateOptions(temperature=5.0, top_p=0.0, max_tokens=-1)
        )
        await proxy.generate(
            "p", options=GenerateOptions(temperature=0.2, top_p=0.5, max_tokens=64)
        )
        first, second = body_of(requests[0]), body_of(requests[1])
        assert (first["temperature"], first["top_p"], first["n_predict"]) == (0.7, 0.9, 2048)
        assert (second["temperature"], second["top_p"], second["n_predict"]) == (0.2, 0.5, 64)

    @pytest.mark.asyncio
    async def test_error_status(self) -> None:
        proxy, _ = make_proxy(lambda r: httpx.Response(503, text="loading model"))
        with pytest.raises(CompletionError) as exc_info:
            await proxy.generate("p")
        assert exc_info.value.status_code == 503
        assert exc_info.value.url == COMPLETION_URL
        assert "loading model" in str(exc_info.value)
        assert f"Endpoint: {COMPLETION_URL} HTTP 503" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        proxy, _ = make_proxy(handler)
        with pytest.raises(CompletionError) as exc_info:
            await proxy.generate("p")
        assert exc_info.value.status_code is None
        assert "(no response)" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_streaming_emits_tokens(self) -> None:
        async def chunks() -> AsyncIterator[bytes]:
            yield b'data: {"content":"He'
            yield b'"}\ndata: {"content":"llo"}\r\n'
            yield b': keep-alive\ndata: not json\n'
            yield b'data: {"content":" world","stop":true}\ndata: [DONE]\n'

        proxy, requests = make_proxy(lambda r: httpx.Response(200, content=chunks()))
        received: list[StreamToken] = []

        with proxy.broadcaster.subscribe("run-1") as queue:
            text = await proxy.generate(
                "Say hello", stream=True, run_id="run-1", on_token=received.append
            )
            published = [queue.get_nowait() for _ in range(queue.qsize())]

        assert text == "Hello world"
        assert [t.content for t in received] == ["He", "llo", " world"]
        assert published == received
        assert all(t.run_id == "run-1" for t in received)
        assert body_of(requests[0])["stream"] is True
        assert "run-1" not in proxy.registry

    @pytest.mark.asyncio
    async def test_stream_setup_failure_falls_back_to_plain_completion(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if body_of(request)["stream"]:
                return httpx.Response(500, text="streaming unsupported")
            return httpx.Response(200, json={"content": " plain "})

        proxy, requests = make_proxy(handler)
        text = await proxy.generate("p", stream=True)

        assert text == "plain"
        assert [body_of(r)["stream"] for r in requests] == [True, False]

    @pytest.mark.asyncio
    async def test_stream_interrupted(self) -> None:
        async def chunks() -> AsyncIterator[bytes]:
            yield sse('{"content":"partial"}')
            raise httpx.ReadError("connection reset")

        proxy, _ = make_proxy(lambda r: httpx.Response(200, content=chunks()))
        received: list[StreamToken] = []
        with pytest.raises(StreamInterruptedError) as exc_info:
            await proxy.generate("p", stream=True, on_token=received.append)
        assert [t.content for t in received] == ["partial"]
        assert exc_info.value.body == "partial"


class TestChat:
    """Tests for the chat fallback chain."""

    @pytest.mark.asyncio
    async def test_chat_completions(self) -> None:
        proxy, requests = make_proxy(
            lambda r: httpx.Response(
                200, json={"choices": [{"message": {"content": " Hi there \n"}}]}
            )
        )
        text = await proxy.chat("You are terse.", "Hello", ChatOptions(temperature=3.0))

        assert text == "Hi there"
        assert len(requests) == 1
        assert str(requests[0].url) == CHAT_URL
        assert body_of(requests[0]) == {
            "model": "llama",
            "messages": [
                {"role": "system", "content": "You are terse."},
                {"role": "user", "content": "Hello"},
            ],
            "max_tokens": 512,
            "temperature": 0.5,
            "stream": False,
        }

    @pytest.mark.asyncio
    async def test_falls_back_on_500(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/chat/completions":
                return httpx.Response(500, text="boom")
            return httpx.Response(200, json={"content": " fallback answer "})

        proxy, requests = make_proxy(handler)
        text = await proxy.chat(" system ", " user ", ChatOptions(temperature=0.0, max_tokens=32))

        assert text == "fallback answer"
        assert [r.url.path for r in requests] == ["/v1/chat/completions", "/completion"]
        assert body_of(requests[1]) == {
            "prompt": "system\n\nuser",
            "n_predict": 32,
            "temperature": 0.0,
            "top_p": 0.9,
            "stream": False,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "chat_response",
        [
            httpx.Response(200, json={"choices": []}),
            httpx.Response(200, json={"choices": [{"message": {"content": "   "}}]}),
            httpx.Response(200, text="not json"),
        ],
    )
    async def test_falls_back_on_unusable_body(self, chat_response: httpx.Response) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/chat/completions":
                return chat_response
            return httpx.Response(200, json={"content": "ok"})

        proxy, _ = make_proxy(handler)
        assert await proxy.chat("s", "u") == "ok"

    @pytest.mark.asyncio
    async def test_falls_back_on_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/chat/completions":
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"content": "ok"})

        proxy, _ = make_proxy(handler)
        assert await proxy.chat("s", "u") == "ok"

    @pytest.mark.asyncio
    async def test_both_fail_reports_completion_endpoint(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/chat/completions":
                return httpx.Response(500, text="chat broke")
            return httpx.Response(503, text="completion broke")

        proxy, _ = make_proxy(handler)
        with pytest.raises(CompletionError) as exc_info:
            await proxy.chat("s", "u")

        error = exc_info.value
        assert error.url == COMPLETION_URL
        assert error.status_code == 503
        assert error.body == "completion broke"
        assert "chat broke" not in str(error)

    @pytest.mark.asyncio
    async def test_streaming_chat(self) -> None:
        async def chunks() -> AsyncIterator[bytes]:
            yield sse('{"content":" Hel"}', '{"content":"lo "}', "[DONE]")

        proxy, requests = make_proxy(lambda r: httpx.Response(200, content=chunks()))
        received: list[StreamToken] = []
        text = await proxy.chat("s", "u", stream=True, on_token=received.append)

        assert text == "Hello"
        assert [t.content for t in received] == [" Hel", "lo "]
        assert requests[0].url.path == "/completion"
        assert body_of(requests[0])["prompt"] == "s\n\nu"

    @pytest.mark.asyncio
    async def test_streaming_chat_setup_failure_uses_fallback_chain(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/completion":
                return httpx.Response(404)
            return httpx.Response(200, json={"choices": [{"message": {"content": "chat"}}]})

        proxy, requests = make_proxy(handler)
        assert await proxy.chat("s", "u", stream=True) == "chat"
        assert [r.url.path for r in requests] == ["/completion", "/v1/chat/completions"]

    @pytest.mark.asyncio
    async def test_streaming_chat_interrupted_uses_fallback_chain(self) -> None:
        async def chunks() -> AsyncIterator[bytes]:
            yield sse('{"content":"par"}')
            raise httpx.ReadError("connection reset")

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/completion":
                return httpx.Response(200, content=chunks())
            return httpx.Response(
                200, json={"choices": [{"message": {"content": " full answer "}}]}
            )

        proxy, requests = make_proxy(handler)
        received: list[StreamToken] = []
        text = await proxy.chat("sys", "user", stream=True, on_token=received.append)

        assert text == "full answer"
        assert [t.content for t in received] == ["par"]
        assert [r.url.path for r in requests] == ["/completion", "/v1/chat/completions"]


class TestCancellation:
    """Tests for run-id registration and the cancellation race."""

    @pytest.mark.asyncio
    async def test_cancel_in_flight_stream(self) -> None:
        first_token = asyncio.Event()
        never = asyncio.Event()

        async def chunks() -> AsyncIterator[bytes]:
            yield sse('{"content":"He"}')
            await never.wait()
            yield sse('{"content":"llo"}')

        proxy, _ = make_proxy(lambda r: httpx.Response(200, content=chunks()))
        task = asyncio.create_task(
            proxy.generate(
                "p", stream=True, run_id="run-1", on_token=lambda t: first_token.set()
            )
        )
        await asyncio.wait_for(first_token.wait(), timeout=2.0)
        assert "run-1" in proxy.registry

        assert proxy.cancel("run-1") is True
        with pytest.raises(RunCancelledError) as exc_info:
            await asyncio.wait_for(task, timeout=2.0)

        assert exc_info.value.run_id == "run-1"
        assert str(exc_info.value) == "Run 'run-1' cancelled."
        assert "run-1" not in proxy.registry
        assert proxy.cancel("run-1") is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_run_is_noop(self) -> None:
        proxy, _ = make_proxy(lambda r: httpx.Response(200))
        assert proxy.cancel("never-started") is False

    @pytest.mark.asyncio
    async def test_registry_entry_removed_on_error(self) -> None:
        proxy, _ = make_proxy(lambda r: httpx.Response(500, text="nope"))
        with pytest.raises(CompletionError):
            await proxy.generate("p", run_id="run-err")
        assert "run-err" not in proxy.registry
        assert len(proxy.registry) == 0

    @pytest.mark.asyncio
    async def test_duplicate_run_id_rejected(self) -> None:
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200, json={"content": "done"})

        proxy, requests = make_proxy(handler)
        first = asyncio.create_task(proxy.generate("p", run_id="dup"))
        while not requests:
            await asyncio.sleep(0.01)

        with pytest.raises(RunIdInUseError):
            await proxy.generate("p", run_id="dup")
        assert len(requests) == 1
        assert "dup" in proxy.registry

        release.set()
        assert await first == "done"
        assert "dup" not in proxy.registry

    @pytest.mark.asyncio
    async def test_concurrent_runs_cancel_independently(self) -> None:
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200, json={"content": body_of(request)["prompt"]})

        proxy, requests = make_proxy(handler)
        a = asyncio.create_task(proxy.generate("a", run_id="a"))
        b = asyncio.create_task(proxy.generate("b", run_id="b"))
        while len(requests) < 2:
            await asyncio.sleep(0.01)

        proxy.cancel("a")
        with pytest.raises(RunCancelledError):
            await a

        release.set()
        assert await b == "b"
        assert len(proxy.registry) == 0
