"""Completion proxy between callers and the llama-server child.

Routes each call to the child's HTTP API:
- chat: `/v1/chat/completions`, falling back to `/completion` with the prompts joined
- generate: `/completion`, optionally streamed as `data: {json}` lines

Calls tagged with a run id race the request against a cancel signal from the
CancelRegistry; whichever finishes first decides the outcome.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from llamarun.constants import (
    CHAT_COMPLETIONS_PATH,
    CHAT_FALLBACK_TOP_P,
    CHAT_MODEL_NAME,
    COMPLETION_PATH,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    LOOPBACK_HOST,
)
from llamarun.errors import (
    CompletionError,
    NotStartedError,
    RunCancelledError,
    StreamInterruptedError,
)
from llamarun.models import ChatOptions, GenerateOptions, StreamToken
from llamarun.runtime.cancel import CancelRegistry, CancelSignal
from llamarun.runtime.events import TokenBroadcaster
from llamarun.runtime.logging import RuntimeLogComponent, get_logger
from llamarun.runtime.sse import SseTokenDecoder

logger = get_logger(RuntimeLogComponent.PROXY)

TokenCallback = Callable[[StreamToken], None]


class CompletionProxy:
    """Sends generate/chat requests to the port the supervisor currently holds.

    Attributes:
        port_source: Returns the supervisor's current port, or None when not started
        registry: Cancellation registry shared with the runtime
        broadcaster: Token event channel; every streamed token is published here
        host: Host the child listens on
        request_timeout: Timeout for non-streaming requests
    """

    def __init__(
        self,
        port_source: Callable[[], int | None],
        registry: CancelRegistry,
        broadcaster: TokenBroadcaster | None = None,
        *,
        host: str = LOOPBACK_HOST,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.port_source: Callable[[], int | None] = port_source
        self.registry: CancelRegistry = registry
        self.broadcaster: TokenBroadcaster = broadcaster or TokenBroadcaster()
        self.host: str = host
        self.request_timeout: float = request_timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.request_timeout, connect=10.0),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
                transport=self._transport,
            )
        return self._http_client

    def _require_port(self) -> int:
        port = self.port_source()
        if port is None:
            raise NotStartedError()
        return port

    def url_for(self, port: int, path: str) -> str:
        return f"http://{self.host}:{port}{path}"

    # === Public operations ===

    async def generate(
        self,
        prompt: str,
        stream: bool = False,
        options: GenerateOptions | None = None,
        run_id: str | None = None,
        on_token: TokenCallback | None = None,
    ) -> str:
        """Run a raw completion for ``prompt``.

        Args:
            prompt: Prompt text, sent as-is
            stream: Stream tokens as they are produced
            options: Sampling options; out-of-domain values fall back to defaults
            run_id: Makes the call cancellable through cancel(run_id)
            on_token: Called with each streamed token, in order

        Returns:
            Generated text (trimmed unless streamed)

        Raises:
            NotStartedError: No port is held by the supervisor
            RunIdInUseError: ``run_id`` belongs to a call still in flight
            RunCancelledError: The run was cancelled
            CompletionError: The request failed
        """
        port = self._require_port()
        temperature, top_p, max_tokens = (options or GenerateOptions()).normalized()
        url = self.url_for(port, COMPLETION_PATH)
        body: dict[str, Any] = {
            "prompt": prompt,
            "n_predict": max_tokens,
            "temperature": temperature,
            "top_p": top_p,
            "stream": stream,
        }

        async def work() -> str:
            if stream:
                text = await self._stream_completion(url, body, run_id, on_token)
                if text is not None:
                    return text
                body["stream"] = False
            return (await self._completion(url, body)).strip()

        return await self._run_cancellable(work, run_id)

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        options: ChatOptions | None = None,
        run_id: str | None = None,
        stream: bool = False,
        on_token: TokenCallback | None = None,
    ) -> str:
        """Chat with a system and a user message.

        Tries `/v1/chat/completions` first and falls back to `/completion`
        with both prompts joined. Streaming goes straight to `/completion`
        and retries through the same fallback chain if the stream cannot be
        opened or breaks partway. Tokens emitted before a break are not
        retracted.

        Raises:
            NotStartedError: No port is held by the supervisor
            RunIdInUseError: ``run_id`` belongs to a call still in flight
            RunCancelledError: The run was cancelled
            CompletionError: Every endpoint failed; describes the `/completion` failure
        """
        port = self._require_port()
        temperature, max_tokens = (options or ChatOptions()).normalized()

        async def work() -> str:
            if stream:
                url = self.url_for(port, COMPLETION_PATH)
                body = self._joined_prompt_body(
                    system_prompt, user_prompt, temperature, max_tokens, stream=True
                )
                try:
                    text = await self._stream_completion(url, body, run_id, on_token)
                except StreamInterruptedError as e:
                    logger.warning(f"Chat stream broke, retrying without streaming: {e}")
                    text = None
                if text is not None:
                    return text.strip()
            return await self._chat_with_fallback(
                port, system_prompt, user_prompt, temperature, max_tokens
            )

        return await self._run_cancellable(work, run_id)

    def cancel(self, run_id: str) -> bool:
        """Cancel an in-flight run; unknown run ids are ignored."""
        cancelled = self.registry.cancel(run_id)
        if cancelled:
            logger.info(f"Cancelled run {run_id!r}")
        return cancelled

    # === Cancellation race ===

    async def _run_cancellable(
        self, work: Callable[[], Awaitable[str]], run_id: str | None
    ) -> str:
        if run_id is None:
            return await work()
        with self.registry.registered(run_id) as signal:
            return await self._race(work, signal, run_id)

    @staticmethod
    async def _race(
        work: Callable[[], Awaitable[str]], signal: CancelSignal, run_id: str
    ) -> str:
        request = asyncio.ensure_future(work())
        cancelled = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {request, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
            if request in done:
                return request.result()
            request.cancel()
            # Let the request close its connection before reporting.
            await asyncio.wait({request})
            raise RunCancelledError(run_id)
        finally:
            cancelled.cancel()
            if not request.done():
                request.cancel()

    # === Request helpers ===

    def _emit(self, token: StreamToken, on_token: TokenCallback | None) -> None:
        self.broadcaster.publish(token)
        if on_token is not None:
            on_token(token)

    async def _stream_completion(
        self,
        url: str,
        body: dict[str, Any],
        run_id: str | None,
        on_token: TokenCallback | None,
    ) -> str | None:
        """Stream `/completion` and return the accumulated text.

        Returns None when the stream could not be opened (transport error or
        non-success status), so the caller can retry without streaming.

        Raises:
            StreamInterruptedError: The stream broke after it was established
        """
        client = self._get_http_client()
        decoder = SseTokenDecoder()
        timeout = httpx.Timeout(self.request_timeout, connect=10.0, read=None)
        try:
            async with client.stream("POST", url, json=body, timeout=timeout) as response:
                if not response.is_success:
                    await response.aread()
                    logger.warning(
                        f"Stream setup failed with HTTP {response.status_code}, "
                        "retrying without streaming"
                    )
                    return None
                try:
                    async for chunk in response.aiter_bytes():
                        for content in decoder.feed(chunk):
                            self._emit(StreamToken(run_id=run_id, content=content), on_token)
                except httpx.HTTPError as e:
                    raise StreamInterruptedError(
                        f"Stream interrupted: {e}",
                        url=url,
                        status_code=response.status_code,
                        body=decoder.text,
                    ) from e
        except httpx.HTTPError as e:
            logger.warning(f"Stream setup failed ({e!r}), retrying without streaming")
            return None
        return decoder.text

    async def _post_json(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST ``body`` and decode a JSON object from a success response."""
        client = self._get_http_client()
        try:
            response = await client.post(url, json=body)
        except httpx.HTTPError as e:
            raise CompletionError(f"Request failed: {e}", url=url) from e

        if not response.is_success:
            raise CompletionError(
                f"llama-server error {response.status_code}: {response.text}",
                url=url,
                status_code=response.status_code,
                body=response.text,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise CompletionError(
                f"Invalid JSON from llama-server: {e}",
                url=url,
                status_code=response.status_code,
                body=response.text,
            ) from e
        if not isinstance(data, dict):
            raise CompletionError(
                "Unexpected response from llama-server",
                url=url,
                status_code=response.status_code,
                body=response.text,
            )
        return data

    async def _completion(self, url: str, body: dict[str, Any]) -> str:
        data = await self._post_json(url, body)
        content = data.get("content")
        if not isinstance(content, str):
            raise CompletionError(
                "Missing content in llama-server response",
                url=url,
                status_code=200,
                body=str(data),
            )
        return content

    async def _chat_completions(
        self,
        port: int,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        url = self.url_for(port, CHAT_COMPLETIONS_PATH)
        body = {
            "model": CHAT_MODEL_NAME,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": False,
        }
        data = await self._post_json(url, body)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not isinstance(content, str) or not content.strip():
            raise CompletionError(
                "Empty chat completion from llama-server",
                url=url,
                status_code=200,
                body=str(data),
            )
        return content

    @staticmethod
    def _joined_prompt_body(
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        *,
        stream: bool,
    ) -> dict[str, Any]:
        return {
            "prompt": f"{system_prompt.strip()}\n\n{user_prompt.strip()}",
            "n_predict": max_tokens,
            "temperature": temperature,
            "top_p": CHAT_FALLBACK_TOP_P,
            "stream": stream,
        }

    async def _chat_with_fallback(
        self,
        port: int,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        try:
            text = await self._chat_completions(
                port, system_prompt, user_prompt, temperature, max_tokens
            )
            return text.strip()
        except CompletionError as e:
            logger.info(f"Chat completions unavailable, falling back to {COMPLETION_PATH}: {e}")

        url = self.url_for(port, COMPLETION_PATH)
        body = self._joined_prompt_body(
            system_prompt, user_prompt, temperature, max_tokens, stream=False
        )
        return (await self._completion(url, body)).strip()

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None
