"""Incremental decoder for llama-server's `data: {json}` token stream."""

from __future__ import annotations

import json

from llamarun.constants import SSE_DATA_PREFIX, SSE_DONE_SENTINEL


class SseTokenDecoder:
    """Turn arbitrary byte chunks into content tokens.

    Bytes are buffered until a newline (``\\n`` or ``\\r\\n``) completes a
    line, so chunk boundaries never split a token. Lines without the
    ``data: `` prefix, ``[DONE]``, empty payloads and malformed JSON are
    skipped.
    """

    def __init__(self) -> None:
        self._buffer: bytearray = bytearray()
        self._parts: list[str] = []
        self.stopped: bool = False

    @property
    def text(self) -> str:
        """Everything decoded so far."""
        return "".join(self._parts)

    @property
    def pending(self) -> bytes:
        """Bytes of the trailing, not yet terminated line."""
        return bytes(self._buffer)

    def feed(self, chunk: bytes) -> list[str]:
        """Consume a chunk and return the tokens completed by it, in order."""
        self._buffer.extend(chunk)
        tokens: list[str] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            token = self._decode_line(raw)
            if token is not None:
                self._parts.append(token)
                tokens.append(token)
        return tokens

    def _decode_line(self, raw: bytes) -> str | None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line.startswith(SSE_DATA_PREFIX):
            return None
        payload = line[len(SSE_DATA_PREFIX) :].strip()
        if not payload or payload == SSE_DONE_SENTINEL:
            return None
        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            return None
        if not isinstance(chunk, dict):
            return None
        if chunk.get("stop") is True:
            self.stopped = True
        content = chunk.get("content")
        if isinstance(content, str):
            return content
        return None
