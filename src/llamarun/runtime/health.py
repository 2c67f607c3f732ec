"""Readiness probing for llama-server."""

from __future__ import annotations

from collections.abc import Iterable

import httpx

from llamarun.constants import (
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    HEALTH_ENDPOINTS,
    LOOPBACK_HOST,
)
from llamarun.models import HealthProbeResult
from llamarun.runtime.logging import RuntimeLogComponent, get_logger

logger = get_logger(RuntimeLogComponent.HEALTH)


class HealthProber:
    """Issue short-timeout GET probes against the well-known readiness endpoints.

    A down server and an unreachable one both read as "not ready yet".

    Attributes:
        host: Host the child binds to
        timeout: Per-request timeout, independent of any readiness budget
        endpoints: Paths probed in priority order
        debug: Log every probe outcome with a body preview
    """

    def __init__(
        self,
        *,
        host: str = LOOPBACK_HOST,
        timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        endpoints: tuple[str, ...] = HEALTH_ENDPOINTS,
        transport: httpx.AsyncBaseTransport | None = None,
        debug: bool = False,
    ) -> None:
        self.host: str = host
        self.timeout: float = timeout
        self.endpoints: tuple[str, ...] = endpoints
        self.debug: bool = debug
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._http_client

    def url_for(self, port: int, path: str) -> str:
        return f"http://{self.host}:{port}{path}"

    async def probe(self, port: int) -> HealthProbeResult:
        """Probe each endpoint in order and stop at the first HTTP 200.

        Args:
            port: Port the server should be listening on

        Returns:
            HealthProbeResult naming the endpoint that answered, if any
        """
        client = self._get_http_client()
        for path in self.endpoints:
            url = self.url_for(port, path)
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                if self.debug:
                    logger.info(f"probe url={url} error={e!r}")
                continue
            if self.debug:
                preview = response.text[:120]
                logger.info(
                    f"probe url={url} status={response.status_code} body={preview!r}"
                )
            if response.status_code == 200:
                return HealthProbeResult(healthy=True, endpoint=url)
        return HealthProbeResult(healthy=False)

    async def is_healthy(self, port: int) -> bool:
        return (await self.probe(port)).healthy

    async def find_running_port(self, candidates: Iterable[int]) -> int | None:
        """Return the first candidate port that already hosts a healthy server.

        Used to attach to a server started by a previous session instead of
        spawning a duplicate on the same model.
        """
        for port in candidates:
            result = await self.probe(port)
            if result.healthy:
                logger.info(f"Found running llama-server at {result.endpoint}")
                return port
        return None

    async def aclose(self) -> None:
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None
