"""Tests for the health prober."""

from __future__ import annotations

import httpx
import pytest

from llamarun.runtime.health import HealthProber


def make_prober(handler) -> tuple[HealthProber, list[str]]:
    seen: list[str] = []

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return handler(request)

    return HealthProber(transport=httpx.MockTransport(recording)), seen


class TestProbe:
    """Tests for endpoint ordering and short-circuiting."""

    @pytest.mark.asyncio
    async def test_first_200_wins(self) -> None:
        prober, seen = make_prober(
            lambda r: httpx.Response(200 if r.url.path == "/health" else 404)
        )
        result = await prober.probe(11435)

        assert result.healthy is True
        assert result.endpoint == "http://127.0.0.1:11435/health"
        assert seen == ["/v1/models", "/health"]
        await prober.aclose()

    @pytest.mark.asyncio
    async def test_models_endpoint_short_circuits(self) -> None:
        prober, seen = make_prober(lambda r: httpx.Response(200, json={"data": []}))
        result = await prober.probe(8080)

        assert result.endpoint == "http://127.0.0.1:8080/v1/models"
        assert seen == ["/v1/models"]

    @pytest.mark.asyncio
    async def test_all_endpoints_fail(self) -> None:
        prober, seen = make_prober(lambda r: httpx.Response(503, text="loading"))
        result = await prober.probe(11435)

        assert result.healthy is False
        assert result.endpoint is None
        assert seen == ["/v1/models", "/health", "/healthz"]

    @pytest.mark.asyncio
    async def test_transport_errors_mean_not_ready(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        prober, seen = make_prober(handler)
        assert await prober.is_healthy(11435) is False
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_timeout_then_healthz(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/healthz":
                return httpx.Response(200)
            raise httpx.ReadTimeout("slow", request=request)

        prober, _ = make_prober(handler)
        prober.debug = True
        result = await prober.probe(11435)
        assert result.endpoint == "http://127.0.0.1:11435/healthz"


class TestFindRunningPort:
    @pytest.mark.asyncio
    async def test_first_healthy_candidate(self) -> None:
        prober, _ = make_prober(
            lambda r: httpx.Response(200 if r.url.port in (8081, 8090) else 404)
        )
        assert await prober.find_running_port([11435, 8081, 8090]) == 8081

    @pytest.mark.asyncio
    async def test_none_running(self) -> None:
        prober, _ = make_prober(lambda r: httpx.Response(404))
        assert await prober.find_running_port([11435, 11436]) is None
