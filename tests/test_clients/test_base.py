"""Tests for base async client."""

import asyncio
import json

import httpx
import pytest

from attestpay.clients.base import APIProviderError, BaseAsyncClient, RateLimiter

BASE = "https://service.example.org"


@pytest.fixture
def no_backoff(monkeypatch):
    """Retry immediately instead of sleeping 1s, 2s, 4s."""
    monkeypatch.setattr("attestpay.clients.base._backoff", lambda attempt: 0)


class TestRateLimiter:
    """Tests for token bucket rate limiter."""

    def test_init_without_event_loop(self):
        """RateLimiter can be created in synchronous context."""
        limiter = RateLimiter(rate=10)
        assert limiter.rate == 10
        assert limiter.tokens == 10
        assert limiter._initialized is False

    @pytest.mark.asyncio
    async def test_allows_burst_under_limit(self):
        limiter = RateLimiter(rate=10)
        for _ in range(5):
            await limiter.acquire()
        assert limiter.tokens == pytest.approx(5, abs=0.5)

    @pytest.mark.asyncio
    async def test_blocks_when_over_limit(self):
        """Third request at 2 req/s waits for a refill."""
        limiter = RateLimiter(rate=2)
        loop = asyncio.get_running_loop()

        start = loop.time()
        await limiter.acquire()
        await limiter.acquire()
        burst = loop.time() - start

        start = loop.time()
        await limiter.acquire()
        waited = loop.time() - start

        assert burst < 0.1
        assert waited > 0.3


class TestBaseAsyncClient:
    """Tests for base async HTTP client."""

    @pytest.mark.asyncio
    async def test_context_manager_lifecycle(self, respx_mock):
        """Client opens on enter and closes on exit."""
        respx_mock.get(f"{BASE}/health").mock(return_value=httpx.Response(200, json={"status": "ok"}))

        async with BaseAsyncClient(base_url=BASE, headers={"X-API-KEY": "k"}) as client:
            assert client._client is not None
            assert await client.get("/health") == {"status": "ok"}

        assert client._client is None

    @pytest.mark.asyncio
    async def test_raises_if_used_without_context_manager(self):
        client = BaseAsyncClient(base_url=BASE)
        with pytest.raises(RuntimeError, match="not initialized"):
            await client.get("/health")

    @pytest.mark.asyncio
    async def test_request_adds_leading_slash(self, respx_mock):
        respx_mock.get(f"{BASE}/health").mock(return_value=httpx.Response(200, json={"v": 1}))

        async with BaseAsyncClient(base_url=f"{BASE}/") as client:
            assert await client.get("/health") == {"v": 1}
            assert await client.get("health") == {"v": 1}

    @pytest.mark.asyncio
    async def test_sends_default_headers(self, respx_mock):
        route = respx_mock.post(f"{BASE}/submit").mock(return_value=httpx.Response(200, json={}))

        async with BaseAsyncClient(base_url=BASE, headers={"X-API-KEY": "secret"}) as client:
            await client.post("/submit", json_data={"a": 1})

        assert route.calls.last.request.headers["X-API-KEY"] == "secret"

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self, respx_mock):
        route = respx_mock.post(f"{BASE}/submit").mock(
            return_value=httpx.Response(200, json={"created": True})
        )

        async with BaseAsyncClient(base_url=BASE) as client:
            result = await client.post("/submit", json_data={"name": "test"})

        assert result == {"created": True}
        assert json.loads(route.calls.last.request.content) == {"name": "test"}

    @pytest.mark.asyncio
    async def test_handles_http_errors(self, respx_mock):
        """HTTP errors surface as APIProviderError with status and body."""
        respx_mock.get(f"{BASE}/missing").mock(return_value=httpx.Response(404, text="Not Found"))

        async with BaseAsyncClient(base_url=BASE) as client:
            with pytest.raises(APIProviderError) as exc_info:
                await client.get("/missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.is_client_error
        assert "Not Found" in exc_info.value.response_body

    @pytest.mark.asyncio
    async def test_handles_invalid_json(self, respx_mock):
        respx_mock.get(f"{BASE}/garbled").mock(return_value=httpx.Response(200, text="not json"))

        async with BaseAsyncClient(base_url=BASE) as client:
            with pytest.raises(APIProviderError, match="Invalid JSON"):
                await client.get("/garbled")


class TestRetryBehavior:
    """Test retry with exponential backoff in _request()."""

    @pytest.mark.asyncio
    async def test_retries_on_429(self, respx_mock, no_backoff):
        route = respx_mock.get(f"{BASE}/busy")
        route.side_effect = [
            httpx.Response(429, text="Too Many Requests"),
            httpx.Response(429, text="Too Many Requests"),
            httpx.Response(200, json={"ok": True}),
        ]

        async with BaseAsyncClient(base_url=BASE) as client:
            assert await client.get("/busy") == {"ok": True}
        assert route.call_count == 3

    @pytest.mark.asyncio
    async def test_retries_on_503(self, respx_mock, no_backoff):
        route = respx_mock.post(f"{BASE}/down")
        route.side_effect = [
            httpx.Response(503, text="Service Unavailable"),
            httpx.Response(200, json={"recovered": True}),
        ]

        async with BaseAsyncClient(base_url=BASE) as client:
            assert await client.post("/down", json_data={}) == {"recovered": True}
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_no_retry_on_400(self, respx_mock, no_backoff):
        """Client errors mean the request itself is wrong: no retry."""
        route = respx_mock.post(f"{BASE}/bad").mock(return_value=httpx.Response(400, text="bad request"))

        async with BaseAsyncClient(base_url=BASE) as client:
            with pytest.raises(APIProviderError) as exc_info:
                await client.post("/bad", json_data={})

        assert exc_info.value.status_code == 400
        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_exhausts_retries(self, respx_mock, no_backoff):
        route = respx_mock.get(f"{BASE}/always-down").mock(return_value=httpx.Response(503, text="Down"))

        async with BaseAsyncClient(base_url=BASE) as client:
            with pytest.raises(APIProviderError) as exc_info:
                await client.get("/always-down")

        assert exc_info.value.status_code == 503
        # 1 initial + 3 retries
        assert route.call_count == 4

    @pytest.mark.asyncio
    async def test_retries_on_timeout(self, respx_mock, no_backoff):
        route = respx_mock.get(f"{BASE}/slow")
        route.side_effect = [
            httpx.ReadTimeout("Connection timed out"),
            httpx.Response(200, json={"slow_but_ok": True}),
        ]

        async with BaseAsyncClient(base_url=BASE) as client:
            assert await client.get("/slow") == {"slow_but_ok": True}

    @pytest.mark.asyncio
    async def test_network_error_after_retries(self, respx_mock, no_backoff):
        route = respx_mock.get(f"{BASE}/unreachable").mock(side_effect=httpx.ConnectError("refused"))

        async with BaseAsyncClient(base_url=BASE) as client:
            with pytest.raises(APIProviderError, match="Network error") as exc_info:
                await client.get("/unreachable")

        assert exc_info.value.status_code is None
        assert route.call_count == 4
