"""Tests for the Web2Json verifier client."""

import json

import httpx
import pytest

from attestpay.clients.base import APIProviderError
from attestpay.clients.verifier import VerifierClient
from attestpay.config import DEFAULT_VERIFIER_API_KEY

BASE = "https://fdc-verifiers-testnet.flare.network"
PREPARE_URL = f"{BASE}/verifier/web2/Web2Json/prepareRequest"


class TestVerifierClient:
    """Tests for VerifierClient."""

    @pytest.mark.asyncio
    async def test_prepare_request(self, respx_mock):
        """Posts the payload and returns the verifier's answer."""
        route = respx_mock.post(PREPARE_URL).mock(
            return_value=httpx.Response(200, json={"status": "VALID", "abiEncodedRequest": "0xabcd"})
        )
        payload = {
            "attestationType": "0x" + "00" * 32,
            "sourceId": "0x" + "11" * 32,
            "requestBody": {"url": "https://api.github.com/repos/o/r/commits"},
        }

        async with VerifierClient(base_url=BASE) as client:
            result = await client.prepare_request(payload)

        assert result["status"] == "VALID"
        assert result["abiEncodedRequest"] == "0xabcd"
        assert json.loads(route.calls.last.request.content) == payload

    @pytest.mark.asyncio
    async def test_sends_api_key_header(self, respx_mock):
        route = respx_mock.post(PREPARE_URL).mock(return_value=httpx.Response(200, json={"status": "VALID"}))

        async with VerifierClient(base_url=BASE) as client:
            await client.prepare_request({})

        assert route.calls.last.request.headers["X-API-KEY"] == DEFAULT_VERIFIER_API_KEY

    @pytest.mark.asyncio
    async def test_custom_api_key(self, respx_mock):
        route = respx_mock.post(PREPARE_URL).mock(return_value=httpx.Response(200, json={"status": "VALID"}))

        async with VerifierClient(base_url=BASE, api_key="my-key") as client:
            await client.prepare_request({})

        assert route.calls.last.request.headers["X-API-KEY"] == "my-key"

    @pytest.mark.asyncio
    async def test_rejected_request_raises(self, respx_mock):
        respx_mock.post(PREPARE_URL).mock(return_value=httpx.Response(400, text="invalid url"))

        async with VerifierClient(base_url=BASE) as client:
            with pytest.raises(APIProviderError) as exc_info:
                await client.prepare_request({})

        assert exc_info.value.is_client_error
