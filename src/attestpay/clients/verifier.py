"""Attestation verifier client (request preparation).

The verifier checks a Web2Json request and returns its ABI encoding, the
opaque byte form the attestation hub accepts on-chain.

API: POST /verifier/web2/Web2Json/prepareRequest

Usage:
    from attestpay.clients.verifier import VerifierClient

    async with VerifierClient(base_url=settings.verifier_endpoint) as client:
        result = await client.prepare_request(payload)
        encoded = result["abiEncodedRequest"]
"""

from typing import Any

from attestpay.clients.base import BaseAsyncClient
from attestpay.config import DEFAULT_VERIFIER_API_KEY


class VerifierClient(BaseAsyncClient):
    """Async client for the Web2Json verifier.

    Args:
        base_url: Verifier root URL (network preset or override)
        api_key: Value of the X-API-KEY header
        rate_limit: Max requests per second (default: 5)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = DEFAULT_VERIFIER_API_KEY,
        rate_limit: int = 5,
    ) -> None:
        super().__init__(
            base_url=base_url,
            headers={"X-API-KEY": api_key, "Content-Type": "application/json"},
            rate_limit=rate_limit,
        )

    async def prepare_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Ask the verifier to encode an attestation request.

        Args:
            payload: {attestationType, sourceId, requestBody} as built by
                AttestationRequest.to_verifier_payload()

        Returns:
            Verifier response. Has: status ("VALID" on success),
            abiEncodedRequest (0x-hex)
        """
        return await self.post("/verifier/web2/Web2Json/prepareRequest", json_data=payload)
