"""Data-availability layer client.

Once a voting round is final, the DA layer serves each attested response
together with its Merkle inclusion path.

API: POST /api/v1/fdc/proof-by-request-round-raw

Usage:
    async with DALayerClient(base_url=settings.da_layer_endpoint) as client:
        payload = await client.get_proof(round_id=1024, request_bytes="0x...")
        if payload.get("response_hex"):
            ...
"""

from typing import Any

from attestpay.clients.base import BaseAsyncClient


class DALayerClient(BaseAsyncClient):
    """Async client for the FDC data-availability layer.

    Args:
        base_url: DA layer root URL
        api_key: Optional X-API-KEY (public endpoints accept none)
        rate_limit: Max requests per second (default: 5)
    """

    def __init__(self, base_url: str, api_key: str | None = None, rate_limit: int = 5) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-KEY"] = api_key
        super().__init__(base_url=base_url, headers=headers, rate_limit=rate_limit)

    async def get_proof(self, round_id: int, request_bytes: str) -> dict[str, Any]:
        """Query the proof for one request in one voting round.

        Args:
            round_id: Finalized voting round
            request_bytes: abiEncodedRequest (0x-hex) exactly as submitted

        Returns:
            {proof: [bytes32 hex...], response_hex: str} when materialized.
            Before that the service answers without response_hex.
        """
        return await self.post(
            "/api/v1/fdc/proof-by-request-round-raw",
            json_data={"votingRoundId": round_id, "requestBytes": request_bytes},
        )
