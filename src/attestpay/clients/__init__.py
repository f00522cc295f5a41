"""Off-chain service clients for attestpay.

Async HTTP clients for the attestation network's services:
- Verifier: encodes Web2Json attestation requests
- DA layer: serves attested responses with Merkle proofs
"""

from attestpay.clients.base import BaseAsyncClient, RateLimiter, APIProviderError
from attestpay.clients.verifier import VerifierClient
from attestpay.clients.da_layer import DALayerClient

__all__ = [
    "BaseAsyncClient",
    "RateLimiter",
    "APIProviderError",
    "VerifierClient",
    "DALayerClient",
]
