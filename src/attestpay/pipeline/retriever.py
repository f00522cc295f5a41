"""Proof Retriever — fetch the attested response and its Merkle path.

A final round does not mean the DA layer has materialized the proof yet,
so this is its own wait: a settle delay, then polling until the service
returns response_hex.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from attestpay.clients.base import APIProviderError
from attestpay.clients.da_layer import DALayerClient
from attestpay.errors import TransientError
from attestpay.pipeline.poller import StatusCallback, poll_until
from attestpay.pipeline.request_builder import PreparedRequest

logger = logging.getLogger(__name__)

# Answers meaning "round known, proof not built yet"
_NOT_READY_STATUS_CODES = {400, 404}


@dataclass(frozen=True)
class RawProof:
    """DA layer payload for one (round, request) pair."""

    proof: tuple[str, ...]
    response_hex: str

    @property
    def depth(self) -> int:
        return len(self.proof)


class ProofRetriever:
    """Polls the DA layer for a request's proof.

    Args:
        da_layer: Open DALayerClient
        interval: Seconds between polls
        initial_delay: Pause before the first query
        max_wait: Optional bound in seconds (None = wait until cancelled)
        sleep / clock: Injected for tests
    """

    def __init__(
        self,
        da_layer: DALayerClient,
        interval: float = 10.0,
        initial_delay: float = 10.0,
        max_wait: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.da_layer = da_layer
        self.interval = interval
        self.initial_delay = initial_delay
        self.max_wait = max_wait
        self._sleep = sleep
        self._clock = clock

    async def fetch(self, prepared: PreparedRequest, round_id: int) -> RawProof | None:
        """One query. None while the proof is not available."""
        try:
            payload = await self.da_layer.get_proof(round_id, prepared.request_hex)
        except APIProviderError as e:
            if e.status_code in _NOT_READY_STATUS_CODES:
                return None
            raise TransientError(f"DA layer unavailable: {e}") from e

        response_hex = payload.get("response_hex") if isinstance(payload, dict) else None
        if not response_hex:
            return None
        return RawProof(proof=tuple(payload.get("proof") or ()), response_hex=response_hex)

    async def retrieve(
        self,
        prepared: PreparedRequest,
        round_id: int,
        on_status: StatusCallback | None = None,
    ) -> RawProof:
        """Wait for and return the proof of `prepared` in `round_id`."""
        if self.initial_delay:
            await self._sleep(self.initial_delay)

        raw = await poll_until(
            lambda: self.fetch(prepared, round_id),
            what=f"Proof for round {round_id}",
            interval=self.interval,
            max_wait=self.max_wait,
            on_status=on_status,
            sleep=self._sleep,
            clock=self._clock,
        )
        logger.info("Proof for round %d retrieved (depth %d)", round_id, raw.depth)
        return raw
