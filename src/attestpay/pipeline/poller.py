"""Finalization Poller — wait until a voting round is final.

Polls Relay.isFinalized(protocolId, round) at a fixed interval. Every poll
reports a PollStatus (attempt, elapsed seconds, ready) so the caller can
show progress or decide to give up. There is no timeout unless the caller
passes max_wait; the wait is cancellable like any asyncio task.

The same loop (poll_until) drives the proof retriever.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from attestpay.chain.attestation import AttestationNetwork
from attestpay.errors import PollTimeoutError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollStatus:
    """Progress of a polling wait."""

    attempt: int
    elapsed: float
    ready: bool


StatusCallback = Callable[[PollStatus], None]


async def poll_until(
    check: Callable[[], Awaitable[T | None]],
    *,
    what: str,
    interval: float,
    max_wait: float | None = None,
    on_status: StatusCallback | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call `check` every `interval` seconds until it returns a value.

    A TransientError from `check` counts as "not ready yet".

    Raises:
        PollTimeoutError: The next poll would start after `max_wait`
    """
    if interval <= 0:
        raise ValueError("poll interval must be positive")

    start = clock()
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await check()
        except TransientError as e:
            logger.warning("%s: poll %d failed (%s), will retry", what, attempt, e)
            result = None

        elapsed = clock() - start
        if on_status is not None:
            on_status(PollStatus(attempt=attempt, elapsed=elapsed, ready=result is not None))
        if result is not None:
            return result

        if max_wait is not None and elapsed + interval > max_wait:
            raise PollTimeoutError(f"{what}: gave up after {elapsed:.0f}s ({attempt} polls)", elapsed=elapsed)

        logger.debug("%s: not ready after %.0fs, next poll in %.0fs", what, elapsed, interval)
        await sleep(interval)


class FinalizationPoller:
    """Waits for a voting round to be finalized.

    Args:
        network: Attestation network contracts
        interval: Seconds between polls
        max_wait: Optional bound in seconds (None = wait until cancelled)
        sleep / clock: Injected for tests
    """

    def __init__(
        self,
        network: AttestationNetwork,
        interval: float = 30.0,
        max_wait: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.network = network
        self.interval = interval
        self.max_wait = max_wait
        self._sleep = sleep
        self._clock = clock
        self._protocol_id: int | None = None

    async def _check(self, round_id: int) -> bool | None:
        if self._protocol_id is None:
            self._protocol_id = await self.network.get_protocol_id()
        finalized = await self.network.is_finalized(self._protocol_id, round_id)
        return True if finalized else None

    async def wait(self, round_id: int, on_status: StatusCallback | None = None) -> PollStatus:
        """Return once `round_id` is final; the last status is returned."""
        last: list[PollStatus] = []

        def _record(status: PollStatus) -> None:
            last[:] = [status]
            if on_status is not None:
                on_status(status)

        await poll_until(
            lambda: self._check(round_id),
            what=f"Round {round_id} finalization",
            interval=self.interval,
            max_wait=self.max_wait,
            on_status=_record,
            sleep=self._sleep,
            clock=self._clock,
        )
        logger.info("Round %d finalized after %.0fs", round_id, last[0].elapsed)
        return last[0]
