"""Relay Forwarder — mirror PaymentClaimed events into payout receipts.

One long-lived subscription to the settlement ledger; each confirmed claim
is dispatched as its own write task to the destination ledger.

Delivery is at-least-once. The forwarder keeps no record of what it has
sent: every receipt is keyed by

    source_event_id = keccak256(abi.encode(stream_id, claim_sequence))

and the destination ignores keys it already holds. On start the forwarder
replays a look-back window of history, so a restart (or a failed write)
is repaired by simply running again.

Usage:
    forwarder = RelayForwarder(settlement, payout_ledger, lookback_blocks=10_000)
    await forwarder.run()
"""

import asyncio
import logging
from dataclasses import dataclass

from eth_abi import encode
from web3 import Web3

from attestpay.chain.payout import PayoutLedger, RecordResult
from attestpay.chain.settlement import ClaimEvent, SettlementLedger

logger = logging.getLogger(__name__)


def source_event_id(stream_id: int, claim_sequence: int) -> bytes:
    """Idempotency key of a claim: its stream and per-stream ordinal."""
    if claim_sequence < 1:
        raise ValueError("claim sequence starts at 1")
    return bytes(Web3.keccak(encode(["uint256", "uint256"], [stream_id, claim_sequence])))


@dataclass(frozen=True)
class PayoutReceipt:
    """Destination-ledger record of one source claim."""

    source_event_id: bytes
    worker: str
    stream_id: int
    amount_primary: int
    amount_reference: int
    bonus_triggered: bool
    unit_count: int
    timestamp: int

    @classmethod
    def from_event(cls, event: ClaimEvent, claim_sequence: int, timestamp: int) -> "PayoutReceipt":
        return cls(
            source_event_id=source_event_id(event.stream_id, claim_sequence),
            worker=event.worker,
            stream_id=event.stream_id,
            amount_primary=event.amount_primary,
            amount_reference=event.amount_reference,
            bonus_triggered=event.bonus_triggered,
            unit_count=event.unit_count,
            timestamp=timestamp,
        )


@dataclass
class RelayStats:
    seen: int = 0
    recorded: int = 0
    duplicates: int = 0
    failed: int = 0


class RelayForwarder:
    """Forwards settlement claim events to the payout ledger.

    Args:
        source: Settlement ledger (events, claim numbering, subscription)
        destination: Payout ledger holding the restricted write credential
        lookback_blocks: History replayed on start
        concurrency: Maximum simultaneous destination writes
    """

    def __init__(
        self,
        source: SettlementLedger,
        destination: PayoutLedger,
        lookback_blocks: int = 10_000,
        concurrency: int = 4,
    ) -> None:
        self.source = source
        self.destination = destination
        self.lookback_blocks = lookback_blocks
        self.stats = RelayStats()
        self._write_slots = asyncio.Semaphore(concurrency)
        self._pending: set[asyncio.Task] = set()

    async def forward(self, event: ClaimEvent) -> RecordResult | None:
        """Write the receipt of one event. None when the write failed."""
        self.stats.seen += 1
        try:
            sequence = await self.source.claim_sequence(event)
            timestamp = event.timestamp or await self.source.block_timestamp(event.block_number)
            receipt = PayoutReceipt.from_event(event, sequence, timestamp)
            async with self._write_slots:
                result = await self.destination.record_payout(receipt)
        except Exception as e:
            # Left for the next replay to repair
            self.stats.failed += 1
            logger.warning(
                "Relay of stream %d claim in %s failed: %s", event.stream_id, event.tx_hash, e,
            )
            return None

        if result is RecordResult.DUPLICATE:
            self.stats.duplicates += 1
            logger.debug("Stream %d claim #%d already recorded", event.stream_id, sequence)
        else:
            self.stats.recorded += 1
            logger.info(
                "Relayed stream %d claim #%d: worker=%s amount=%d units=%d bonus=%s",
                event.stream_id, sequence, event.worker, event.amount_primary,
                event.unit_count, event.bonus_triggered,
            )
        return result

    def dispatch(self, event: ClaimEvent) -> asyncio.Task:
        """Forward `event` in its own task."""
        task = asyncio.create_task(self.forward(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every dispatched write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def replay(self) -> int:
        """Forward every claim in the look-back window. Returns events found."""
        head = await self.source.head_block()
        from_block = max(self.source.start_block, head - self.lookback_blocks)
        events = await self.source.get_claim_events(from_block=from_block, to_block=head)
        logger.info("Replaying %d PaymentClaimed events from blocks %d-%d", len(events), from_block, head)
        for event in events:
            self.dispatch(event)
        await self.drain()
        return len(events)

    async def _consume(self, ready: asyncio.Event) -> None:
        async for event in self.source.subscribe(ready=ready):
            logger.debug("PaymentClaimed pushed: stream %d in %s", event.stream_id, event.tx_hash)
            self.dispatch(event)

    async def run(self) -> None:
        """Subscribe, replay the look-back window, then relay until cancelled.

        The replay starts only once the subscription is live, so an event
        lands in at least one of the two feeds. Overlap is harmless because
        writes are idempotent.
        """
        ready = asyncio.Event()
        consumer = asyncio.create_task(self._consume(ready))
        live = asyncio.create_task(ready.wait())
        try:
            await asyncio.wait({consumer, live}, return_when=asyncio.FIRST_COMPLETED)
            if consumer.done():
                # Subscription failed (or ended) before going live
                consumer.result()
            await self.replay()
            logger.info(
                "Replay done: %d recorded, %d duplicates, %d failed",
                self.stats.recorded, self.stats.duplicates, self.stats.failed,
            )
            await consumer
        finally:
            live.cancel()
            consumer.cancel()
            await self.drain()
