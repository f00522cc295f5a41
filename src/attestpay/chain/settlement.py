"""Settlement ledger (payroll escrow contract).

attestpay never computes balances, prices or bonuses: it reads streams,
submits claims and observes the PaymentClaimed events the contract emits.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from web3 import AsyncWeb3, Web3, WebSocketProvider

from attestpay.chain import abi
from attestpay.chain.attestation import rpc_read, scan_logs
from attestpay.chain.signer import TransactionSigner
from attestpay.config import DEFAULT_LOG_SCAN_MAX_BLOCKS

logger = logging.getLogger(__name__)

PAYMENT_CLAIMED_SIGNATURE = "PaymentClaimed(uint256,address,uint256,uint256,uint256,bool,uint256)"
PAYMENT_CLAIMED_TOPIC = Web3.to_hex(Web3.keccak(text=PAYMENT_CLAIMED_SIGNATURE))


@dataclass(frozen=True)
class Stream:
    """Payment stream as stored by the settlement contract (read-only here)."""

    stream_id: int
    employer: str
    worker: str
    rate_per_interval: int
    interval: int
    total_deposit: int
    total_claimed: int
    last_claim_time: int
    created_at: int
    active: bool

    @property
    def next_claim_time(self) -> int:
        return self.last_claim_time + self.interval

    @property
    def has_prior_claim(self) -> bool:
        """True once a claim moved last_claim_time past the creation time."""
        if self.created_at:
            return self.last_claim_time > self.created_at
        return self.total_claimed > 0


@dataclass(frozen=True)
class ClaimOutcome:
    """PaymentClaimed event of a confirmed claim transaction."""

    tx_hash: str
    stream_id: int
    worker: str
    amount_primary: int
    amount_reference: int
    price: int
    bonus_triggered: bool
    unit_count: int

    def to_dict(self) -> dict:
        return {
            "tx_hash": self.tx_hash,
            "stream_id": self.stream_id,
            "worker": self.worker,
            "amount_primary": str(self.amount_primary),
            "amount_reference": str(self.amount_reference),
            "price": str(self.price),
            "bonus_triggered": self.bonus_triggered,
            "unit_count": self.unit_count,
        }


@dataclass(frozen=True)
class ClaimEvent:
    """A PaymentClaimed log as observed on the source ledger."""

    stream_id: int
    worker: str
    amount_primary: int
    amount_reference: int
    price: int
    bonus_triggered: bool
    unit_count: int
    tx_hash: str
    block_number: int
    log_index: int
    timestamp: int | None = None

    @property
    def position(self) -> tuple[int, int]:
        """Total order of events on the ledger."""
        return (self.block_number, self.log_index)


def _claim_event(log: Any) -> ClaimEvent:
    args = log["args"]
    return ClaimEvent(
        stream_id=int(args["streamId"]),
        worker=args["worker"],
        amount_primary=int(args["amountFLR"]),
        amount_reference=int(args["amountUSD"]),
        price=int(args["flrUsdPrice"]),
        bonus_triggered=bool(args["bonusTriggered"]),
        unit_count=int(args["commitCount"]),
        tx_hash=Web3.to_hex(log["transactionHash"]),
        block_number=int(log["blockNumber"]),
        log_index=int(log["logIndex"]),
    )


class SettlementLedger:
    """Access to the settlement contract on the source ledger.

    Args:
        w3: Connected AsyncWeb3 instance (HTTP)
        address: Settlement contract address
        start_block: Deployment block; lower bound when numbering claims
        ws_url: Websocket endpoint for the PaymentClaimed push subscription
        log_scan_max_blocks: Block window of one eth_getLogs request
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        address: str,
        start_block: int = 0,
        ws_url: str | None = None,
        log_scan_max_blocks: int = DEFAULT_LOG_SCAN_MAX_BLOCKS,
    ) -> None:
        self.w3 = w3
        self.address = AsyncWeb3.to_checksum_address(address)
        self.start_block = start_block
        self.ws_url = ws_url
        self.log_scan_max_blocks = log_scan_max_blocks
        self.contract = w3.eth.contract(address=self.address, abi=abi.SETTLEMENT_ABI)

    async def get_stream(self, stream_id: int) -> Stream:
        raw = await rpc_read(f"getStream({stream_id})", self.contract.functions.getStream(stream_id).call())
        (employer, worker, rate, interval, deposit, claimed, last_claim, created_at, active) = raw
        return Stream(
            stream_id=stream_id,
            employer=employer,
            worker=worker,
            rate_per_interval=int(rate),
            interval=int(interval),
            total_deposit=int(deposit),
            total_claimed=int(claimed),
            last_claim_time=int(last_claim),
            created_at=int(created_at),
            active=bool(active),
        )

    def claim_call(self, stream_id: int, proof_argument: tuple) -> Any:
        return self.contract.functions.claim(stream_id, proof_argument)

    async def claim(self, signer: TransactionSigner, stream_id: int, proof_argument: tuple) -> ClaimOutcome:
        """Send claim(streamId, proof) and decode its PaymentClaimed event."""
        result = await signer.send(self.claim_call(stream_id, proof_argument))
        logs = self.contract.events.PaymentClaimed().process_receipt(result.receipt)
        if not logs:
            raise ValueError(f"Claim {result.tx_hash} confirmed without a PaymentClaimed event")
        event = _claim_event(logs[0])
        return ClaimOutcome(
            tx_hash=result.tx_hash,
            stream_id=event.stream_id,
            worker=event.worker,
            amount_primary=event.amount_primary,
            amount_reference=event.amount_reference,
            price=event.price,
            bonus_triggered=event.bonus_triggered,
            unit_count=event.unit_count,
        )

    async def head_block(self) -> int:
        return await rpc_read("block number", self.w3.eth.block_number)

    async def block_timestamp(self, block_number: int) -> int:
        block = await rpc_read(f"block {block_number}", self.w3.eth.get_block(block_number))
        return int(block["timestamp"])

    async def get_claim_events(
        self,
        from_block: int,
        to_block: int | None = None,
        stream_id: int | None = None,
    ) -> list[ClaimEvent]:
        """PaymentClaimed logs in a block range (to head by default), in ledger order."""
        if to_block is None:
            to_block = await self.head_block()
        filters = {"streamId": stream_id} if stream_id is not None else None
        logs = await scan_logs(
            "PaymentClaimed log scan",
            self.contract.events.PaymentClaimed(),
            from_block=from_block,
            to_block=to_block,
            max_blocks=self.log_scan_max_blocks,
            argument_filters=filters,
        )
        return sorted((_claim_event(log) for log in logs), key=lambda e: e.position)

    async def claim_sequence(self, event: ClaimEvent) -> int:
        """1-based ordinal of `event` among its stream's claims."""
        history = await self.get_claim_events(
            from_block=self.start_block, to_block=event.block_number, stream_id=event.stream_id
        )
        return sum(1 for e in history if e.position <= event.position)

    async def subscribe(self, ready: asyncio.Event | None = None) -> AsyncIterator[ClaimEvent]:
        """Push subscription to new PaymentClaimed logs over websocket.

        `ready` is set once the node has acknowledged eth_subscribe; logs
        mined from then on are delivered by this iterator.
        """
        if not self.ws_url:
            raise ValueError("A websocket URL is required for the PaymentClaimed subscription")
        async with AsyncWeb3(WebSocketProvider(self.ws_url)) as ws:
            event = ws.eth.contract(address=self.address, abi=abi.SETTLEMENT_ABI).events.PaymentClaimed()
            subscription_id = await ws.eth.subscribe(
                "logs", {"address": self.address, "topics": [PAYMENT_CLAIMED_TOPIC]}
            )
            logger.info("Subscribed to PaymentClaimed on %s (%s)", self.address, subscription_id)
            if ready is not None:
                ready.set()
            async for payload in ws.socket.process_subscriptions():
                yield _claim_event(event.process_log(payload["result"]))
