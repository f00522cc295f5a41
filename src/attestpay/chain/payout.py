"""Destination payout ledger (receipt store written by the relay).

Writes go through recordPayout, which only the relay's credential may call.
The contract keys receipts by sourceEventId and rejects repeats, so the
relay can deliver at-least-once without remembering anything itself.
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING

from web3 import AsyncWeb3

from attestpay.chain import abi
from attestpay.chain.attestation import rpc_read
from attestpay.chain.signer import TransactionFailed, TransactionSigner

if TYPE_CHECKING:
    from attestpay.relay.forwarder import PayoutReceipt

logger = logging.getLogger(__name__)

# Revert reason of recordPayout for a sourceEventId it already holds
DUPLICATE_REVERT_REASON = "already recorded"


class RecordResult(Enum):
    """Outcome of one relay write."""

    RECORDED = "recorded"
    DUPLICATE = "duplicate"


class PayoutLedger:
    """Restricted writer for payout receipts.

    Args:
        w3: Connected AsyncWeb3 instance for the destination ledger
        address: Payout contract address
        signer: Signer holding the relay credential
    """

    def __init__(self, w3: AsyncWeb3, address: str, signer: TransactionSigner) -> None:
        self.contract = w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi.PAYOUT_ABI)
        self.signer = signer

    async def is_recorded(self, source_event_id: bytes) -> bool:
        return bool(await rpc_read("isRecorded", self.contract.functions.isRecorded(source_event_id).call()))

    async def record_payout(self, receipt: "PayoutReceipt") -> RecordResult:
        """Write one PayoutReceipt; a duplicate is reported, never re-recorded."""
        if await self.is_recorded(receipt.source_event_id):
            return RecordResult.DUPLICATE
        call = self.contract.functions.recordPayout(
            receipt.source_event_id,
            AsyncWeb3.to_checksum_address(receipt.worker),
            receipt.stream_id,
            receipt.amount_primary,
            receipt.amount_reference,
            receipt.bonus_triggered,
            receipt.unit_count,
        )
        try:
            result = await self.signer.send(call)
        except TransactionFailed as e:
            if DUPLICATE_REVERT_REASON in e.reason.lower():
                return RecordResult.DUPLICATE
            raise
        logger.debug("recordPayout mined in %s", result.tx_hash)
        return RecordResult.RECORDED
