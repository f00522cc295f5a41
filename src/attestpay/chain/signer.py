"""Serialized transaction signer.

One signer per credential. Nonce assignment, broadcast and confirmation
happen under one asyncio.Lock, so two pipelines sharing a key can never
race each other into duplicate fees or nonce collisions.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from attestpay.errors import AmbiguousBroadcastError, AttestPayError

logger = logging.getLogger(__name__)


class TransactionFailed(AttestPayError):
    """Transaction refused by the node or reverted on-chain.

    Attributes:
        reason: Node error or revert reason, verbatim
        tx_hash: Set when the transaction was mined (status 0)
    """

    def __init__(self, reason: str, tx_hash: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.tx_hash = tx_hash


@dataclass(frozen=True)
class TxResult:
    """A mined, successful transaction."""

    tx_hash: str
    block_number: int
    receipt: Any


def _revert_reason(error: ContractLogicError) -> str:
    return error.message or str(error)


class TransactionSigner:
    """Signs and sends contract calls with a single private key.

    Args:
        w3: Connected AsyncWeb3 instance
        private_key: Hex private key
        confirmation_timeout: Seconds to wait for a receipt before the
            broadcast is declared ambiguous
    """

    def __init__(self, w3: AsyncWeb3, private_key: str, confirmation_timeout: float = 180.0) -> None:
        self.w3 = w3
        self._account = Account.from_key(private_key)
        self.confirmation_timeout = confirmation_timeout
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self._account.address

    async def send(self, call: Any, value: int = 0) -> TxResult:
        """Build, sign, broadcast and confirm a contract function call.

        Args:
            call: Bound contract function, e.g. contract.functions.claim(1, proof)
            value: Wei attached to the call

        Returns:
            TxResult of the mined transaction

        Raises:
            TransactionFailed: Refused before broadcast, or mined with status 0
            AmbiguousBroadcastError: Broadcast attempted but not confirmed
        """
        async with self._lock:
            try:
                nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
                tx = await call.build_transaction(
                    {"from": self.address, "value": value, "nonce": nonce}
                )
            except ContractLogicError as e:
                raise TransactionFailed(_revert_reason(e)) from e
            except (ValueError, Web3Exception) as e:
                raise TransactionFailed(str(e)) from e

            signed = self._account.sign_transaction(tx)
            tx_hash = AsyncWeb3.to_hex(signed.hash)

            try:
                await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except (ValueError, Web3Exception) as e:
                # The node answered with an error: nothing was broadcast
                raise TransactionFailed(str(e)) from e
            except (OSError, asyncio.TimeoutError) as e:
                raise AmbiguousBroadcastError(f"Broadcast of {tx_hash} interrupted: {e}", tx_hash=tx_hash) from e

            logger.info("Broadcast %s (nonce %d)", tx_hash, nonce)

            try:
                receipt = await self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self.confirmation_timeout
                )
            except TimeExhausted as e:
                raise AmbiguousBroadcastError(
                    f"No receipt for {tx_hash} after {self.confirmation_timeout:.0f}s",
                    tx_hash=tx_hash,
                ) from e

        if receipt["status"] != 1:
            reason = await self._replay_for_reason(call, value, receipt["blockNumber"])
            raise TransactionFailed(reason, tx_hash=tx_hash)

        return TxResult(tx_hash=tx_hash, block_number=receipt["blockNumber"], receipt=receipt)

    async def _replay_for_reason(self, call: Any, value: int, block_number: int) -> str:
        """Re-run a reverted call as eth_call at its block to recover the reason."""
        try:
            await call.call({"from": self.address, "value": value}, block_identifier=block_number)
        except ContractLogicError as e:
            return _revert_reason(e)
        except (ValueError, Web3Exception) as e:
            logger.warning("Could not replay reverted call: %s", e)
        return "transaction reverted"
