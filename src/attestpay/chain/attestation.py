"""Attestation network contracts (Flare Data Connector).

Every contract address is resolved at runtime through the Flare contract
registry, so the same code runs against Coston2 and Flare mainnet.

Contracts used:
- FdcRequestFeeConfigurations: fee for a given encoded request
- FdcHub: accepts paid attestation requests
- FlareSystemsManager: voting epoch anchor and duration
- FdcVerification: protocol id of the data connector
- Relay: finality of (protocol id, voting round)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Iterator

from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

from attestpay.chain import abi
from attestpay.chain.signer import TransactionSigner
from attestpay.config import DEFAULT_LOG_SCAN_MAX_BLOCKS, FLARE_CONTRACT_REGISTRY_ADDRESS
from attestpay.errors import TransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EpochParams:
    """Voting epoch layout of the network."""

    first_voting_round_start_ts: int
    voting_epoch_duration_seconds: int


@dataclass(frozen=True)
class SubmissionReceipt:
    """An attestation request included on-chain."""

    tx_hash: str
    block_number: int
    block_timestamp: int
    fee: int | None = None


async def rpc_read(what: str, call: Awaitable[Any]) -> Any:
    """Await a chain read, mapping connectivity failures to TransientError."""
    try:
        return await call
    except (ContractLogicError, TransactionNotFound):
        raise
    except (OSError, asyncio.TimeoutError, Web3Exception) as e:
        raise TransientError(f"{what} failed: {e}") from e


def block_windows(from_block: int, to_block: int, max_blocks: int) -> Iterator[tuple[int, int]]:
    """Split [from_block, to_block] into inclusive ranges of at most max_blocks."""
    if max_blocks < 1:
        raise ValueError("max_blocks must be positive")
    for start in range(from_block, to_block + 1, max_blocks):
        yield start, min(start + max_blocks - 1, to_block)


async def scan_logs(
    what: str,
    event: Any,
    from_block: int,
    to_block: int,
    max_blocks: int = DEFAULT_LOG_SCAN_MAX_BLOCKS,
    argument_filters: dict[str, Any] | None = None,
) -> list[Any]:
    """get_logs over a block range, one request per window.

    Public RPC nodes cap the range of a single eth_getLogs call, so long
    ranges are walked window by window and the results concatenated in
    block order.
    """
    logs: list[Any] = []
    for start, end in block_windows(from_block, to_block, max_blocks):
        logs.extend(
            await rpc_read(
                f"{what} [{start}-{end}]",
                event.get_logs(argument_filters=argument_filters, from_block=start, to_block=end),
            )
        )
    return logs


class AttestationNetwork:
    """Read and submit access to the attestation network's contracts.

    Args:
        w3: Connected AsyncWeb3 instance for the source ledger
        registry_address: Flare contract registry address
        log_scan_max_blocks: Block window of one eth_getLogs request
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        registry_address: str = FLARE_CONTRACT_REGISTRY_ADDRESS,
        log_scan_max_blocks: int = DEFAULT_LOG_SCAN_MAX_BLOCKS,
    ) -> None:
        self.w3 = w3
        self.log_scan_max_blocks = log_scan_max_blocks
        self._registry = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(registry_address), abi=abi.REGISTRY_ABI
        )
        self._addresses: dict[str, str] = {}

    async def contract_address(self, name: str) -> str:
        """Resolve (and cache) a contract address by registry name."""
        if name not in self._addresses:
            address = await rpc_read(
                f"registry lookup of {name}",
                self._registry.functions.getContractAddressByName(name).call(),
            )
            self._addresses[name] = address
            logger.debug("Resolved %s -> %s", name, address)
        return self._addresses[name]

    async def _contract(self, name: str, contract_abi: list[dict]) -> Any:
        return self.w3.eth.contract(address=await self.contract_address(name), abi=contract_abi)

    async def get_request_fee(self, request_bytes: bytes) -> int:
        fee_config = await self._contract("FdcRequestFeeConfigurations", abi.FEE_CONFIG_ABI)
        return await rpc_read("fee lookup", fee_config.functions.getRequestFee(request_bytes).call())

    async def block_number(self) -> int:
        return await rpc_read("block number", self.w3.eth.block_number)

    async def block_timestamp(self, block_number: int) -> int:
        block = await rpc_read(f"block {block_number}", self.w3.eth.get_block(block_number))
        return int(block["timestamp"])

    async def request_attestation(
        self,
        signer: TransactionSigner,
        request_bytes: bytes,
        fee: int,
    ) -> SubmissionReceipt:
        """Pay the fee and submit an encoded request to FdcHub."""
        fdc_hub = await self._contract("FdcHub", abi.FDC_HUB_ABI)
        result = await signer.send(fdc_hub.functions.requestAttestation(request_bytes), value=fee)
        return SubmissionReceipt(
            tx_hash=result.tx_hash,
            block_number=result.block_number,
            block_timestamp=await self.block_timestamp(result.block_number),
            fee=fee,
        )

    async def find_submission(
        self,
        request_bytes: bytes,
        sender: str,
        from_block: int,
        tx_hash: str | None = None,
    ) -> SubmissionReceipt | None:
        """Look for an already-included submission of these request bytes.

        Checks the known transaction first, then scans FdcHub's
        AttestationRequest logs from `from_block` for the same bytes sent
        by `sender`.
        """
        if tx_hash:
            try:
                receipt = await rpc_read("receipt lookup", self.w3.eth.get_transaction_receipt(tx_hash))
            except TransactionNotFound:
                receipt = None
            if receipt is not None and receipt["status"] == 1:
                return SubmissionReceipt(
                    tx_hash=tx_hash,
                    block_number=receipt["blockNumber"],
                    block_timestamp=await self.block_timestamp(receipt["blockNumber"]),
                )

        fdc_hub = await self._contract("FdcHub", abi.FDC_HUB_ABI)
        logs = await scan_logs(
            "AttestationRequest log scan",
            fdc_hub.events.AttestationRequest(),
            from_block=from_block,
            to_block=await self.block_number(),
            max_blocks=self.log_scan_max_blocks,
        )
        for log in logs:
            if bytes(log["args"]["data"]) != request_bytes:
                continue
            tx = await rpc_read("transaction lookup", self.w3.eth.get_transaction(log["transactionHash"]))
            if tx["from"].lower() != sender.lower():
                continue
            return SubmissionReceipt(
                tx_hash=AsyncWeb3.to_hex(log["transactionHash"]),
                block_number=log["blockNumber"],
                block_timestamp=await self.block_timestamp(log["blockNumber"]),
                fee=log["args"]["fee"],
            )
        return None

    async def get_epoch_params(self) -> EpochParams:
        manager = await self._contract("FlareSystemsManager", abi.SYSTEMS_MANAGER_ABI)
        start = await rpc_read("firstVotingRoundStartTs", manager.functions.firstVotingRoundStartTs().call())
        duration = await rpc_read(
            "votingEpochDurationSeconds", manager.functions.votingEpochDurationSeconds().call()
        )
        return EpochParams(first_voting_round_start_ts=int(start), voting_epoch_duration_seconds=int(duration))

    async def get_protocol_id(self) -> int:
        verification = await self._contract("FdcVerification", abi.FDC_VERIFICATION_ABI)
        return int(await rpc_read("fdcProtocolId", verification.functions.fdcProtocolId().call()))

    async def is_finalized(self, protocol_id: int, round_id: int) -> bool:
        relay = await self._contract("Relay", abi.RELAY_ABI)
        return bool(await rpc_read("isFinalized", relay.functions.isFinalized(protocol_id, round_id).call()))
