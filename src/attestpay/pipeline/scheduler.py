"""Round Scheduler — submit a prepared request and derive its voting round.

The network never returns the round id. It is computed client-side from the
including block's timestamp and the epoch layout read from the chain:

    round = (block_timestamp - first_voting_round_start_ts) // voting_epoch_duration_seconds

Submission costs a non-refundable fee, so it is never retried blindly:
- fee/epoch reads: transient, retried with a fixed backoff
- node refusal or revert: SubmissionRejectedError, no retry
- broadcast without receipt: reconciled against the chain first
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from attestpay.chain.attestation import AttestationNetwork, EpochParams, SubmissionReceipt
from attestpay.chain.signer import TransactionFailed, TransactionSigner
from attestpay.errors import AmbiguousBroadcastError, SubmissionRejectedError, TransientError
from attestpay.pipeline.request_builder import PreparedRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_round_id(block_timestamp: int, epoch: EpochParams) -> int:
    """Voting round containing `block_timestamp`."""
    if epoch.voting_epoch_duration_seconds <= 0:
        raise ValueError("voting epoch duration must be positive")
    offset = block_timestamp - epoch.first_voting_round_start_ts
    if offset < 0:
        raise ValueError(
            f"block timestamp {block_timestamp} precedes the first voting round "
            f"({epoch.first_voting_round_start_ts})"
        )
    return offset // epoch.voting_epoch_duration_seconds


@dataclass(frozen=True)
class ScheduledRound:
    """Submission landed; the request will be answered in `round_id`."""

    round_id: int
    submission: SubmissionReceipt
    epoch: EpochParams


class RoundScheduler:
    """Submits attestation requests and computes their voting round.

    Args:
        network: Attestation network contracts
        signer: Fee-paying signer (serialized)
        fee_retry_attempts: Attempts for each transient read
        fee_retry_backoff: Fixed pause between attempts (seconds)
        sleep: Injected sleep (tests)
    """

    def __init__(
        self,
        network: AttestationNetwork,
        signer: TransactionSigner,
        fee_retry_attempts: int = 3,
        fee_retry_backoff: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.network = network
        self.signer = signer
        self.fee_retry_attempts = fee_retry_attempts
        self.fee_retry_backoff = fee_retry_backoff
        self._sleep = sleep

    async def _retrying(self, what: str, read: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(1, self.fee_retry_attempts + 1):
            try:
                return await read()
            except TransientError as e:
                if attempt == self.fee_retry_attempts:
                    raise
                logger.warning(
                    "%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                    what, e, self.fee_retry_backoff, attempt, self.fee_retry_attempts,
                )
                await self._sleep(self.fee_retry_backoff)
        raise AssertionError("unreachable")

    async def resolve_fee(self, prepared: PreparedRequest) -> int:
        return await self._retrying(
            "Fee lookup", lambda: self.network.get_request_fee(prepared.abi_encoded_request)
        )

    async def schedule(self, prepared: PreparedRequest) -> ScheduledRound:
        """Pay for and submit `prepared`, then compute its voting round.

        Raises:
            SubmissionRejectedError: Refused before inclusion or reverted
            AmbiguousBroadcastError: Broadcast unconfirmed and not found on-chain
            TransientError: Reads still failing after retries
        """
        fee = await self.resolve_fee(prepared)
        from_block = await self._retrying("Block number", self.network.block_number)
        logger.info("Submitting request %s with fee %d wei", prepared.request.fingerprint[:12], fee)

        try:
            receipt = await self.network.request_attestation(self.signer, prepared.abi_encoded_request, fee)
        except TransactionFailed as e:
            raise SubmissionRejectedError(f"Attestation request rejected: {e.reason}") from e
        except AmbiguousBroadcastError as e:
            logger.warning("Submission %s unconfirmed, reconciling with chain", e.tx_hash)
            found = await self.reconcile(prepared, from_block=from_block, tx_hash=e.tx_hash)
            if found is None:
                raise AmbiguousBroadcastError(str(e), tx_hash=e.tx_hash, from_block=from_block) from e
            receipt = found

        return await self.round_for(receipt)

    async def reconcile(
        self,
        prepared: PreparedRequest,
        from_block: int,
        tx_hash: str | None = None,
    ) -> SubmissionReceipt | None:
        """Find an already-included submission of `prepared` by this signer."""
        found = await self._retrying(
            "Submission lookup",
            lambda: self.network.find_submission(
                prepared.abi_encoded_request,
                sender=self.signer.address,
                from_block=from_block,
                tx_hash=tx_hash,
            ),
        )
        if found is not None:
            logger.info("Submission found on-chain: %s (block %d)", found.tx_hash, found.block_number)
        return found

    async def round_for(self, receipt: SubmissionReceipt) -> ScheduledRound:
        epoch = await self._retrying("Epoch parameters", self.network.get_epoch_params)
        round_id = compute_round_id(receipt.block_timestamp, epoch)
        logger.info("Request included at %d -> voting round %d", receipt.block_timestamp, round_id)
        return ScheduledRound(round_id=round_id, submission=receipt, epoch=epoch)
