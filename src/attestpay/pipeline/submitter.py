"""Claim Submitter — the only step that moves funds.

Sends claim(streamId, proof). Price conversion and the bonus roll happen
inside the settlement contract; their results are read back from the
PaymentClaimed event.

A ClaimProof is single-use: after a failed submission it may be sent once
more, after a successful one never again.
"""

import logging

from attestpay.chain.settlement import ClaimOutcome, SettlementLedger
from attestpay.chain.signer import TransactionFailed, TransactionSigner
from attestpay.errors import ProofConsumedError, SettlementRevertError
from attestpay.pipeline.assembler import ClaimProof

logger = logging.getLogger(__name__)

MAX_SUBMISSIONS_PER_PROOF = 2


def _proof_key(proof: ClaimProof) -> tuple[str, int]:
    return (proof.request_fingerprint, proof.round_id)


class ClaimSubmitter:
    """Submits claims and enforces single use of each proof.

    Args:
        settlement: Settlement ledger
        signer: Worker's signer (serialized)
    """

    def __init__(self, settlement: SettlementLedger, signer: TransactionSigner) -> None:
        self.settlement = settlement
        self.signer = signer
        self._submissions: dict[tuple[str, int], int] = {}
        self._consumed: set[tuple[str, int]] = set()

    def can_submit(self, proof: ClaimProof) -> bool:
        key = _proof_key(proof)
        return key not in self._consumed and self._submissions.get(key, 0) < MAX_SUBMISSIONS_PER_PROOF

    async def submit(self, stream_id: int, proof: ClaimProof) -> ClaimOutcome:
        """Claim `stream_id` with `proof`.

        Raises:
            ProofConsumedError: Proof already claimed or out of retries
            SettlementRevertError: Claim reverted; reason verbatim
            AmbiguousBroadcastError: Claim broadcast but unconfirmed
        """
        key = _proof_key(proof)
        if key in self._consumed:
            raise ProofConsumedError(f"Proof for round {proof.round_id} was already used to claim")
        attempts = self._submissions.get(key, 0)
        if attempts >= MAX_SUBMISSIONS_PER_PROOF:
            raise ProofConsumedError(
                f"Proof for round {proof.round_id} already submitted {attempts} times"
            )
        self._submissions[key] = attempts + 1

        logger.info(
            "Claiming stream %d with %d units (round %d, attempt %d)",
            stream_id, proof.unit_count, proof.round_id, attempts + 1,
        )
        try:
            outcome = await self.settlement.claim(self.signer, stream_id, proof.as_contract_argument())
        except TransactionFailed as e:
            logger.error("Claim on stream %d reverted: %s", stream_id, e.reason)
            raise SettlementRevertError(e.reason, tx_hash=e.tx_hash) from e

        self._consumed.add(key)
        logger.info(
            "Claimed stream %d: %d wei (bonus=%s) in %s",
            stream_id, outcome.amount_primary, outcome.bonus_triggered, outcome.tx_hash,
        )
        return outcome
