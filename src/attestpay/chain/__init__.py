"""On-chain collaborators for attestpay.

Thin web3.py wrappers around:
- The attestation network (fee, submission, epochs, finality)
- The settlement ledger (streams, claims, PaymentClaimed events)
- The destination payout ledger (restricted idempotent receipts)
"""

from attestpay.chain.attestation import AttestationNetwork, EpochParams, SubmissionReceipt
from attestpay.chain.payout import PayoutLedger, RecordResult
from attestpay.chain.settlement import ClaimEvent, ClaimOutcome, SettlementLedger, Stream
from attestpay.chain.signer import TransactionFailed, TransactionSigner, TxResult

__all__ = [
    "AttestationNetwork",
    "EpochParams",
    "SubmissionReceipt",
    "PayoutLedger",
    "RecordResult",
    "ClaimEvent",
    "ClaimOutcome",
    "SettlementLedger",
    "Stream",
    "TransactionFailed",
    "TransactionSigner",
    "TxResult",
]
