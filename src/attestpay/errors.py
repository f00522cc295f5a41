"""Error taxonomy for the claim pipeline and the payout relay.

Transient errors are retried in place by the step that raised them.
Everything else is fatal for the current pipeline run: the controller
moves to ERROR and records the step plus the artifacts obtained so far.
"""


class AttestPayError(Exception):
    """Base exception for attestpay."""


class TransientError(AttestPayError):
    """Temporary unavailability (RPC hiccup, service down). Safe to retry."""


class RequestPreparationError(AttestPayError):
    """The verifier refused to encode the attestation request."""

    def __init__(self, message: str, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status


class SubmissionRejectedError(AttestPayError):
    """Attestation submission rejected before inclusion. Never retried."""


class AmbiguousBroadcastError(AttestPayError):
    """A transaction was broadcast but its inclusion could not be confirmed.

    The fee may already be spent; callers must reconcile with the chain
    before submitting again. `from_block` is the head before the broadcast,
    the lower bound of that search.
    """

    def __init__(self, message: str, tx_hash: str | None = None, from_block: int | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash
        self.from_block = from_block


class PollTimeoutError(AttestPayError):
    """A polling loop exceeded its caller-supplied maximum wait."""

    def __init__(self, message: str, elapsed: float) -> None:
        super().__init__(message)
        self.elapsed = elapsed


class ProofDecodeError(AttestPayError):
    """Proof payload does not match the expected response schema.

    The raw payload is kept for offline diagnosis.
    """

    def __init__(self, message: str, raw_hex: str) -> None:
        super().__init__(message)
        self.raw_hex = raw_hex


class SettlementRevertError(AttestPayError):
    """The claim transaction reverted; no funds moved."""

    def __init__(self, reason: str, tx_hash: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.tx_hash = tx_hash


class ProofConsumedError(AttestPayError):
    """A claim proof was already used successfully or exhausted its retry."""


class ClaimWindowError(AttestPayError):
    """The stream cannot be claimed right now (inactive, early, wrong worker)."""


class PipelineBusyError(AttestPayError):
    """A pipeline run is already in flight for this stream."""


class InvalidTransitionError(AttestPayError):
    """Attempted a pipeline state transition the state machine forbids."""
