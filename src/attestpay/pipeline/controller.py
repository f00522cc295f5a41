"""Pipeline Controller — one observable claim run per (worker, stream).

State machine:

    IDLE → PREPARING → SUBMITTING → FINALIZING → RETRIEVING → CLAIMING → DONE
                 \\___________\\____________\\___________\\___________\\→ ERROR

ERROR is reachable from every non-terminal state; DONE and ERROR go back to
IDLE only through reset(). Each transition emits a ProgressEvent carrying a
human-readable message and the artifacts obtained so far (request
fingerprint, transaction hashes, round id, proof depth, unit count).

Runs checkpoint their artifacts after each step. A later run for the same
stream and the same request picks them up instead of paying for a second
submission; this is also how a failed claim is retried with the same proof.
A broadcast whose inclusion was never confirmed is looked up on-chain before
any new submission, and the claim attempts of a proof are counted across
runs.

Usage:
    registry = PipelineRegistry(services)
    controller = registry.controller_for(worker, stream_id, on_progress=print)
    result = await controller.run(GitHubRepoSource("owner/repo"))
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from attestpay.chain.attestation import SubmissionReceipt
from attestpay.chain.settlement import ClaimOutcome, SettlementLedger, Stream
from attestpay.errors import (
    AmbiguousBroadcastError,
    ClaimWindowError,
    InvalidTransitionError,
    PipelineBusyError,
    ProofConsumedError,
)
from attestpay.pipeline.assembler import ClaimProof, ProofAssembler
from attestpay.pipeline.checkpoint import CheckpointStore, RunCheckpoint, stream_key
from attestpay.pipeline.poller import FinalizationPoller, PollStatus
from attestpay.pipeline.request_builder import (
    PreparedRequest,
    RequestBuilder,
    WorkSource,
    build_request,
    since_cursor,
)
from attestpay.pipeline.retriever import ProofRetriever, RawProof
from attestpay.pipeline.scheduler import RoundScheduler, ScheduledRound
from attestpay.pipeline.submitter import MAX_SUBMISSIONS_PER_PROOF, ClaimSubmitter

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """States of a claim run."""

    IDLE = "idle"
    PREPARING = "preparing"
    SUBMITTING = "submitting"
    FINALIZING = "finalizing"
    RETRIEVING = "retrieving"
    CLAIMING = "claiming"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.ERROR)


_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.PREPARING}),
    PipelineState.PREPARING: frozenset({PipelineState.SUBMITTING, PipelineState.ERROR}),
    PipelineState.SUBMITTING: frozenset({PipelineState.FINALIZING, PipelineState.ERROR}),
    PipelineState.FINALIZING: frozenset({PipelineState.RETRIEVING, PipelineState.ERROR}),
    PipelineState.RETRIEVING: frozenset({PipelineState.CLAIMING, PipelineState.ERROR}),
    PipelineState.CLAIMING: frozenset({PipelineState.DONE, PipelineState.ERROR}),
    PipelineState.DONE: frozenset({PipelineState.IDLE}),
    PipelineState.ERROR: frozenset({PipelineState.IDLE}),
}


@dataclass(frozen=True)
class ProgressEvent:
    """One progress report of a run."""

    state: PipelineState
    message: str
    artifacts: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineFailure:
    """Where and why a run failed, with what it had obtained by then."""

    state: PipelineState
    error: BaseException
    artifacts: dict[str, Any]

    @property
    def kind(self) -> str:
        return type(self.error).__name__

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass(frozen=True)
class RunResult:
    """Successful run: the claim and the proof it consumed."""

    outcome: ClaimOutcome
    proof: ClaimProof
    artifacts: dict[str, Any]


@dataclass
class PipelineServices:
    """Collaborators shared by every controller of one signer."""

    builder: RequestBuilder
    scheduler: RoundScheduler
    poller: FinalizationPoller
    retriever: ProofRetriever
    assembler: ProofAssembler
    submitter: ClaimSubmitter
    settlement: SettlementLedger
    checkpoints: CheckpointStore | None = None
    clock: Callable[[], float] = time.time


ProgressCallback = Callable[[ProgressEvent], None]


class _StaleRun(Exception):
    """Raised inside a run that was abandoned while it was suspended."""


class PipelineController:
    """Drives one stream's claim through the six pipeline steps.

    Args:
        worker: Worker address (must match the stream)
        stream_id: Settlement stream id
        services: Pipeline collaborators
        on_progress: Optional callback for every ProgressEvent
    """

    def __init__(
        self,
        worker: str,
        stream_id: int,
        services: PipelineServices,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.worker = worker
        self.stream_id = stream_id
        self.services = services
        self.on_progress = on_progress
        self.key = stream_key(worker, stream_id)
        self.events: list[ProgressEvent] = []
        self.failure: PipelineFailure | None = None
        self._state = PipelineState.IDLE
        self._artifacts: dict[str, Any] = {}
        self._generation = 0
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def artifacts(self) -> dict[str, Any]:
        return dict(self._artifacts)

    @property
    def in_flight(self) -> bool:
        return self._state not in (PipelineState.IDLE, PipelineState.DONE, PipelineState.ERROR)

    def _emit(self, message: str, **artifacts: Any) -> None:
        self._artifacts.update({k: v for k, v in artifacts.items() if v is not None})
        event = ProgressEvent(state=self._state, message=message, artifacts=dict(self._artifacts))
        self.events.append(event)
        logger.info("[%s] %s: %s", self.key, self._state.value, message)
        if self.on_progress is not None:
            self.on_progress(event)

    def _move(self, new_state: PipelineState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(f"{self._state.value} -> {new_state.value} is not allowed")
        self._state = new_state

    def _transition(self, generation: int, new_state: PipelineState, message: str, **artifacts: Any) -> None:
        self._guard(generation)
        self._move(new_state)
        self._emit(message, **artifacts)

    def _guard(self, generation: int) -> None:
        if generation != self._generation:
            raise _StaleRun()

    def reset(self) -> None:
        """Return a finished or failed controller to IDLE."""
        self._move(PipelineState.IDLE)
        self.failure = None
        self._artifacts = {}
        self._emit("Reset")

    def abandon(self) -> None:
        """Drop the in-flight run and return to IDLE.

        The run's task is cancelled; anything it completes afterwards is
        discarded instead of being applied to this controller.
        """
        if not self.in_flight:
            return
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._state = PipelineState.IDLE
        self._artifacts = {}
        self._emit("Run abandoned")

    async def run(self, source: WorkSource) -> RunResult | None:
        """Run the full pipeline for `source`.

        Returns:
            RunResult, or None when the run was abandoned meanwhile

        Raises:
            PipelineBusyError: Controller not IDLE
            The step's error, after moving to ERROR and recording a
            PipelineFailure
        """
        if self._state is not PipelineState.IDLE:
            raise PipelineBusyError(f"Stream {self.key} is {self._state.value}; reset() before a new run")

        self._generation += 1
        generation = self._generation
        self._task = asyncio.current_task()
        self.failure = None
        self._artifacts = {}

        try:
            self._transition(generation, PipelineState.PREPARING, "Preparing attestation request")
            return await self._run_steps(generation, source)
        except _StaleRun:
            logger.info("[%s] Discarding late result of an abandoned run", self.key)
            return None
        except asyncio.CancelledError:
            if generation == self._generation and self.in_flight:
                self._fail(asyncio.CancelledError("run cancelled"))
            raise
        except Exception as e:
            if generation != self._generation:
                logger.info("[%s] Abandoned run failed late: %s", self.key, e)
                return None
            self._fail(e)
            raise
        finally:
            if generation == self._generation:
                self._task = None

    def _fail(self, error: BaseException) -> None:
        failed_in = self._state
        self._move(PipelineState.ERROR)
        self.failure = PipelineFailure(state=failed_in, error=error, artifacts=dict(self._artifacts))
        logger.error("[%s] Failed while %s: %s: %s", self.key, failed_in.value, type(error).__name__, error)
        self._emit(f"Failed while {failed_in.value}: {error}", failed_step=failed_in.value)

    def _check_stream(self, stream: Stream) -> None:
        if not stream.active:
            raise ClaimWindowError(f"Stream {self.stream_id} is not active")
        if stream.worker.lower() != self.worker.lower():
            raise ClaimWindowError(f"Stream {self.stream_id} belongs to {stream.worker}, not {self.worker}")
        now = int(self.services.clock())
        if now < stream.next_claim_time:
            raise ClaimWindowError(
                f"Stream {self.stream_id} is claimable in {stream.next_claim_time - now}s"
            )

    async def _load_checkpoint(self, fingerprint: str) -> RunCheckpoint:
        store = self.services.checkpoints
        existing = await store.load(self.key) if store is not None else None
        if existing is not None and existing.request_fingerprint == fingerprint:
            if existing.claimed:
                raise ProofConsumedError(
                    f"Request {fingerprint[:12]} was already claimed in {existing.claim_tx}"
                )
            return existing
        return RunCheckpoint(stream_key=self.key, request_fingerprint=fingerprint)

    async def _save(self, checkpoint: RunCheckpoint) -> None:
        if self.services.checkpoints is not None:
            await self.services.checkpoints.save(checkpoint)

    def _poll_reporter(self, generation: int, waiting_for: str) -> Callable[[PollStatus], None]:
        def _report(status: PollStatus) -> None:
            if generation != self._generation or status.ready:
                return
            self._emit(
                f"Waiting for {waiting_for}... ({status.elapsed:.0f}s elapsed)",
                poll_attempt=status.attempt,
                elapsed_seconds=round(status.elapsed, 1),
            )
        return _report

    async def _run_steps(self, generation: int, source: WorkSource) -> RunResult:
        services = self.services

        # PREPARING
        stream = await services.settlement.get_stream(self.stream_id)
        self._guard(generation)
        self._check_stream(stream)
        since = since_cursor(stream)
        request = build_request(source, since=since)
        checkpoint = await self._load_checkpoint(request.fingerprint)

        if checkpoint.request_hex:
            prepared = PreparedRequest(request, bytes.fromhex(checkpoint.request_hex.removeprefix("0x")))
        else:
            prepared = await services.builder.prepare(request)
            checkpoint.request_hex = prepared.request_hex
        self._guard(generation)
        self._emit(
            "Attestation request prepared",
            request_fingerprint=request.fingerprint,
            since=since.isoformat() if since else "all history",
        )

        # SUBMITTING
        self._transition(generation, PipelineState.SUBMITTING, "Submitting attestation request")
        scheduled: ScheduledRound | None = None
        resumed = True
        if checkpoint.submitted:
            scheduled = await services.scheduler.round_for(
                SubmissionReceipt(
                    tx_hash=checkpoint.submission_tx,
                    block_number=checkpoint.submission_block or 0,
                    block_timestamp=checkpoint.submission_timestamp or 0,
                )
            )
        elif checkpoint.pending:
            found = await services.scheduler.reconcile(
                prepared,
                from_block=checkpoint.pending_from_block or 0,
                tx_hash=checkpoint.pending_submission_tx,
            )
            self._guard(generation)
            if found is not None:
                scheduled = await services.scheduler.round_for(found)
            else:
                self._emit(
                    f"Broadcast {checkpoint.pending_submission_tx} never landed, submitting again",
                )
        if scheduled is None:
            scheduled = await self._schedule(prepared, checkpoint)
            resumed = False
        self._guard(generation)
        self._record_submission(checkpoint, scheduled)
        await self._save(checkpoint)

        # FINALIZING
        self._transition(
            generation,
            PipelineState.FINALIZING,
            f"{'Resumed' if resumed else 'Submitted'} request in round {scheduled.round_id}",
            submission_tx=scheduled.submission.tx_hash,
            round_id=scheduled.round_id,
        )
        await services.poller.wait(scheduled.round_id, on_status=self._poll_reporter(generation, "round finalization"))

        # RETRIEVING
        self._transition(generation, PipelineState.RETRIEVING, f"Round {scheduled.round_id} finalized")
        if checkpoint.has_proof:
            raw = RawProof(proof=tuple(checkpoint.proof), response_hex=checkpoint.response_hex)
        else:
            raw = await services.retriever.retrieve(
                prepared, scheduled.round_id, on_status=self._poll_reporter(generation, "DA layer proof")
            )
            self._guard(generation)
            checkpoint.proof = list(raw.proof)
            checkpoint.response_hex = raw.response_hex
            await self._save(checkpoint)
        proof = services.assembler.assemble(raw, request, scheduled.round_id)
        if checkpoint.claim_attempts >= MAX_SUBMISSIONS_PER_PROOF or not services.submitter.can_submit(proof):
            if services.checkpoints is not None:
                await services.checkpoints.clear(self.key)
            raise ProofConsumedError(f"Proof for round {proof.round_id} has no submissions left")

        # CLAIMING
        self._transition(
            generation,
            PipelineState.CLAIMING,
            f"Claiming payment for {proof.unit_count} units",
            proof_depth=proof.merkle_proof.depth,
            unit_count=proof.unit_count,
        )
        checkpoint.claim_attempts += 1
        await self._save(checkpoint)
        outcome = await services.submitter.submit(self.stream_id, proof)
        checkpoint.claim_tx = outcome.tx_hash
        checkpoint.claimed = True
        await self._save(checkpoint)

        self._transition(
            generation,
            PipelineState.DONE,
            f"Claimed {outcome.amount_primary} wei for {outcome.unit_count} units",
            claim_tx=outcome.tx_hash,
            amount_primary=outcome.amount_primary,
            amount_reference=outcome.amount_reference,
            bonus_triggered=outcome.bonus_triggered,
        )
        return RunResult(outcome=outcome, proof=proof, artifacts=self.artifacts)

    async def _schedule(self, prepared: PreparedRequest, checkpoint: RunCheckpoint) -> ScheduledRound:
        """Pay for a new submission, remembering it if its inclusion is unknown."""
        try:
            return await self.services.scheduler.schedule(prepared)
        except AmbiguousBroadcastError as e:
            checkpoint.pending_submission_tx = e.tx_hash
            checkpoint.pending_from_block = e.from_block
            await self._save(checkpoint)
            raise

    @staticmethod
    def _record_submission(checkpoint: RunCheckpoint, scheduled: ScheduledRound) -> None:
        checkpoint.pending_submission_tx = None
        checkpoint.pending_from_block = None
        checkpoint.submission_tx = scheduled.submission.tx_hash
        checkpoint.submission_block = scheduled.submission.block_number
        checkpoint.submission_timestamp = scheduled.submission.block_timestamp
        checkpoint.round_id = scheduled.round_id


class PipelineRegistry:
    """One controller per (worker, stream); at most one run in flight each.

    Args:
        services: Collaborators handed to every controller
    """

    def __init__(self, services: PipelineServices) -> None:
        self.services = services
        self._controllers: dict[str, PipelineController] = {}

    def controller_for(
        self,
        worker: str,
        stream_id: int,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineController:
        key = stream_key(worker, stream_id)
        controller = self._controllers.get(key)
        if controller is None:
            controller = PipelineController(worker, stream_id, self.services, on_progress=on_progress)
            self._controllers[key] = controller
        elif on_progress is not None:
            controller.on_progress = on_progress
        return controller

    def in_flight(self) -> list[str]:
        return sorted(key for key, c in self._controllers.items() if c.in_flight)

    async def run(
        self,
        worker: str,
        stream_id: int,
        source: WorkSource,
        on_progress: ProgressCallback | None = None,
    ) -> RunResult | None:
        """Start a run; PipelineBusyError if this stream already has one."""
        controller = self.controller_for(worker, stream_id, on_progress=on_progress)
        if controller.in_flight:
            raise PipelineBusyError(f"A claim for stream {controller.key} is already {controller.state.value}")
        return await controller.run(source)
