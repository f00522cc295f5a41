"""Verified-claim pipeline.

Steps, strictly in order:
1. Request Builder: work source → canonical attestation request
2. Round Scheduler: paid submission → voting round id
3. Finalization Poller: wait for the round to be final
4. Proof Retriever: response + Merkle path from the DA layer
5. Proof Assembler: decode into the claim() structure
6. Claim Submitter: settle, exactly once

Components:
- PipelineController: state machine for one (worker, stream) run
- PipelineRegistry: single-flight guard across streams
- CheckpointStore: resume/dedupe state of interrupted runs
"""

from attestpay.pipeline.controller import (
    PipelineController,
    PipelineRegistry,
    PipelineServices,
    PipelineState,
    ProgressEvent,
)

__all__ = [
    "PipelineController",
    "PipelineRegistry",
    "PipelineServices",
    "PipelineState",
    "ProgressEvent",
]
