"""Parquet-based run checkpoints, one file per stream.

Storage structure:
    {base}/{worker}-{stream_id}/checkpoint.parquet

A checkpoint holds the artifacts a pipeline run obtained so far: the
request, the submission (or an unconfirmed broadcast), the round, the proof,
the number of claim attempts and the claim. It lets an interrupted run
resume without paying the attestation fee a second time, and tells a new
run that a proof was already claimed or has no attempts left. It is the
only state attestpay persists.

All I/O goes through asyncio.to_thread so the event loop never blocks.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

logger = logging.getLogger(__name__)


def stream_key(worker: str, stream_id: int) -> str:
    return f"{worker.lower()}-{stream_id}"


@dataclass
class RunCheckpoint:
    """Artifacts of one pipeline run for one stream."""

    stream_key: str
    request_fingerprint: str
    request_hex: str | None = None
    pending_submission_tx: str | None = None
    pending_from_block: int | None = None
    submission_tx: str | None = None
    submission_block: int | None = None
    submission_timestamp: int | None = None
    round_id: int | None = None
    proof: list[str] = field(default_factory=list)
    response_hex: str | None = None
    claim_attempts: int = 0
    claim_tx: str | None = None
    claimed: bool = False
    updated_at: str = ""

    @property
    def submitted(self) -> bool:
        return self.round_id is not None and self.submission_tx is not None

    @property
    def has_proof(self) -> bool:
        return self.response_hex is not None

    @property
    def pending(self) -> bool:
        """A paid broadcast whose inclusion was never confirmed."""
        return not self.submitted and self.pending_submission_tx is not None

    def to_frame(self) -> pd.DataFrame:
        row: dict[str, Any] = asdict(self)
        row["proof"] = json.dumps(self.proof)
        row["updated_at"] = datetime.now(timezone.utc).isoformat()
        return pd.DataFrame([row])

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "RunCheckpoint":
        row = df.iloc[-1].to_dict()

        def _opt(name: str) -> Any:
            value = row.get(name)
            return None if value is None or pd.isna(value) else value

        def _opt_int(name: str) -> int | None:
            value = _opt(name)
            return None if value is None else int(value)

        return cls(
            stream_key=str(row["stream_key"]),
            request_fingerprint=str(row["request_fingerprint"]),
            request_hex=_opt("request_hex"),
            pending_submission_tx=_opt("pending_submission_tx"),
            pending_from_block=_opt_int("pending_from_block"),
            submission_tx=_opt("submission_tx"),
            submission_block=_opt_int("submission_block"),
            submission_timestamp=_opt_int("submission_timestamp"),
            round_id=_opt_int("round_id"),
            proof=json.loads(_opt("proof") or "[]"),
            response_hex=_opt("response_hex"),
            claim_attempts=_opt_int("claim_attempts") or 0,
            claim_tx=_opt("claim_tx"),
            claimed=bool(row.get("claimed", False)),
            updated_at=str(_opt("updated_at") or ""),
        )


class CheckpointStore:
    """Async Parquet store for run checkpoints.

    Args:
        base_path: Root directory. Defaults to 'data/'.
    """

    def __init__(self, base_path: str | Path = "data") -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_file_path(self, key: str) -> Path:
        return self.base_path / key / "checkpoint.parquet"

    async def save(self, checkpoint: RunCheckpoint) -> Path:
        """Write (replace) the checkpoint of a stream."""
        file_path = self._get_file_path(checkpoint.stream_key)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        data = checkpoint.to_frame()

        def _write() -> None:
            tmp_path = file_path.with_suffix(".tmp")
            pq.write_table(pa.Table.from_pandas(data, preserve_index=False), tmp_path)
            tmp_path.replace(file_path)

        await asyncio.to_thread(_write)
        logger.debug("Checkpoint saved for %s (round=%s)", checkpoint.stream_key, checkpoint.round_id)
        return file_path

    async def load(self, key: str) -> RunCheckpoint | None:
        """Read a stream's checkpoint, or None if absent or unreadable."""
        file_path = self._get_file_path(key)
        if not file_path.exists():
            return None

        def _read() -> RunCheckpoint | None:
            try:
                return RunCheckpoint.from_frame(pq.read_table(file_path).to_pandas())
            except (OSError, pa.ArrowException, KeyError, ValueError) as e:
                logger.warning(
                    "Failed to read checkpoint %s: %s. Ignoring it.", file_path, e,
                )
                return None

        return await asyncio.to_thread(_read)

    async def clear(self, key: str) -> bool:
        """Delete a stream's checkpoint. Returns True if one existed."""
        file_path = self._get_file_path(key)
        if not file_path.exists():
            return False
        await asyncio.to_thread(file_path.unlink)
        return True
