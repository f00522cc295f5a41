"""Tests for Parquet run checkpoints."""

import pytest

from attestpay.pipeline.checkpoint import CheckpointStore, RunCheckpoint, stream_key

KEY = stream_key("0x00000000000000000000000000000000000000A1", 3)


@pytest.fixture
def store(tmp_path) -> CheckpointStore:
    return CheckpointStore(base_path=tmp_path)


class TestStreamKey:
    def test_case_insensitive_worker(self):
        assert stream_key("0xABC", 3) == stream_key("0xabc", 3) == "0xabc-3"


class TestCheckpointStore:
    """Save / load / clear."""

    @pytest.mark.asyncio
    async def test_missing_checkpoint(self, store):
        assert await store.load(KEY) is None

    @pytest.mark.asyncio
    async def test_fresh_checkpoint(self, store):
        await store.save(RunCheckpoint(stream_key=KEY, request_fingerprint="f" * 64))

        loaded = await store.load(KEY)

        assert loaded.request_fingerprint == "f" * 64
        assert loaded.round_id is None
        assert loaded.proof == []
        assert not loaded.submitted
        assert not loaded.has_proof
        assert not loaded.claimed

    @pytest.mark.asyncio
    async def test_full_checkpoint(self, store, tmp_path):
        checkpoint = RunCheckpoint(
            stream_key=KEY,
            request_fingerprint="a" * 64,
            request_hex="0xc0ffee",
            submission_tx="0xaa",
            submission_block=501,
            submission_timestamp=1_748_430_045,
            round_id=1000,
            proof=["0x" + "11" * 32, "0x" + "22" * 32],
            response_hex="0xabcd",
        )

        path = await store.save(checkpoint)
        loaded = await store.load(KEY)

        assert path == tmp_path / KEY / "checkpoint.parquet"
        assert loaded.submitted
        assert loaded.has_proof
        assert loaded.round_id == 1000
        assert loaded.submission_block == 501
        assert loaded.proof == checkpoint.proof
        assert loaded.updated_at

    @pytest.mark.asyncio
    async def test_unconfirmed_broadcast_and_attempts(self, store):
        checkpoint = RunCheckpoint(
            stream_key=KEY,
            request_fingerprint="a" * 64,
            request_hex="0xc0ffee",
            pending_submission_tx="0xaa",
            pending_from_block=500,
        )
        await store.save(checkpoint)

        loaded = await store.load(KEY)

        assert loaded.pending
        assert not loaded.submitted
        assert loaded.pending_submission_tx == "0xaa"
        assert loaded.pending_from_block == 500
        assert loaded.claim_attempts == 0

        loaded.claim_attempts = 2
        await store.save(loaded)
        assert (await store.load(KEY)).claim_attempts == 2

    @pytest.mark.asyncio
    async def test_save_replaces(self, store):
        checkpoint = RunCheckpoint(stream_key=KEY, request_fingerprint="a" * 64, round_id=7, submission_tx="0xaa")
        await store.save(checkpoint)
        checkpoint.claimed = True
        checkpoint.claim_tx = "0xclaim"
        await store.save(checkpoint)

        loaded = await store.load(KEY)

        assert loaded.claimed
        assert loaded.claim_tx == "0xclaim"

    @pytest.mark.asyncio
    async def test_corrupt_file_ignored(self, store, tmp_path):
        path = tmp_path / KEY / "checkpoint.parquet"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"not parquet")

        assert await store.load(KEY) is None

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.save(RunCheckpoint(stream_key=KEY, request_fingerprint="a" * 64))

        assert await store.clear(KEY) is True
        assert await store.load(KEY) is None
        assert await store.clear(KEY) is False
