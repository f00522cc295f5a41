"""Tests for attestation network reads and windowed log scans."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from attestpay.chain.attestation import AttestationNetwork, block_windows, scan_logs
from attestpay.errors import TransientError

SENDER = "0x00000000000000000000000000000000000000A1"
REQUEST = b"\xc0\xff\xee"


class TestBlockWindows:
    def test_exact_multiple(self):
        assert list(block_windows(0, 89, 30)) == [(0, 29), (30, 59), (60, 89)]

    def test_partial_last_window(self):
        assert list(block_windows(100, 200, 50)) == [(100, 149), (150, 199), (200, 200)]

    def test_single_block(self):
        assert list(block_windows(7, 7, 30)) == [(7, 7)]

    def test_empty_range(self):
        assert list(block_windows(10, 9, 30)) == []

    def test_window_size_must_be_positive(self):
        with pytest.raises(ValueError):
            list(block_windows(0, 10, 0))


class TestScanLogs:
    """One get_logs request per window."""

    @pytest.mark.asyncio
    async def test_results_concatenated_in_order(self):
        event = MagicMock()
        event.get_logs = AsyncMock(side_effect=[["a"], [], ["b", "c"]])

        logs = await scan_logs("test scan", event, from_block=0, to_block=70, max_blocks=30)

        assert logs == ["a", "b", "c"]
        assert [c.kwargs["to_block"] for c in event.get_logs.await_args_list] == [29, 59, 70]

    @pytest.mark.asyncio
    async def test_connectivity_failure_is_transient(self):
        event = MagicMock()
        event.get_logs = AsyncMock(side_effect=ConnectionResetError("reset"))

        with pytest.raises(TransientError, match=r"test scan \[0-29\]"):
            await scan_logs("test scan", event, from_block=0, to_block=70, max_blocks=30)


@pytest.fixture
def network() -> AttestationNetwork:
    w3 = MagicMock()
    w3.eth.get_transaction = AsyncMock(return_value={"from": SENDER})
    w3.eth.get_transaction_receipt = AsyncMock(return_value=None)
    network = AttestationNetwork(w3, log_scan_max_blocks=30)
    network.contract_address = AsyncMock(return_value="0x0000000000000000000000000000000000000F01")
    network.block_number = AsyncMock(return_value=1_075)
    network.block_timestamp = AsyncMock(return_value=1_748_430_045)
    return network


class TestFindSubmission:
    """Reconciliation scan over FdcHub AttestationRequest logs."""

    @pytest.mark.asyncio
    async def test_scan_walks_windows_to_head(self, network):
        landed = {
            "args": {"data": REQUEST, "fee": 1_000},
            "transactionHash": b"\xaa" * 32,
            "blockNumber": 1_070,
        }
        get_logs = AsyncMock(side_effect=[[], [], [landed]])
        network.w3.eth.contract.return_value.events.AttestationRequest.return_value.get_logs = get_logs

        found = await network.find_submission(REQUEST, sender=SENDER, from_block=1_000)

        assert found.tx_hash == "0x" + "aa" * 32
        assert found.block_number == 1_070
        assert found.fee == 1_000
        assert [(c.kwargs["from_block"], c.kwargs["to_block"]) for c in get_logs.await_args_list] == [
            (1_000, 1_029), (1_030, 1_059), (1_060, 1_075),
        ]

    @pytest.mark.asyncio
    async def test_other_senders_ignored(self, network):
        other = {
            "args": {"data": REQUEST, "fee": 1_000},
            "transactionHash": b"\xbb" * 32,
            "blockNumber": 1_010,
        }
        network.w3.eth.contract.return_value.events.AttestationRequest.return_value.get_logs = AsyncMock(
            side_effect=[[other], [], []]
        )
        network.w3.eth.get_transaction = AsyncMock(return_value={"from": "0x00000000000000000000000000000000000000B2"})

        assert await network.find_submission(REQUEST, sender=SENDER, from_block=1_000) is None
