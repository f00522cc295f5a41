"""Tests for the serialized transaction signer."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted

from attestpay.chain.signer import TransactionFailed, TransactionSigner
from attestpay.errors import AmbiguousBroadcastError

PRIVATE_KEY = "0x" + "4c" * 32

UNSIGNED_TX = {
    "to": "0x0000000000000000000000000000000000000c01",
    "value": 0,
    "gas": 200_000,
    "gasPrice": 25 * 10**9,
    "nonce": 0,
    "chainId": 114,
    "data": "0x",
}


def _w3(status: int = 1) -> MagicMock:
    w3 = MagicMock()
    w3.eth.get_transaction_count = AsyncMock(return_value=0)
    w3.eth.send_raw_transaction = AsyncMock()
    w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": status, "blockNumber": 42})
    return w3


def _call() -> MagicMock:
    call = MagicMock()
    call.build_transaction = AsyncMock(side_effect=lambda params: {**UNSIGNED_TX, "nonce": params["nonce"]})
    call.call = AsyncMock()
    return call


class TestSend:
    """Broadcast and confirmation."""

    @pytest.mark.asyncio
    async def test_success(self):
        w3 = _w3()
        signer = TransactionSigner(w3, PRIVATE_KEY)
        call = _call()

        result = await signer.send(call, value=1_000)

        assert result.block_number == 42
        assert result.tx_hash.startswith("0x") and len(result.tx_hash) == 66
        w3.eth.get_transaction_count.assert_awaited_once_with(signer.address, "pending")
        params = call.build_transaction.await_args.args[0]
        assert params == {"from": signer.address, "value": 1_000, "nonce": 0}
        w3.eth.wait_for_transaction_receipt.assert_awaited_once_with(result.tx_hash, timeout=180.0)

    @pytest.mark.asyncio
    async def test_revert_at_build(self):
        w3 = _w3()
        call = _call()
        call.build_transaction.side_effect = ContractLogicError("execution reverted: Claim interval not elapsed")

        with pytest.raises(TransactionFailed, match="Claim interval not elapsed") as exc_info:
            await TransactionSigner(w3, PRIVATE_KEY).send(call)

        assert exc_info.value.tx_hash is None
        w3.eth.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_node_refusal(self):
        w3 = _w3()
        w3.eth.send_raw_transaction.side_effect = ValueError("insufficient funds for gas * price + value")

        with pytest.raises(TransactionFailed, match="insufficient funds"):
            await TransactionSigner(w3, PRIVATE_KEY).send(_call())

        w3.eth.wait_for_transaction_receipt.assert_not_called()

    @pytest.mark.asyncio
    async def test_broadcast_interrupted_is_ambiguous(self):
        w3 = _w3()
        w3.eth.send_raw_transaction.side_effect = ConnectionResetError("peer reset")

        with pytest.raises(AmbiguousBroadcastError) as exc_info:
            await TransactionSigner(w3, PRIVATE_KEY).send(_call())

        assert exc_info.value.tx_hash.startswith("0x")

    @pytest.mark.asyncio
    async def test_receipt_timeout_is_ambiguous(self):
        w3 = _w3()
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("timeout")

        with pytest.raises(AmbiguousBroadcastError, match="No receipt"):
            await TransactionSigner(w3, PRIVATE_KEY, confirmation_timeout=5).send(_call())

    @pytest.mark.asyncio
    async def test_mined_revert_reason_recovered(self):
        w3 = _w3(status=0)
        call = _call()
        call.call.side_effect = ContractLogicError("execution reverted: Insufficient deposit")

        with pytest.raises(TransactionFailed) as exc_info:
            await TransactionSigner(w3, PRIVATE_KEY).send(call)

        assert "Insufficient deposit" in exc_info.value.reason
        assert exc_info.value.tx_hash is not None
        assert call.call.await_args.kwargs["block_identifier"] == 42

    @pytest.mark.asyncio
    async def test_mined_revert_without_reason(self):
        w3 = _w3(status=0)

        with pytest.raises(TransactionFailed, match="transaction reverted"):
            await TransactionSigner(w3, PRIVATE_KEY).send(_call())


class TestSerialization:
    """One transaction in flight per signer."""

    @pytest.mark.asyncio
    async def test_second_send_waits_for_first_receipt(self):
        w3 = _w3()
        nonces = iter(range(10))
        w3.eth.get_transaction_count.side_effect = lambda *args: next(nonces)
        release = asyncio.Event()

        async def slow_receipt(tx_hash, timeout):
            await release.wait()
            return {"status": 1, "blockNumber": 42}

        w3.eth.wait_for_transaction_receipt.side_effect = slow_receipt
        signer = TransactionSigner(w3, PRIVATE_KEY)
        first_call, second_call = _call(), _call()

        first = asyncio.create_task(signer.send(first_call))
        second = asyncio.create_task(signer.send(second_call))
        for _ in range(5):
            await asyncio.sleep(0)

        assert w3.eth.get_transaction_count.await_count == 1
        second_call.build_transaction.assert_not_called()

        release.set()
        await asyncio.gather(first, second)

        assert first_call.build_transaction.await_args.args[0]["nonce"] == 0
        assert second_call.build_transaction.await_args.args[0]["nonce"] == 1
