"""Tests for the Solana RPC client."""

from __future__ import annotations

import itertools
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from kol_wager_engine.chain.rpc import (
    SIGNATURE_CONFIRMED,
    SIGNATURE_FAILED,
    SIGNATURE_MISSING,
    SIGNATURE_PENDING,
    ConfirmationTimeoutError,
    RetryPolicy,
    RPCError,
    SolanaRpc,
    TransactionFailedError,
    attempt_with_fallback,
    build_transfer,
)

PRIMARY = "https://primary.example"
FALLBACK = "https://fallback.example"
DESTINATION = str(Keypair().pubkey())


def create_status(
    confirmation: TransactionConfirmationStatus | None = TransactionConfirmationStatus.Confirmed,
    err: object = None,
) -> SimpleNamespace:
    return SimpleNamespace(err=err, confirmation_status=confirmation)


def create_client(**methods: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.close = AsyncMock()
    for name, mock in methods.items():
        setattr(client, name, mock)
    return client


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


class TestRetryPolicy:
    def test_requires_endpoint(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(endpoints=())

    def test_requires_an_attempt(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(endpoints=(PRIMARY,), max_attempts=0)

    def test_exponential_delay(self) -> None:
        policy = RetryPolicy(endpoints=(PRIMARY,), backoff_seconds=0.5, multiplier=2.0)
        assert [policy.delay_after(i) for i in range(3)] == [0.5, 1.0, 2.0]


class TestAttemptWithFallback:
    @pytest.mark.asyncio
    async def test_first_endpoint_success(self, sleep: AsyncMock) -> None:
        work = AsyncMock(return_value="ok")
        result = await attempt_with_fallback(RetryPolicy(endpoints=(PRIMARY, FALLBACK)), work, sleep=sleep)

        assert result == "ok"
        work.assert_awaited_once_with(PRIMARY)
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_back_within_an_attempt(self, sleep: AsyncMock) -> None:
        work = AsyncMock(side_effect=[httpx.ConnectError("down"), "ok"])
        result = await attempt_with_fallback(RetryPolicy(endpoints=(PRIMARY, FALLBACK)), work, sleep=sleep)

        assert result == "ok"
        assert [c.args[0] for c in work.await_args_list] == [PRIMARY, FALLBACK]
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backs_off_between_cycles(self, sleep: AsyncMock) -> None:
        work = AsyncMock(side_effect=[RPCException("a"), RPCException("b"), RPCException("c"), "ok"])
        policy = RetryPolicy(endpoints=(PRIMARY, FALLBACK), max_attempts=3, backoff_seconds=1.0)

        assert await attempt_with_fallback(policy, work, sleep=sleep) == "ok"
        assert [c.args[0] for c in sleep.await_args_list] == [1.0]

    @pytest.mark.asyncio
    async def test_exhausted_raises_rpc_error(self, sleep: AsyncMock) -> None:
        work = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        policy = RetryPolicy(endpoints=(PRIMARY, FALLBACK), max_attempts=3, backoff_seconds=1.0)

        with pytest.raises(RPCError) as exc_info:
            await attempt_with_fallback(policy, work, sleep=sleep, operation="get_balance")

        assert work.await_count == 6
        # No sleep after the final cycle.
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
        assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)
        assert "get_balance" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates(self, sleep: AsyncMock) -> None:
        work = AsyncMock(side_effect=KeyError("bug"))
        with pytest.raises(KeyError):
            await attempt_with_fallback(RetryPolicy(endpoints=(PRIMARY, FALLBACK)), work, sleep=sleep)
        assert work.await_count == 1


class TestBuildTransfer:
    def test_signed_by_source(self) -> None:
        keypair = Keypair()
        tx = build_transfer(keypair, DESTINATION, 1_000, Hash.default())

        assert tx.message.account_keys[0] == keypair.pubkey()
        assert tx.signatures[0] != Signature.default()

    def test_rejects_non_positive_amount(self) -> None:
        with pytest.raises(ValueError):
            build_transfer(Keypair(), DESTINATION, 0, Hash.default())


class TestSolanaRpc:
    def create_rpc(self, clients: dict[str, MagicMock], sleep: AsyncMock, **kwargs) -> SolanaRpc:
        policy = RetryPolicy(endpoints=tuple(clients), max_attempts=2, backoff_seconds=0.1)
        return SolanaRpc(policy, client_factory=clients.__getitem__, sleep=sleep, **kwargs)

    @pytest.mark.asyncio
    async def test_balance_uses_fallback_endpoint(self, sleep: AsyncMock) -> None:
        primary = create_client(get_balance=AsyncMock(side_effect=httpx.ConnectError("down")))
        fallback = create_client(get_balance=AsyncMock(return_value=SimpleNamespace(value=42)))
        rpc = self.create_rpc({PRIMARY: primary, FALLBACK: fallback}, sleep)

        assert await rpc.get_balance(DESTINATION) == 42

    @pytest.mark.asyncio
    async def test_clients_are_reused_and_closed(self, sleep: AsyncMock) -> None:
        client = create_client(get_balance=AsyncMock(return_value=SimpleNamespace(value=1)))
        factory = MagicMock(return_value=client)
        rpc = SolanaRpc(RetryPolicy(endpoints=(PRIMARY,)), client_factory=factory, sleep=sleep)

        await rpc.get_balance(DESTINATION)
        await rpc.get_balance(DESTINATION)
        await rpc.close()

        factory.assert_called_once_with(PRIMARY)
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_parsed_transaction_cache_hit(self, sleep: AsyncMock) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=b'{"slot": 7}')
        client = create_client(get_transaction=AsyncMock())
        rpc = self.create_rpc({PRIMARY: client}, sleep, redis=redis)

        assert await rpc.get_parsed_transaction("anything") == {"slot": 7}
        client.get_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_parsed_transaction_cache_miss_stores_result(self, sleep: AsyncMock) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=None)
        redis.set = AsyncMock()
        value = MagicMock()
        value.to_json.return_value = json.dumps({"slot": 9})
        client = create_client(get_transaction=AsyncMock(return_value=SimpleNamespace(value=value)))
        rpc = self.create_rpc({PRIMARY: client}, sleep, redis=redis, tx_cache_ttl_seconds=120)
        signature = str(Signature.default())

        assert await rpc.get_parsed_transaction(signature) == {"slot": 9}
        redis.set.assert_awaited_once_with(f"solana:tx:{signature}", '{"slot": 9}', ex=120)

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, sleep: AsyncMock) -> None:
        client = create_client(get_transaction=AsyncMock(return_value=SimpleNamespace(value=None)))
        rpc = self.create_rpc({PRIMARY: client}, sleep)

        assert await rpc.get_parsed_transaction(str(Signature.default())) is None

    @pytest.mark.asyncio
    async def test_send_treats_already_processed_as_success(self, sleep: AsyncMock) -> None:
        client = create_client(
            send_raw_transaction=AsyncMock(side_effect=RPCException("Transaction has already been processed"))
        )
        rpc = self.create_rpc({PRIMARY: client}, sleep)
        tx = build_transfer(Keypair(), DESTINATION, 10, Hash.default())

        assert await rpc.send_transaction(tx) == str(tx.signatures[0])
        client.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_send_retries_identical_bytes(self, sleep: AsyncMock) -> None:
        tx = build_transfer(Keypair(), DESTINATION, 10, Hash.default())
        client = create_client(
            send_raw_transaction=AsyncMock(
                side_effect=[httpx.ConnectError("reset"), SimpleNamespace(value=tx.signatures[0])]
            )
        )
        rpc = self.create_rpc({PRIMARY: client}, sleep)

        await rpc.send_transaction(tx)

        first, second = client.send_raw_transaction.await_args_list
        assert first.args[0] == second.args[0] == bytes(tx)

    @pytest.mark.asyncio
    async def test_confirm_waits_for_confirmed(self, sleep: AsyncMock) -> None:
        statuses = [
            SimpleNamespace(value=[None]),
            SimpleNamespace(value=[create_status(TransactionConfirmationStatus.Processed)]),
            SimpleNamespace(value=[create_status(TransactionConfirmationStatus.Finalized)]),
        ]
        client = create_client(get_signature_statuses=AsyncMock(side_effect=statuses))
        rpc = self.create_rpc({PRIMARY: client}, sleep)

        await rpc.confirm_signature(str(Signature.default()), poll_seconds=0.5)

        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_confirm_raises_on_execution_error(self, sleep: AsyncMock) -> None:
        status = create_status(err={"InstructionError": [0, "Custom"]})
        client = create_client(get_signature_statuses=AsyncMock(return_value=SimpleNamespace(value=[status])))
        rpc = self.create_rpc({PRIMARY: client}, sleep)

        with pytest.raises(TransactionFailedError):
            await rpc.confirm_signature(str(Signature.default()))

    @pytest.mark.asyncio
    async def test_confirm_times_out(self, sleep: AsyncMock) -> None:
        client = create_client(get_signature_statuses=AsyncMock(return_value=SimpleNamespace(value=[None])))
        clock = itertools.count(0, 30).__next__
        rpc = self.create_rpc({PRIMARY: client}, sleep, clock=clock)

        with pytest.raises(ConfirmationTimeoutError):
            await rpc.confirm_signature(str(Signature.default()), timeout_seconds=60)

    @pytest.mark.asyncio
    async def test_send_transfer_reports_signature_before_sending(self, sleep: AsyncMock) -> None:
        order: list[str] = []
        keypair = Keypair()

        async def send_raw(payload: bytes, opts: object = None) -> SimpleNamespace:
            order.append("send")
            return SimpleNamespace(value=None)

        async def on_signed(signature: str) -> None:
            order.append(f"signed:{signature}")

        blockhash = SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default(), last_valid_block_height=100))
        client = create_client(
            get_latest_blockhash=AsyncMock(return_value=blockhash),
            send_raw_transaction=AsyncMock(side_effect=send_raw),
            get_signature_statuses=AsyncMock(return_value=SimpleNamespace(value=[create_status()])),
        )
        rpc = self.create_rpc({PRIMARY: client}, sleep)

        receipt = await rpc.send_transfer(keypair, DESTINATION, 5_000, on_signed=on_signed)

        assert order == [f"signed:{receipt.signature}", "send"]
        assert receipt.source == str(keypair.pubkey())
        assert receipt.destination == DESTINATION
        assert receipt.lamports == 5_000

    @pytest.mark.asyncio
    async def test_verify_transaction(self, sleep: AsyncMock) -> None:
        signature = str(Signature.default())
        client = create_client(
            get_signature_statuses=AsyncMock(
                side_effect=[
                    SimpleNamespace(value=[create_status()]),
                    SimpleNamespace(value=[create_status(err="boom")]),
                    SimpleNamespace(value=[None]),
                ]
            )
        )
        rpc = self.create_rpc({PRIMARY: client}, sleep)

        assert await rpc.verify_transaction(signature) is True
        assert await rpc.verify_transaction(signature) is False
        assert await rpc.verify_transaction(signature) is False
        assert client.get_signature_statuses.await_args.kwargs == {"search_transaction_history": True}

    @pytest.mark.asyncio
    async def test_verify_never_raises(self, sleep: AsyncMock) -> None:
        client = create_client(get_signature_statuses=AsyncMock(side_effect=httpx.ConnectError("down")))
        rpc = self.create_rpc({PRIMARY: client}, sleep)

        assert await rpc.verify_transaction(str(Signature.default())) is False
        assert await rpc.verify_transaction("not-a-signature") is False

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (create_status(), SIGNATURE_CONFIRMED),
            (create_status(TransactionConfirmationStatus.Finalized), SIGNATURE_CONFIRMED),
            (create_status(TransactionConfirmationStatus.Processed), SIGNATURE_PENDING),
            (create_status(err="InstructionError"), SIGNATURE_FAILED),
            (None, SIGNATURE_MISSING),
        ],
    )
    @pytest.mark.asyncio
    async def test_signature_state(self, sleep: AsyncMock, status: object, expected: str) -> None:
        client = create_client(get_signature_statuses=AsyncMock(return_value=SimpleNamespace(value=[status])))
        rpc = self.create_rpc({PRIMARY: client}, sleep)

        assert await rpc.signature_state(str(Signature.default())) == expected
        assert client.get_signature_statuses.await_args.kwargs == {"search_transaction_history": True}

    @pytest.mark.asyncio
    async def test_signature_state_lookup_failure_raises(self, sleep: AsyncMock) -> None:
        client = create_client(get_signature_statuses=AsyncMock(side_effect=httpx.ConnectError("down")))
        rpc = self.create_rpc({PRIMARY: client}, sleep)

        with pytest.raises(RPCError):
            await rpc.signature_state(str(Signature.default()))
        assert await rpc.signature_state("not-a-signature") == SIGNATURE_MISSING
