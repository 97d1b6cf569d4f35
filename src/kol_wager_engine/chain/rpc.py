"""Solana RPC client with endpoint failover, retries and caching.

This module provides the only path from the engine to the chain:
- ``attempt_with_fallback`` cycles through every configured endpoint on each
  attempt and backs off exponentially between full cycles
- Redis caching of parsed transactions (they are immutable once confirmed)
- Transfers are built and signed exactly once; retries resend the same bytes,
  so a retried send can never produce a second, different transfer
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
from redis.asyncio import Redis
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_TX_CACHE_TTL_SECONDS = 3600
DEFAULT_CONFIRM_TIMEOUT_SECONDS = 60.0
DEFAULT_CONFIRM_POLL_SECONDS = 1.0

# Resends of an already-landed transaction are rejected with this message.
ALREADY_PROCESSED_MARKER = "already been processed"

# A blockhash is valid for 150 slots; after this a missing transaction cannot land.
SIGNATURE_EXPIRY_SECONDS = 120.0

SIGNATURE_CONFIRMED = "confirmed"
SIGNATURE_FAILED = "failed"
SIGNATURE_PENDING = "pending"
SIGNATURE_MISSING = "missing"

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    SolanaRpcException,
    RPCException,
    httpx.HTTPError,
    asyncio.TimeoutError,
    OSError,
)

Sleep = Callable[[float], Awaitable[None]]
ClientFactory = Callable[[str], AsyncClient]


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails on every endpoint and attempt."""


class TransactionFailedError(ChainClientError):
    """Raised when a transaction landed but executed with an error."""


class ConfirmationTimeoutError(ChainClientError):
    """Raised when a sent transaction was not confirmed in time.

    The transaction may still land; callers must not treat this as failure.
    """


@dataclass(frozen=True)
class RetryPolicy:
    """How many full endpoint cycles to try and how long to wait between them."""

    endpoints: tuple[str, ...]
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    retry_on: tuple[type[BaseException], ...] = field(default=RETRYABLE_ERRORS)

    def __post_init__(self) -> None:
        if not self.endpoints:
            raise ValueError("RetryPolicy needs at least one endpoint")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_after(self, attempt: int) -> float:
        """Sleep after the failed cycle with 0-based index ``attempt``."""
        return self.backoff_seconds * self.multiplier**attempt


async def attempt_with_fallback(
    policy: RetryPolicy,
    work: Callable[[str], Awaitable[T]],
    *,
    sleep: Sleep = asyncio.sleep,
    operation: str = "rpc",
) -> T:
    """Run ``work(endpoint)`` until it succeeds.

    Each attempt tries every endpoint in order. After a full failed cycle it
    sleeps ``backoff * multiplier ** attempt``; no sleep follows the final
    cycle.

    Raises:
        RPCError: Chained from the last error once all attempts are exhausted.
    """
    last_error: BaseException | None = None
    for attempt in range(policy.max_attempts):
        for endpoint in policy.endpoints:
            try:
                return await work(endpoint)
            except policy.retry_on as e:
                last_error = e
                logger.warning(
                    "%s failed on %s (attempt %d/%d): %s",
                    operation,
                    endpoint,
                    attempt + 1,
                    policy.max_attempts,
                    e,
                )
        if attempt < policy.max_attempts - 1:
            await sleep(policy.delay_after(attempt))

    raise RPCError(f"{operation} failed after {policy.max_attempts} attempt(s): {last_error}") from last_error


@dataclass(frozen=True)
class TransferReceipt:
    signature: str
    source: str
    destination: str
    lamports: int


def build_transfer(keypair: Keypair, destination: str, lamports: int, blockhash: Hash) -> Transaction:
    """Build and sign a single system transfer."""
    if lamports <= 0:
        raise ValueError("lamports must be positive")
    instruction = transfer(
        TransferParams(
            from_pubkey=keypair.pubkey(),
            to_pubkey=Pubkey.from_string(destination),
            lamports=lamports,
        )
    )
    message = Message([instruction], keypair.pubkey())
    return Transaction([keypair], message, blockhash)


class SolanaRpc:
    """Resilient access to the Solana JSON-RPC API.

    Example:
        ```python
        rpc = SolanaRpc(RetryPolicy(endpoints=("https://api.mainnet-beta.solana.com",)))
        balance = await rpc.get_balance("9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin")
        await rpc.close()
        ```
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        commitment: str = "confirmed",
        redis: Redis | None = None,
        tx_cache_ttl_seconds: int = DEFAULT_TX_CACHE_TTL_SECONDS,
        client_factory: ClientFactory | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy
        self._commitment = Commitment(commitment)
        self._redis = redis
        self._tx_cache_ttl = tx_cache_ttl_seconds
        self._client_factory = client_factory or (lambda url: AsyncClient(url, commitment=self._commitment))
        self._sleep = sleep
        self._clock = clock
        self._clients: dict[str, AsyncClient] = {}
        self._cache_prefix = "solana:"

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def _client(self, endpoint: str) -> AsyncClient:
        client = self._clients.get(endpoint)
        if client is None:
            client = self._client_factory(endpoint)
            self._clients[endpoint] = client
        return client

    async def _call(self, operation: str, fn: Callable[[AsyncClient], Awaitable[T]]) -> T:
        return await attempt_with_fallback(
            self._policy,
            lambda endpoint: fn(self._client(endpoint)),
            sleep=self._sleep,
            operation=operation,
        )

    async def close(self) -> None:
        for endpoint, client in self._clients.items():
            try:
                await client.close()
            except (httpx.HTTPError, OSError) as e:
                logger.warning("Failed to close RPC client %s: %s", endpoint, e)
        self._clients.clear()

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._tx_cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_latest_blockhash(self) -> tuple[Hash, int]:
        """Return (blockhash, last_valid_block_height)."""

        async def fetch(client: AsyncClient) -> tuple[Hash, int]:
            resp = await client.get_latest_blockhash(commitment=self._commitment)
            return resp.value.blockhash, resp.value.last_valid_block_height

        return await self._call("get_latest_blockhash", fetch)

    async def get_balance(self, address: str) -> int:
        """Balance of ``address`` in lamports."""
        pubkey = Pubkey.from_string(address)

        async def fetch(client: AsyncClient) -> int:
            resp = await client.get_balance(pubkey, commitment=self._commitment)
            return int(resp.value)

        return await self._call("get_balance", fetch)

    async def get_parsed_transaction(self, signature: str) -> dict[str, Any] | None:
        """Parsed transaction as a JSON-compatible dict, or None if unknown."""
        cache_key = f"{self._cache_prefix}tx:{signature}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return json.loads(cached)

        sig = Signature.from_string(signature)

        async def fetch(client: AsyncClient) -> str | None:
            resp = await client.get_transaction(
                sig,
                encoding="jsonParsed",
                commitment=self._commitment,
                max_supported_transaction_version=0,
            )
            return resp.value.to_json() if resp.value is not None else None

        raw = await self._call("get_transaction", fetch)
        if raw is None:
            return None
        await self._set_cached(cache_key, raw)
        return json.loads(raw)

    async def _signature_status(self, signature: str, *, search_history: bool = False) -> Any:
        sig = Signature.from_string(signature)

        async def fetch(client: AsyncClient) -> Any:
            resp = await client.get_signature_statuses([sig], search_transaction_history=search_history)
            return resp.value[0] if resp.value else None

        return await self._call("get_signature_statuses", fetch)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_transaction(self, tx: Transaction) -> str:
        """Broadcast ``tx``; every retry resends the identical signed bytes."""
        payload = bytes(tx)
        signature = str(tx.signatures[0])
        opts = TxOpts(skip_preflight=False, preflight_commitment=self._commitment)

        async def send(client: AsyncClient) -> str:
            try:
                resp = await client.send_raw_transaction(payload, opts=opts)
            except RPCException as e:
                if ALREADY_PROCESSED_MARKER in str(e):
                    logger.info("Transaction %s was already processed", signature)
                    return signature
                raise
            return str(resp.value)

        return await self._call("send_transaction", send)

    async def confirm_signature(
        self,
        signature: str,
        *,
        timeout_seconds: float = DEFAULT_CONFIRM_TIMEOUT_SECONDS,
        poll_seconds: float = DEFAULT_CONFIRM_POLL_SECONDS,
    ) -> None:
        """Wait until ``signature`` reaches confirmed (or finalized).

        Raises:
            TransactionFailedError: If the transaction executed with an error.
            ConfirmationTimeoutError: If it is not confirmed within the timeout.
            RPCError: If status lookups keep failing.
        """
        deadline = self._clock() + timeout_seconds
        while True:
            status = await self._signature_status(signature)
            if status is not None:
                if status.err is not None:
                    raise TransactionFailedError(f"Transaction {signature} failed: {status.err}")
                if status.confirmation_status in (
                    TransactionConfirmationStatus.Confirmed,
                    TransactionConfirmationStatus.Finalized,
                ):
                    return
            if self._clock() >= deadline:
                raise ConfirmationTimeoutError(f"Transaction {signature} not confirmed after {timeout_seconds}s")
            await self._sleep(poll_seconds)

    async def send_transfer(
        self,
        keypair: Keypair,
        destination: str,
        lamports: int,
        *,
        on_signed: Callable[[str], Awaitable[None]] | None = None,
        confirm_timeout_seconds: float = DEFAULT_CONFIRM_TIMEOUT_SECONDS,
    ) -> TransferReceipt:
        """Build, sign once, send and confirm a SOL transfer.

        ``on_signed`` receives the signature before anything is broadcast, so
        the caller can persist it and reconcile after a crash.
        """
        blockhash, _ = await self.get_latest_blockhash()
        tx = build_transfer(keypair, destination, lamports, blockhash)
        signature = str(tx.signatures[0])
        if on_signed is not None:
            await on_signed(signature)

        await self.send_transaction(tx)
        await self.confirm_signature(signature, timeout_seconds=confirm_timeout_seconds)
        logger.info("Transferred %d lamports to %s: %s", lamports, destination, signature)
        return TransferReceipt(
            signature=signature,
            source=str(keypair.pubkey()),
            destination=destination,
            lamports=lamports,
        )

    async def signature_state(self, signature: str) -> str:
        """Classify ``signature`` as confirmed, failed, pending or missing.

        Missing means no node remembers it; once its blockhash has expired a
        missing transaction can no longer land.

        Raises:
            RPCError: If status lookups keep failing.
        """
        try:
            Signature.from_string(signature)
        except ValueError:
            return SIGNATURE_MISSING
        status = await self._signature_status(signature, search_history=True)
        if status is None:
            return SIGNATURE_MISSING
        if status.err is not None:
            return SIGNATURE_FAILED
        if status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        ):
            return SIGNATURE_CONFIRMED
        return SIGNATURE_PENDING

    async def verify_transaction(self, signature: str) -> bool:
        """True if ``signature`` is confirmed without error. Never raises."""
        try:
            return await self.signature_state(signature) == SIGNATURE_CONFIRMED
        except RPCError as e:
            logger.warning("Could not verify %s: %s", signature, e)
            return False


def create_rpc_from_settings(
    endpoints: Sequence[str],
    *,
    max_attempts: int,
    backoff_seconds: float,
    commitment: str,
    redis: Redis | None = None,
    tx_cache_ttl_seconds: int = DEFAULT_TX_CACHE_TTL_SECONDS,
) -> SolanaRpc:
    policy = RetryPolicy(
        endpoints=tuple(endpoints),
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
    )
    return SolanaRpc(policy, commitment=commitment, redis=redis, tx_cache_ttl_seconds=tx_cache_ttl_seconds)
