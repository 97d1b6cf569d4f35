"""Signed user actions against the exchange's stored procedures.

Every action runs the same checks, in order: emergency halt, field
validation, ``issued_at`` freshness, message match, signature, optional
single-use nonce. Only then is the stored procedure called.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from kol_wager_engine.chain.rpc import ChainClientError
from kol_wager_engine.config import LAMPORTS_PER_SOL
from kol_wager_engine.exchange.signing import (
    DEFAULT_MAX_SKEW_SECONDS,
    InvalidRequestError,
    SignatureRejectedError,
    SignedActionError,
    build_message,
    format_number,
    parse_issued_at,
    require_fresh_issued_at,
    verify_signature,
)
from kol_wager_engine.settlement.safety import EmergencyHalt
from kol_wager_engine.storage.database import DatabaseManager
from kol_wager_engine.storage.procedures import ProcedureError, ProcedureGateway

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from kol_wager_engine.chain.rpc import SolanaRpc

logger = logging.getLogger(__name__)

ORDER_TITLE = "NoCryCasino PM Order v1"
CANCEL_TITLE = "NoCryCasino PM Cancel v1"
CLAIM_TITLE = "NoCryCasino PM Claim v1"
DEPOSIT_TITLE = "NoCryCasino PM Deposit Credit v1"

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
MIN_IDEMPOTENCY_KEY_LENGTH = 8
MIN_NONCE_LENGTH = 8
MIN_TX_SIG_LENGTH = 20


class ActionHaltedError(SignedActionError):
    status = 503


class NonceReusedError(SignedActionError):
    status = 409


class ActionBackendError(SignedActionError):
    status = 500


@dataclass(frozen=True)
class PlaceOrderRequest:
    outcome_id: str
    wallet_address: str
    side: str
    price: Decimal
    quantity: Decimal
    idempotency_key: str
    issued_at: str
    signature_base64: str
    tif: str = "GTC"
    nonce: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class CancelOrderRequest:
    order_id: str
    wallet_address: str
    idempotency_key: str
    issued_at: str
    signature_base64: str
    nonce: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class ClaimSettlementRequest:
    outcome_id: str
    wallet_address: str
    idempotency_key: str
    issued_at: str
    signature_base64: str
    nonce: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class CreditDepositRequest:
    wallet_address: str
    tx_sig: str
    min_amount_sol: Decimal
    round_scope: str
    issued_at: str
    signature_base64: str
    mint: str = "SOL"
    nonce: str | None = None
    message: str | None = None


def _require(value: str | None, name: str, *, min_length: int = 1) -> str:
    text = (value or "").strip()
    if len(text) < min_length:
        raise InvalidRequestError(f"Missing {name}")
    return text


def _with_nonce(fields: dict[str, str], nonce: str, issued_at: str) -> dict[str, str]:
    if nonce:
        fields["nonce"] = nonce
    fields["issued_at"] = issued_at
    return fields


def _instructions(tx: dict[str, Any]) -> Iterable[dict[str, Any]]:
    # get_transaction JSON nests the transaction once more than the raw RPC response.
    inner = tx.get("transaction") or {}
    if isinstance(inner.get("transaction"), dict):
        inner = inner["transaction"]
    message = inner.get("message") or {}
    instructions = message.get("instructions")
    return [ix for ix in instructions if isinstance(ix, dict)] if isinstance(instructions, list) else []


def _meta(tx: dict[str, Any]) -> dict[str, Any]:
    meta = tx.get("meta")
    if not isinstance(meta, dict):
        meta = (tx.get("transaction") or {}).get("meta")
    return meta if isinstance(meta, dict) else {}


def verify_sol_deposit(
    tx: dict[str, Any] | None,
    *,
    from_wallet: str,
    allowed_escrows: Sequence[str],
    min_lamports: int,
) -> int:
    """Sum of system transfers from ``from_wallet`` to an allowed escrow.

    Raises:
        InvalidRequestError: If the transaction is missing, failed or too small.
    """
    if tx is None:
        raise InvalidRequestError("Deposit transaction not found")
    if _meta(tx).get("err") is not None:
        raise InvalidRequestError("Deposit transaction failed")

    matched = 0
    for ix in _instructions(tx):
        if ix.get("programId") != SYSTEM_PROGRAM_ID:
            continue
        parsed = ix.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        info = parsed.get("info") or {}
        lamports = info.get("lamports")
        if (
            info.get("source") == from_wallet
            and info.get("destination") in allowed_escrows
            and isinstance(lamports, int)
            and lamports > 0
        ):
            matched += lamports
    if matched < min_lamports:
        raise InvalidRequestError("Deposit amount too low")
    return matched


class SignedActionService:
    """Verifies signed user actions and forwards them to stored procedures.

    Example:
        ```python
        service = SignedActionService(db, halt=EmergencyHalt(db), require_nonce=True)
        result = await service.place_order(request)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        halt: EmergencyHalt | None = None,
        rpc: SolanaRpc | None = None,
        escrow_addresses: Sequence[str] = (),
        require_nonce: bool = False,
        max_skew_seconds: float = DEFAULT_MAX_SKEW_SECONDS,
        gateway_factory: Callable[[AsyncSession], Any] = ProcedureGateway,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._db = db
        self._halt = halt
        self._rpc = rpc
        self._escrow_addresses = list(escrow_addresses)
        self._require_nonce = require_nonce
        self._max_skew = max_skew_seconds
        self._gateway_factory = gateway_factory
        self._now = now

    async def _call(self, name: str, **params: Any) -> dict[str, Any]:
        try:
            async with self._db.get_async_session() as session:
                result: dict[str, Any] = await self._gateway_factory(session).call(name, **params)
                return result
        except ProcedureError as e:
            raise ActionBackendError(str(e)) from e

    async def _ensure_not_halted(self) -> None:
        if self._halt is not None and await self._halt.is_active():
            raise ActionHaltedError("Emergency halt active")

    def _nonce(self, nonce: str | None) -> str:
        text = (nonce or "").strip()
        if self._require_nonce and not text:
            raise InvalidRequestError("Missing nonce")
        if text and len(text) < MIN_NONCE_LENGTH:
            raise InvalidRequestError("Invalid nonce")
        return text

    async def _authorize(
        self,
        title: str,
        fields: dict[str, str],
        *,
        wallet_address: str,
        signature_base64: str,
        issued_at: str,
        nonce: str,
        action: str,
        message: str | None,
    ) -> None:
        require_fresh_issued_at(issued_at, max_skew_seconds=self._max_skew, now=self._now())
        expected = build_message(title, fields)
        if message and message != expected:
            raise InvalidRequestError("Message mismatch")
        if not verify_signature(expected, signature_base64, wallet_address):
            raise SignatureRejectedError("Invalid signature")
        if nonce:
            await self._consume_nonce(wallet_address, nonce, action=action, issued_at=issued_at)

    async def _consume_nonce(self, wallet_address: str, nonce: str, *, action: str, issued_at: str) -> None:
        result = await self._call(
            "pm_use_nonce",
            p_user_pubkey=wallet_address,
            p_nonce=nonce,
            p_action=action,
            p_issued_at=parse_issued_at(issued_at).isoformat(),
        )
        if not result.get("ok"):
            error = result.get("error")
            raise NonceReusedError(error if isinstance(error, str) and error else "NONCE_REUSED")

    async def place_order(self, request: PlaceOrderRequest) -> dict[str, Any]:
        await self._ensure_not_halted()
        outcome_id = _require(request.outcome_id, "outcome_id")
        wallet = _require(request.wallet_address, "wallet_address")
        if request.side not in ("BUY", "SELL"):
            raise InvalidRequestError("Invalid side")
        if not 0 < request.price < 1:
            raise InvalidRequestError("Invalid price")
        if request.quantity <= 0:
            raise InvalidRequestError("Invalid quantity")
        tif = "IOC" if request.tif == "IOC" else "GTC"
        key = _require(request.idempotency_key, "idempotency_key", min_length=MIN_IDEMPOTENCY_KEY_LENGTH)
        issued_at = _require(request.issued_at, "issued_at")
        signature = _require(request.signature_base64, "signature_base64")
        nonce = self._nonce(request.nonce)

        fields = {
            "outcome_id": outcome_id,
            "wallet_address": wallet,
            "side": request.side,
            "price": format_number(request.price),
            "quantity": format_number(request.quantity),
            "tif": tif,
            "idempotency_key": key,
        }
        await self._authorize(
            ORDER_TITLE,
            _with_nonce(fields, nonce, issued_at),
            wallet_address=wallet,
            signature_base64=signature,
            issued_at=issued_at,
            nonce=nonce,
            action="pm_place_order",
            message=request.message,
        )
        return await self._call(
            "pm_place_order",
            p_outcome_id=outcome_id,
            p_user_pubkey=wallet,
            p_side=request.side,
            p_price=request.price,
            p_quantity=request.quantity,
            p_tif=tif,
            p_idempotency_key=key,
        )

    async def cancel_order(self, request: CancelOrderRequest) -> dict[str, Any]:
        await self._ensure_not_halted()
        order_id = _require(request.order_id, "order_id")
        wallet = _require(request.wallet_address, "wallet_address")
        key = _require(request.idempotency_key, "idempotency_key", min_length=MIN_IDEMPOTENCY_KEY_LENGTH)
        issued_at = _require(request.issued_at, "issued_at")
        signature = _require(request.signature_base64, "signature_base64")
        nonce = self._nonce(request.nonce)

        fields = {"order_id": order_id, "wallet_address": wallet, "idempotency_key": key}
        await self._authorize(
            CANCEL_TITLE,
            _with_nonce(fields, nonce, issued_at),
            wallet_address=wallet,
            signature_base64=signature,
            issued_at=issued_at,
            nonce=nonce,
            action="pm_cancel_order",
            message=request.message,
        )
        return await self._call(
            "pm_cancel_order",
            p_order_id=order_id,
            p_user_pubkey=wallet,
            p_idempotency_key=key,
        )

    async def claim_settlement(self, request: ClaimSettlementRequest) -> dict[str, Any]:
        await self._ensure_not_halted()
        outcome_id = _require(request.outcome_id, "outcome_id")
        wallet = _require(request.wallet_address, "wallet_address")
        key = _require(request.idempotency_key, "idempotency_key", min_length=MIN_IDEMPOTENCY_KEY_LENGTH)
        issued_at = _require(request.issued_at, "issued_at")
        signature = _require(request.signature_base64, "signature_base64")
        nonce = self._nonce(request.nonce)

        fields = {"outcome_id": outcome_id, "wallet_address": wallet, "idempotency_key": key}
        await self._authorize(
            CLAIM_TITLE,
            _with_nonce(fields, nonce, issued_at),
            wallet_address=wallet,
            signature_base64=signature,
            issued_at=issued_at,
            nonce=nonce,
            action="pm_claim",
            message=request.message,
        )
        return await self._call(
            "pm_claim_settlement",
            p_user_pubkey=wallet,
            p_outcome_id=outcome_id,
            p_idempotency_key=key,
        )

    async def credit_deposit(self, request: CreditDepositRequest) -> dict[str, Any]:
        """Credit an on-chain SOL deposit to the user's exchange balance."""
        await self._ensure_not_halted()
        wallet = _require(request.wallet_address, "wallet_address")
        tx_sig = _require(request.tx_sig, "tx_sig", min_length=MIN_TX_SIG_LENGTH)
        round_scope = _require(request.round_scope, "round_scope")
        issued_at = _require(request.issued_at, "issued_at")
        signature = _require(request.signature_base64, "signature_base64")
        if request.min_amount_sol <= 0:
            raise InvalidRequestError("Invalid min_amount_sol")
        nonce = self._nonce(request.nonce)
        mint = request.mint or "SOL"

        fields = {
            "wallet_address": wallet,
            "tx_sig": tx_sig,
            "min_amount_sol": format_number(request.min_amount_sol),
            "mint": mint,
            "round_scope": round_scope,
        }
        await self._authorize(
            DEPOSIT_TITLE,
            _with_nonce(fields, nonce, issued_at),
            wallet_address=wallet,
            signature_base64=signature,
            issued_at=issued_at,
            nonce=nonce,
            action="pm_deposit_credit",
            message=request.message,
        )

        if self._rpc is None or not self._escrow_addresses:
            raise ActionBackendError("Deposit verification is not configured")
        try:
            tx = await self._rpc.get_parsed_transaction(tx_sig)
        except ChainClientError as e:
            raise ActionBackendError(str(e)) from e
        lamports = verify_sol_deposit(
            tx,
            from_wallet=wallet,
            allowed_escrows=self._escrow_addresses,
            min_lamports=int(request.min_amount_sol * LAMPORTS_PER_SOL),
        )
        amount_sol = Decimal(lamports) / LAMPORTS_PER_SOL
        result = await self._call(
            "pm_credit_deposit",
            p_user_pubkey=wallet,
            p_amount=amount_sol,
            p_mint=mint,
            p_tx_sig=tx_sig,
            p_round_scope=round_scope,
        )
        logger.info("Credited %s SOL deposit %s to %s", amount_sol, tx_sig, wallet)
        return {**result, "credited_amount_sol": str(amount_sol)}
