"""Tests for signed exchange actions."""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.keypair import Keypair

from kol_wager_engine.chain.rpc import RPCError
from kol_wager_engine.exchange.actions import (
    CANCEL_TITLE,
    CLAIM_TITLE,
    DEPOSIT_TITLE,
    ORDER_TITLE,
    SYSTEM_PROGRAM_ID,
    ActionBackendError,
    ActionHaltedError,
    CancelOrderRequest,
    ClaimSettlementRequest,
    CreditDepositRequest,
    NonceReusedError,
    PlaceOrderRequest,
    SignedActionService,
    verify_sol_deposit,
)
from kol_wager_engine.exchange.signing import InvalidRequestError, SignatureRejectedError, build_message
from kol_wager_engine.settlement.safety import EmergencyHalt
from kol_wager_engine.storage.database import DatabaseManager
from kol_wager_engine.storage.procedures import ProcedureError

NOW = datetime(2026, 10, 19, 12, tzinfo=UTC)
ISSUED_AT = NOW.isoformat()
ESCROW = "Escrow1111111111111111111111111111111111111"
TX_SIG = "5" * 64


class FakeProcedures:
    """Stands in for the stored procedure gateway; records every call."""

    def __init__(self, responses: dict[str, dict[str, Any] | Exception] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, session: Any) -> FakeProcedures:
        return self

    async def call(self, name: str, **params: Any) -> dict[str, Any]:
        self.calls.append((name, params))
        response = self.responses.get(name, {"ok": True})
        if isinstance(response, Exception):
            raise response
        return response

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


def sign(keypair: Keypair, message: str) -> str:
    return base64.b64encode(bytes(keypair.sign_message(message.encode("utf-8")))).decode()


def transfer_ix(source: str, destination: str, lamports: int) -> dict[str, Any]:
    return {
        "programId": SYSTEM_PROGRAM_ID,
        "parsed": {"type": "transfer", "info": {"source": source, "destination": destination, "lamports": lamports}},
    }


def create_parsed_tx(*instructions: dict[str, Any], err: Any = None, nested: bool = False) -> dict[str, Any]:
    message = {"instructions": list(instructions)}
    if nested:
        return {"transaction": {"transaction": {"message": message}, "meta": {"err": err}}}
    return {"transaction": {"message": message}, "meta": {"err": err}}


@pytest.fixture
def keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def wallet(keypair: Keypair) -> str:
    return str(keypair.pubkey())


@pytest.fixture
def procedures() -> FakeProcedures:
    return FakeProcedures()


@pytest.fixture
def service(db: DatabaseManager, procedures: FakeProcedures) -> SignedActionService:
    return SignedActionService(db, halt=EmergencyHalt(db), gateway_factory=procedures, now=lambda: NOW)


def order_message(wallet: str, *, nonce: str | None = None, issued_at: str = ISSUED_AT) -> str:
    fields = {
        "outcome_id": "out-1",
        "wallet_address": wallet,
        "side": "BUY",
        "price": "0.5",
        "quantity": "10",
        "tif": "GTC",
        "idempotency_key": "order-key-1",
    }
    if nonce:
        fields["nonce"] = nonce
    fields["issued_at"] = issued_at
    return build_message(ORDER_TITLE, fields)


def create_order(keypair: Keypair, **overrides: Any) -> PlaceOrderRequest:
    wallet = str(keypair.pubkey())
    nonce = overrides.get("nonce")
    issued_at = overrides.get("issued_at", ISSUED_AT)
    values: dict[str, Any] = {
        "outcome_id": "out-1",
        "wallet_address": wallet,
        "side": "BUY",
        "price": Decimal("0.50"),
        "quantity": Decimal("10"),
        "idempotency_key": "order-key-1",
        "issued_at": issued_at,
        "signature_base64": sign(keypair, order_message(wallet, nonce=nonce, issued_at=issued_at)),
    }
    values.update(overrides)
    return PlaceOrderRequest(**values)


# ============================================================================
# Place order
# ============================================================================


class TestPlaceOrder:
    @pytest.mark.asyncio
    async def test_forwards_verified_order(
        self, service: SignedActionService, procedures: FakeProcedures, keypair: Keypair, wallet: str
    ) -> None:
        result = await service.place_order(create_order(keypair))

        assert result == {"ok": True}
        ((name, params),) = procedures.calls
        assert name == "pm_place_order"
        assert params == {
            "p_outcome_id": "out-1",
            "p_user_pubkey": wallet,
            "p_side": "BUY",
            "p_price": Decimal("0.50"),
            "p_quantity": Decimal("10"),
            "p_tif": "GTC",
            "p_idempotency_key": "order-key-1",
        }

    @pytest.mark.asyncio
    async def test_matching_message_is_accepted(
        self, service: SignedActionService, keypair: Keypair, wallet: str
    ) -> None:
        await service.place_order(create_order(keypair, message=order_message(wallet)))

    @pytest.mark.asyncio
    async def test_message_mismatch(
        self, service: SignedActionService, procedures: FakeProcedures, keypair: Keypair
    ) -> None:
        with pytest.raises(InvalidRequestError, match="Message mismatch"):
            await service.place_order(create_order(keypair, message="something else"))
        assert procedures.calls == []

    @pytest.mark.asyncio
    async def test_signature_from_another_wallet(
        self, service: SignedActionService, procedures: FakeProcedures, keypair: Keypair
    ) -> None:
        request = create_order(keypair, wallet_address=str(Keypair().pubkey()))

        with pytest.raises(SignatureRejectedError) as exc_info:
            await service.place_order(request)
        assert exc_info.value.status == 401
        assert procedures.calls == []

    @pytest.mark.asyncio
    async def test_signed_fields_cannot_change(self, service: SignedActionService, keypair: Keypair) -> None:
        with pytest.raises(SignatureRejectedError):
            await service.place_order(create_order(keypair, quantity=Decimal("1000")))

    @pytest.mark.asyncio
    async def test_stale_issued_at(self, service: SignedActionService, keypair: Keypair) -> None:
        stale = (NOW - timedelta(minutes=10)).isoformat()

        with pytest.raises(InvalidRequestError, match="expired"):
            await service.place_order(create_order(keypair, issued_at=stale))

    @pytest.mark.parametrize(
        ("overrides", "error"),
        [
            ({"outcome_id": " "}, "Missing outcome_id"),
            ({"side": "HOLD"}, "Invalid side"),
            ({"price": Decimal("1")}, "Invalid price"),
            ({"price": Decimal("0")}, "Invalid price"),
            ({"quantity": Decimal("0")}, "Invalid quantity"),
            ({"idempotency_key": "short"}, "Missing idempotency_key"),
            ({"signature_base64": ""}, "Missing signature_base64"),
        ],
    )
    @pytest.mark.asyncio
    async def test_field_validation(
        self, service: SignedActionService, keypair: Keypair, overrides: dict[str, Any], error: str
    ) -> None:
        with pytest.raises(InvalidRequestError, match=error):
            await service.place_order(create_order(keypair, **overrides))

    @pytest.mark.asyncio
    async def test_halted(
        self, db: DatabaseManager, service: SignedActionService, procedures: FakeProcedures, keypair: Keypair
    ) -> None:
        await EmergencyHalt(db).activate("incident")

        with pytest.raises(ActionHaltedError) as exc_info:
            await service.place_order(create_order(keypair))
        assert exc_info.value.status == 503
        assert procedures.calls == []

    @pytest.mark.asyncio
    async def test_procedure_error_is_backend_error(self, db: DatabaseManager, keypair: Keypair) -> None:
        procedures = FakeProcedures({"pm_place_order": ProcedureError("boom")})
        service = SignedActionService(db, gateway_factory=procedures, now=lambda: NOW)

        with pytest.raises(ActionBackendError, match="boom"):
            await service.place_order(create_order(keypair))


# ============================================================================
# Nonces
# ============================================================================


class TestNonce:
    @pytest.mark.asyncio
    async def test_required_when_configured(self, db: DatabaseManager, keypair: Keypair) -> None:
        service = SignedActionService(db, require_nonce=True, gateway_factory=FakeProcedures(), now=lambda: NOW)

        with pytest.raises(InvalidRequestError, match="Missing nonce"):
            await service.place_order(create_order(keypair))

    @pytest.mark.asyncio
    async def test_too_short(self, service: SignedActionService, keypair: Keypair) -> None:
        with pytest.raises(InvalidRequestError, match="Invalid nonce"):
            await service.place_order(create_order(keypair, nonce="abc"))

    @pytest.mark.asyncio
    async def test_consumed_before_action(
        self, service: SignedActionService, procedures: FakeProcedures, keypair: Keypair, wallet: str
    ) -> None:
        await service.place_order(create_order(keypair, nonce="nonce-0001"))

        assert procedures.names() == ["pm_use_nonce", "pm_place_order"]
        assert procedures.calls[0][1] == {
            "p_user_pubkey": wallet,
            "p_nonce": "nonce-0001",
            "p_action": "pm_place_order",
            "p_issued_at": ISSUED_AT,
        }

    @pytest.mark.asyncio
    async def test_reused(self, db: DatabaseManager, keypair: Keypair) -> None:
        procedures = FakeProcedures({"pm_use_nonce": {"ok": False, "error": "NONCE_REUSED"}})
        service = SignedActionService(db, gateway_factory=procedures, now=lambda: NOW)

        with pytest.raises(NonceReusedError, match="NONCE_REUSED") as exc_info:
            await service.place_order(create_order(keypair, nonce="nonce-0001"))
        assert exc_info.value.status == 409
        assert procedures.names() == ["pm_use_nonce"]


# ============================================================================
# Cancel and claim
# ============================================================================


class TestCancelAndClaim:
    @pytest.mark.asyncio
    async def test_cancel(
        self, service: SignedActionService, procedures: FakeProcedures, keypair: Keypair, wallet: str
    ) -> None:
        message = build_message(
            CANCEL_TITLE,
            {"order_id": "ord-1", "wallet_address": wallet, "idempotency_key": "cancel-key", "issued_at": ISSUED_AT},
        )
        request = CancelOrderRequest(
            order_id="ord-1",
            wallet_address=wallet,
            idempotency_key="cancel-key",
            issued_at=ISSUED_AT,
            signature_base64=sign(keypair, message),
        )

        await service.cancel_order(request)

        assert procedures.calls == [
            ("pm_cancel_order", {"p_order_id": "ord-1", "p_user_pubkey": wallet, "p_idempotency_key": "cancel-key"})
        ]

    @pytest.mark.asyncio
    async def test_claim_uses_claim_action_for_nonce(
        self, service: SignedActionService, procedures: FakeProcedures, keypair: Keypair, wallet: str
    ) -> None:
        message = build_message(
            CLAIM_TITLE,
            {
                "outcome_id": "out-1",
                "wallet_address": wallet,
                "idempotency_key": "claim-key",
                "nonce": "nonce-0002",
                "issued_at": ISSUED_AT,
            },
        )
        request = ClaimSettlementRequest(
            outcome_id="out-1",
            wallet_address=wallet,
            idempotency_key="claim-key",
            issued_at=ISSUED_AT,
            signature_base64=sign(keypair, message),
            nonce="nonce-0002",
        )

        await service.claim_settlement(request)

        assert procedures.names() == ["pm_use_nonce", "pm_claim_settlement"]
        assert procedures.calls[0][1]["p_action"] == "pm_claim"


# ============================================================================
# Deposits
# ============================================================================


class TestVerifySolDeposit:
    def test_sums_matching_transfers(self) -> None:
        tx = create_parsed_tx(
            transfer_ix("User", ESCROW, 300),
            transfer_ix("User", ESCROW, 200),
            transfer_ix("User", "Elsewhere", 1_000),
            transfer_ix("Other", ESCROW, 1_000),
            {"programId": "Other111", "parsed": {"type": "transfer", "info": {}}},
        )

        assert verify_sol_deposit(tx, from_wallet="User", allowed_escrows=[ESCROW], min_lamports=500) == 500

    def test_nested_shape(self) -> None:
        tx = create_parsed_tx(transfer_ix("User", ESCROW, 700), nested=True)

        assert verify_sol_deposit(tx, from_wallet="User", allowed_escrows=[ESCROW], min_lamports=1) == 700

    @pytest.mark.parametrize(
        ("tx", "error"),
        [
            (None, "not found"),
            (create_parsed_tx(transfer_ix("User", ESCROW, 700), err={"InstructionError": [0, "x"]}), "failed"),
            (create_parsed_tx(transfer_ix("User", ESCROW, 99)), "too low"),
            (create_parsed_tx(), "too low"),
        ],
    )
    def test_rejected(self, tx: dict[str, Any] | None, error: str) -> None:
        with pytest.raises(InvalidRequestError, match=error):
            verify_sol_deposit(tx, from_wallet="User", allowed_escrows=[ESCROW], min_lamports=100)


class TestCreditDeposit:
    def create_request(self, keypair: Keypair, min_amount_sol: Decimal = Decimal("0.5")) -> CreditDepositRequest:
        wallet = str(keypair.pubkey())
        message = build_message(
            DEPOSIT_TITLE,
            {
                "wallet_address": wallet,
                "tx_sig": TX_SIG,
                "min_amount_sol": str(min_amount_sol.normalize()),
                "mint": "SOL",
                "round_scope": "round-1",
                "issued_at": ISSUED_AT,
            },
        )
        return CreditDepositRequest(
            wallet_address=wallet,
            tx_sig=TX_SIG,
            min_amount_sol=min_amount_sol,
            round_scope="round-1",
            issued_at=ISSUED_AT,
            signature_base64=sign(keypair, message),
        )

    def create_service(self, db: DatabaseManager, procedures: FakeProcedures, rpc: Any) -> SignedActionService:
        return SignedActionService(
            db, rpc=rpc, escrow_addresses=[ESCROW], gateway_factory=procedures, now=lambda: NOW
        )

    @pytest.mark.asyncio
    async def test_credits_verified_amount(
        self, db: DatabaseManager, procedures: FakeProcedures, keypair: Keypair, wallet: str
    ) -> None:
        rpc = MagicMock()
        rpc.get_parsed_transaction = AsyncMock(
            return_value=create_parsed_tx(transfer_ix(wallet, ESCROW, 750_000_000), nested=True)
        )

        result = await self.create_service(db, procedures, rpc).credit_deposit(self.create_request(keypair))

        assert result == {"ok": True, "credited_amount_sol": "0.75"}
        rpc.get_parsed_transaction.assert_awaited_once_with(TX_SIG)
        ((name, params),) = procedures.calls
        assert name == "pm_credit_deposit"
        assert params == {
            "p_user_pubkey": wallet,
            "p_amount": Decimal("0.75"),
            "p_mint": "SOL",
            "p_tx_sig": TX_SIG,
            "p_round_scope": "round-1",
        }

    @pytest.mark.asyncio
    async def test_below_minimum_is_not_credited(
        self, db: DatabaseManager, procedures: FakeProcedures, keypair: Keypair, wallet: str
    ) -> None:
        rpc = MagicMock()
        rpc.get_parsed_transaction = AsyncMock(return_value=create_parsed_tx(transfer_ix(wallet, ESCROW, 1_000)))

        with pytest.raises(InvalidRequestError, match="too low"):
            await self.create_service(db, procedures, rpc).credit_deposit(self.create_request(keypair))
        assert procedures.calls == []

    @pytest.mark.asyncio
    async def test_rpc_failure_is_backend_error(
        self, db: DatabaseManager, procedures: FakeProcedures, keypair: Keypair
    ) -> None:
        rpc = MagicMock()
        rpc.get_parsed_transaction = AsyncMock(side_effect=RPCError("all endpoints down"))

        with pytest.raises(ActionBackendError, match="endpoints down"):
            await self.create_service(db, procedures, rpc).credit_deposit(self.create_request(keypair))

    @pytest.mark.asyncio
    async def test_not_configured(self, service: SignedActionService, keypair: Keypair) -> None:
        with pytest.raises(ActionBackendError, match="not configured"):
            await service.credit_deposit(self.create_request(keypair))

    @pytest.mark.asyncio
    async def test_invalid_amount(self, service: SignedActionService, keypair: Keypair) -> None:
        with pytest.raises(InvalidRequestError, match="min_amount_sol"):
            await service.credit_deposit(self.create_request(keypair, Decimal("0")))
