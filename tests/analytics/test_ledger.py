"""Tests for the realized PnL ledger."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from kol_wager_engine.analytics.ledger import (
    InventoryState,
    TradeLeg,
    compute_native_value_delta,
    compute_realized_pnl,
    extract_trade_leg,
)
from kol_wager_engine.ingestor.models import TransactionEvent

WALLET = "KolWallet1111111111111111111111111111111111"
TOKEN = "TokenTmint1111111111111111111111111111111111"
USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
WSOL = "So11111111111111111111111111111111111111112"
T0 = datetime(2026, 10, 18, tzinfo=UTC)


def create_leg(
    side: str,
    quantity: str | int,
    value: int,
    *,
    token: str = TOKEN,
    offset_minutes: int = 0,
) -> TradeLeg:
    return TradeLeg(
        token_id=token,
        side=side,  # type: ignore[arg-type]
        token_quantity=Decimal(str(quantity)),
        native_value_delta=value,
        timestamp=T0 + timedelta(minutes=offset_minutes),
    )


class TestTradeLeg:
    def test_rejects_non_positive_quantity(self) -> None:
        with pytest.raises(ValueError):
            create_leg("buy", 0, -1)

    def test_rejects_unknown_side(self) -> None:
        with pytest.raises(ValueError):
            create_leg("hold", 1, -1)


class TestInventoryState:
    def test_sell_without_inventory_has_no_profit(self) -> None:
        state = InventoryState()
        assert state.apply_sell(Decimal(10), 500) is None
        assert (state.quantity, state.cost_basis) == (0, 0)

    def test_sell_more_than_held_caps_at_inventory(self) -> None:
        state = InventoryState()
        state.apply_buy(Decimal(10), 1_000)
        profit = state.apply_sell(Decimal(25), 3_000)
        assert profit == 2_000
        assert (state.quantity, state.cost_basis) == (0, 0)

    def test_zero_cost_buy_leaves_no_basis(self) -> None:
        state = InventoryState()
        state.apply_buy(Decimal(10), 0)
        assert (state.quantity, state.cost_basis) == (0, 0)

    def test_cost_removed_rounds_half_up(self) -> None:
        state = InventoryState()
        state.apply_buy(Decimal(3), 5)
        # 5 * 1/3 = 1.67 -> 2
        assert state.apply_sell(Decimal(1), 10) == 8
        assert state.cost_basis == 3


class TestComputeRealizedPnl:
    def test_buy_then_partial_sell(self) -> None:
        result = compute_realized_pnl(
            [
                create_leg("buy", 100, -10_000_000),
                create_leg("sell", 60, 7_200_000, offset_minutes=5),
            ]
        )

        assert result.realized_lamports == 1_200_000
        inventory = result.inventories[TOKEN]
        assert inventory.quantity == Decimal(40)
        assert inventory.cost_basis == 4_000_000
        assert result.wins == 1
        assert result.losses == 0
        assert result.tx_count == 2
        assert result.volume_lamports == 17_200_000

    def test_sell_with_no_prior_inventory(self) -> None:
        result = compute_realized_pnl([create_leg("sell", 50, 1_000_000)])

        assert result.realized_lamports == 0
        inventory = result.inventories[TOKEN]
        assert (inventory.quantity, inventory.cost_basis) == (0, 0)
        assert result.wins == result.losses == 0

    def test_legs_replayed_in_time_order(self) -> None:
        result = compute_realized_pnl(
            [
                create_leg("sell", 10, 2_000, offset_minutes=10),
                create_leg("buy", 10, -1_000, offset_minutes=0),
            ]
        )
        assert result.realized_lamports == 1_000

    def test_full_liquidation_equals_proceeds_minus_cost(self) -> None:
        legs = [
            create_leg("buy", 7, -3_333_333, offset_minutes=0),
            create_leg("buy", 5, -2_000_001, offset_minutes=1),
            create_leg("sell", 4, 1_500_000, offset_minutes=2),
            create_leg("sell", 8, 5_100_000, offset_minutes=3),
        ]

        result = compute_realized_pnl(legs)

        assert result.realized_lamports == (1_500_000 + 5_100_000) - (3_333_333 + 2_000_001)
        assert result.inventories[TOKEN].quantity == 0

    def test_wins_and_losses_counted_per_token(self) -> None:
        result = compute_realized_pnl(
            [
                create_leg("buy", 1, -100, token="A"),
                create_leg("sell", 1, 150, token="A", offset_minutes=1),
                create_leg("buy", 1, -100, token="B"),
                create_leg("sell", 1, 40, token="B", offset_minutes=1),
            ]
        )
        assert (result.wins, result.losses) == (1, 1)
        assert result.realized_lamports == -10


class TestComputeNativeValueDelta:
    def test_fee_added_back_when_wallet_paid_it(self, create_swap_payload) -> None:
        event = TransactionEvent.from_payload(
            create_swap_payload(signature="s", wallet=WALLET, timestamp=T0, lamports=-1_000_000, tokens=5)
        )
        assert compute_native_value_delta(event, WALLET, sol_price_usd=Decimal(100)) == -1_000_000

    def test_wsol_used_when_no_native_change(self) -> None:
        event = TransactionEvent.from_payload(
            {
                "signature": "s",
                "tokenTransfers": [
                    {"fromUserAccount": WALLET, "toUserAccount": "Pool", "mint": WSOL, "tokenAmount": "0.5"},
                ],
            }
        )
        assert compute_native_value_delta(event, WALLET, sol_price_usd=Decimal(100)) == -500_000_000

    def test_stablecoin_priced_at_reference(self) -> None:
        event = TransactionEvent.from_payload(
            {
                "signature": "s",
                "tokenTransfers": [
                    {"fromUserAccount": "Pool", "toUserAccount": WALLET, "mint": USDC, "tokenAmount": "25"},
                ],
            }
        )
        # 25 USD at 100 USD/SOL is 0.25 SOL
        assert compute_native_value_delta(event, WALLET, sol_price_usd=Decimal(100)) == 250_000_000

    def test_swap_legs_matched_by_wallet(self) -> None:
        event = TransactionEvent.from_payload(
            {
                "signature": "s",
                "events": {
                    "swap": {
                        "nativeOutput": {"account": WALLET, "amount": "900"},
                        "innerSwaps": [{"nativeInput": {"account": "SomeoneElse", "amount": "900"}}],
                    }
                },
            }
        )
        assert compute_native_value_delta(event, WALLET, sol_price_usd=Decimal(100)) == 900


class TestExtractTradeLeg:
    def test_buy(self, create_swap_payload) -> None:
        event = TransactionEvent.from_payload(
            create_swap_payload(signature="s", wallet=WALLET, timestamp=T0, lamports=-2_000_000, tokens="12.5")
        )

        leg = extract_trade_leg(event, WALLET, sol_price_usd=100.0)

        assert leg is not None
        assert leg.side == "buy"
        assert leg.token_quantity == Decimal("12.5")
        assert leg.native_value_delta == -2_000_000
        assert leg.timestamp == T0

    def test_sell(self, create_swap_payload) -> None:
        event = TransactionEvent.from_payload(
            create_swap_payload(signature="s", wallet=WALLET, timestamp=T0, lamports=3_000_000, tokens=-4)
        )

        leg = extract_trade_leg(event, WALLET, sol_price_usd=Decimal(100))

        assert leg is not None
        assert leg.side == "sell"
        assert leg.token_quantity == Decimal(4)

    def test_no_timestamp(self) -> None:
        event = TransactionEvent.from_payload({"signature": "s"})
        assert extract_trade_leg(event, WALLET, sol_price_usd=Decimal(100)) is None

    def test_no_value_change(self, create_swap_payload) -> None:
        payload = create_swap_payload(signature="s", wallet=WALLET, timestamp=T0, lamports=-1, tokens=1)
        payload["accountData"] = []
        event = TransactionEvent.from_payload(payload)
        assert extract_trade_leg(event, WALLET, sol_price_usd=Decimal(100)) is None
