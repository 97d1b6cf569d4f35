"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from kol_wager_engine.storage.database import DatabaseManager

WSOL = "So11111111111111111111111111111111111111112"
USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
TOKEN_T = "TokenTmint1111111111111111111111111111111111"

SOL = 1_000_000_000
WINDOW_END = datetime(2026, 10, 19, tzinfo=UTC)


@pytest.fixture
async def db() -> AsyncIterator[DatabaseManager]:
    """In-memory database shared by every session the test opens."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
async def async_session(db: DatabaseManager) -> AsyncIterator[AsyncSession]:
    async with db.get_async_session() as session:
        yield session


@pytest.fixture
def window_end() -> datetime:
    return WINDOW_END


class StaticPrice:
    """Price source returning a fixed SOL/USD price."""

    def __init__(self, price: Decimal = Decimal("100")) -> None:
        self.price = price
        self.calls = 0

    async def get_sol_price_usd(self) -> Decimal:
        self.calls += 1
        return self.price


@pytest.fixture
def price_source() -> StaticPrice:
    return StaticPrice()


@pytest.fixture
def create_swap_payload():
    """Factory for enhanced-transaction swap payloads.

    ``lamports`` is the wallet's signed native balance change; ``tokens`` its
    signed token change in UI units.
    """

    def _create(
        *,
        signature: str,
        wallet: str,
        timestamp: datetime,
        lamports: int,
        tokens: Decimal | int | str,
        mint: str = TOKEN_T,
        counterparty: str = "PoolAccount11111111111111111111111111111111",
        source: str = "RAYDIUM",
        tx_type: str = "SWAP",
        fee: int = 5000,
    ) -> dict[str, Any]:
        amount = Decimal(str(tokens))
        transfer = {
            "fromUserAccount": counterparty if amount > 0 else wallet,
            "toUserAccount": wallet if amount > 0 else counterparty,
            "mint": mint,
            "tokenAmount": str(abs(amount)),
        }
        return {
            "signature": signature,
            "timestamp": int(timestamp.timestamp()),
            "slot": 250_000_000,
            "type": tx_type,
            "source": source,
            "fee": fee,
            "feePayer": wallet,
            "transactionError": None,
            "nativeTransfers": [],
            "tokenTransfers": [transfer],
            "accountData": [
                {"account": wallet, "nativeBalanceChange": lamports - fee, "tokenBalanceChanges": []},
            ],
            "events": {},
        }

    return _create


@pytest.fixture
def round_trip(create_swap_payload):
    """Payloads for one buy and one sell realizing ``profit_sol`` for ``wallet``.

    Both legs fall inside the daily window ending at ``WINDOW_END``.
    """

    def _create(wallet: str, profit_sol: str, *, hour: int = 1) -> list[dict[str, Any]]:
        profit = int(Decimal(profit_sol) * SOL)
        start = WINDOW_END - timedelta(hours=24 - hour)
        return [
            create_swap_payload(
                signature=f"{wallet}-buy-{hour}",
                wallet=wallet,
                timestamp=start,
                lamports=-SOL,
                tokens=100,
            ),
            create_swap_payload(
                signature=f"{wallet}-sell-{hour}",
                wallet=wallet,
                timestamp=start + timedelta(minutes=30),
                lamports=SOL + profit,
                tokens=-100,
            ),
        ]

    return _create
