"""Realized PnL ledger with weighted-average cost basis.

Trades are reduced to ``TradeLeg`` records (one token, one side, one native
value change) and replayed in time order against one ``InventoryState`` per
token. Profit is only realized on sells against inventory with a known cost.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Literal

from kol_wager_engine.analytics import transfers
from kol_wager_engine.config import LAMPORTS_PER_SOL

if TYPE_CHECKING:
    from kol_wager_engine.ingestor.models import TransactionEvent

logger = logging.getLogger(__name__)

TradeSide = Literal["buy", "sell"]


@dataclass(frozen=True)
class TradeLeg:
    """One wallet's side of one trade.

    Attributes:
        token_id: Mint of the traded token.
        side: "buy" when the wallet received the token, "sell" otherwise.
        token_quantity: Absolute token quantity in UI units (> 0).
        native_value_delta: Signed lamport change attributed to the trade.
        timestamp: Block time of the trade.
    """

    token_id: str
    side: TradeSide
    token_quantity: Decimal
    native_value_delta: int
    timestamp: datetime

    def __post_init__(self) -> None:
        if self.token_quantity <= 0:
            raise ValueError("token_quantity must be positive")
        if self.side not in ("buy", "sell"):
            raise ValueError(f"invalid side: {self.side!r}")


@dataclass
class InventoryState:
    """Open position in one token.

    Quantity and cost basis are either both positive or both zero.
    """

    quantity: Decimal = Decimal(0)
    cost_basis: int = 0

    def _normalize(self) -> None:
        if self.quantity <= 0 or self.cost_basis <= 0:
            self.quantity = Decimal(0)
            self.cost_basis = 0

    def apply_buy(self, quantity: Decimal, cost: int) -> None:
        self.quantity += quantity
        self.cost_basis += max(cost, 0)
        self._normalize()

    def apply_sell(self, quantity: Decimal, proceeds: int) -> int | None:
        """Realize a sell and return its profit, or None if it has no basis.

        The cost removed is the proportional share of the basis, rounded half
        up to whole lamports.
        """
        if self.quantity <= 0 or self.cost_basis <= 0 or proceeds <= 0:
            return None
        sell_qty = min(self.quantity, quantity)
        if sell_qty <= 0:
            return None
        cost_removed = transfers.round_half_up(Decimal(self.cost_basis) * sell_qty / self.quantity)
        self.quantity -= sell_qty
        self.cost_basis = max(0, self.cost_basis - cost_removed)
        self._normalize()
        return proceeds - cost_removed


@dataclass
class RealizedPnL:
    """Aggregate result of replaying a wallet's legs."""

    realized_lamports: int = 0
    wins: int = 0
    losses: int = 0
    tx_count: int = 0
    volume_lamports: int = 0
    inventories: dict[str, InventoryState] = field(default_factory=dict)


def compute_native_value_delta(event: TransactionEvent, wallet: str, *, sol_price_usd: Decimal) -> int:
    """Net lamport value of the event for ``wallet``; the first non-zero source wins.

    Order: recorded native balance change (fee excluded when the wallet paid
    it), wrapped SOL, wallet-matched swap native legs, stablecoins priced at
    ``sol_price_usd``, then native transfers.
    """
    balance = transfers.account_native_delta(event, wallet)
    if balance and event.fee and event.fee_payer == wallet:
        balance += event.fee
    if balance:
        return balance

    wsol = transfers.wsol_delta_lamports(event, wallet)
    if wsol:
        return wsol

    swap = transfers.swap_native_delta(event, wallet)
    if swap:
        return swap

    if sol_price_usd > 0:
        stable_usd = transfers.stable_delta_usd(event, wallet)
        if stable_usd:
            lamports = transfers.round_half_up(stable_usd / sol_price_usd * LAMPORTS_PER_SOL)
            if lamports:
                return lamports

    return transfers.net_native_transfers(event, wallet)


def extract_trade_leg(
    event: TransactionEvent,
    wallet: str,
    *,
    sol_price_usd: Decimal | float,
) -> TradeLeg | None:
    """Reduce an event to a TradeLeg for ``wallet``, or None if it is not one."""
    if event.timestamp is None:
        return None
    price = sol_price_usd if isinstance(sol_price_usd, Decimal) else Decimal(str(sol_price_usd))

    value = compute_native_value_delta(event, wallet, sol_price_usd=price)
    if value == 0:
        return None

    primary = transfers.primary_token(transfers.token_deltas(event, wallet))
    if primary is None:
        return None
    mint, delta = primary

    return TradeLeg(
        token_id=mint,
        side="buy" if delta > 0 else "sell",
        token_quantity=abs(delta),
        native_value_delta=value,
        timestamp=event.timestamp,
    )


def compute_realized_pnl(legs: Iterable[TradeLeg]) -> RealizedPnL:
    """Replay ``legs`` in timestamp order (stable for equal times)."""
    ordered = sorted(legs, key=lambda leg: leg.timestamp)
    result = RealizedPnL(tx_count=len(ordered))
    profit_by_token: dict[str, int] = {}

    for leg in ordered:
        result.volume_lamports += abs(leg.native_value_delta)
        state = result.inventories.setdefault(leg.token_id, InventoryState())

        if leg.side == "buy":
            state.apply_buy(leg.token_quantity, -leg.native_value_delta if leg.native_value_delta < 0 else 0)
            continue

        profit = state.apply_sell(leg.token_quantity, max(leg.native_value_delta, 0))
        if profit is None:
            logger.debug("Dropped %s sell of %s without basis", leg.token_id, leg.token_quantity)
            continue
        result.realized_lamports += profit
        profit_by_token[leg.token_id] = profit_by_token.get(leg.token_id, 0) + profit

    for profit in profit_by_token.values():
        if profit > 0:
            result.wins += 1
        elif profit < 0:
            result.losses += 1
    return result
