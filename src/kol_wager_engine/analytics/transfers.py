"""Per-wallet views over a decoded transaction event.

Helpers here answer narrow questions ("how did this wallet's balance of mint
M change?", "who did it trade with?") and never decide whether the event is
a trade. Token quantities are ``Decimal`` UI units; native values are integer
lamports.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from kol_wager_engine.config import LAMPORTS_PER_SOL

if TYPE_CHECKING:
    from kol_wager_engine.ingestor.models import TransactionEvent

WSOL_MINT = "So11111111111111111111111111111111111111112"

STABLE_MINTS = frozenset(
    {
        "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",  # USDT
        "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",  # USDC
        "USD1ttGY1N17NEEHLmELoaybftRBUSErhqYiQzvEmuB",  # USD1
    }
)


def round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def is_tradable_mint(mint: str) -> bool:
    """True for any mint that is neither wrapped SOL nor a stablecoin."""
    return mint != WSOL_MINT and mint not in STABLE_MINTS


def token_deltas(event: TransactionEvent, wallet: str) -> dict[str, Decimal]:
    """Net UI-unit change per mint for ``wallet``.

    Token transfers are authoritative. Account balance changes only fill in
    mints that no transfer touching the wallet mentions, so the same movement
    is never counted twice.
    """
    deltas: dict[str, Decimal] = defaultdict(Decimal)
    seen: set[str] = set()

    for transfer in event.token_transfers:
        if not transfer.mint or transfer.amount == 0:
            continue
        if transfer.from_account == wallet:
            deltas[transfer.mint] -= transfer.amount
            seen.add(transfer.mint)
        if transfer.to_account == wallet:
            deltas[transfer.mint] += transfer.amount
            seen.add(transfer.mint)

    for account in event.account_data:
        for change in account.owned_token_changes(wallet):
            if not change.mint or change.mint in seen:
                continue
            amount = change.amount.ui_amount
            if amount:
                deltas[change.mint] += amount

    return {mint: delta for mint, delta in deltas.items() if delta != 0}


def primary_token(deltas: dict[str, Decimal]) -> tuple[str, Decimal] | None:
    """Largest absolute tradable delta; ties go to the smallest mint."""
    candidates = [(m, d) for m, d in deltas.items() if d != 0 and is_tradable_mint(m)]
    if not candidates:
        return None
    return min(candidates, key=lambda item: (-abs(item[1]), item[0]))


def account_native_delta(event: TransactionEvent, wallet: str) -> int:
    """Sum of recorded native balance changes against ``wallet``."""
    return sum(
        acc.native_balance_change or 0
        for acc in event.account_data
        if acc.account == wallet
    )


def wsol_delta_lamports(event: TransactionEvent, wallet: str) -> int:
    """Wrapped-SOL change in lamports.

    Raw balance changes are already lamports; transfers are UI amounts and are
    only used when no balance change for WSOL is recorded.
    """
    from_changes = 0
    saw_change = False
    for account in event.account_data:
        for change in account.owned_token_changes(wallet):
            if change.mint == WSOL_MINT and change.amount.raw:
                from_changes += change.amount.raw
                saw_change = True
    if saw_change:
        return from_changes

    total = Decimal(0)
    for transfer in event.token_transfers:
        if transfer.mint != WSOL_MINT:
            continue
        if transfer.from_account == wallet:
            total -= transfer.amount
        if transfer.to_account == wallet:
            total += transfer.amount
    return round_half_up(total * LAMPORTS_PER_SOL)


def swap_native_delta(event: TransactionEvent, wallet: str) -> int:
    """Native swap legs whose account is exactly ``wallet``, including inner swaps."""
    if event.swap is None:
        return 0
    net = 0
    for swap in event.swap.walk():
        if swap.native_input is not None and swap.native_input.account == wallet:
            net -= swap.native_input.amount
        if swap.native_output is not None and swap.native_output.account == wallet:
            net += swap.native_output.amount
    return net


def stable_delta_usd(event: TransactionEvent, wallet: str) -> Decimal:
    return sum(
        (d for m, d in token_deltas(event, wallet).items() if m in STABLE_MINTS),
        Decimal(0),
    )


def net_native_transfers(event: TransactionEvent, wallet: str) -> int:
    net = 0
    for transfer in event.native_transfers:
        if transfer.from_account == wallet:
            net -= transfer.amount
        if transfer.to_account == wallet:
            net += transfer.amount
    return net


def net_sol_lamports(event: TransactionEvent, wallet: str) -> int:
    """Net SOL movement in lamports, WSOL included.

    Recorded native balance changes are used when present; otherwise native
    transfers and swap legs, which would double count alongside them.
    """
    native = account_native_delta(event, wallet)
    if native == 0:
        native = net_native_transfers(event, wallet) + swap_native_delta(event, wallet)
    return native + wsol_delta_lamports(event, wallet)


def counterparties(event: TransactionEvent, wallet: str) -> set[str]:
    """Distinct other parties of native or token transfers with ``wallet``."""
    found: set[str] = set()
    for transfer in (*event.native_transfers, *event.token_transfers):
        src, dst = transfer.from_account, transfer.to_account
        if src == wallet and dst and dst != wallet:
            found.add(dst)
        if dst == wallet and src and src != wallet:
            found.add(src)
    return found


def is_self_transfer(event: TransactionEvent, wallet: str) -> bool:
    return any(
        t.from_account == wallet and t.to_account == wallet
        for t in (*event.native_transfers, *event.token_transfers)
    )
