"""Trade classification for enhanced transaction events."""

from __future__ import annotations

from typing import TYPE_CHECKING

from kol_wager_engine.analytics.transfers import is_tradable_mint, net_sol_lamports, token_deltas

if TYPE_CHECKING:
    from kol_wager_engine.ingestor.models import TransactionEvent


SYSTEM_PROGRAM_SOURCE = "SYSTEM_PROGRAM"

SWAP_TYPES = frozenset({"SWAP", "SWAP_EXACT_OUT", "SWAP_WITH_PRICE_IMPACT"})

# Non-swap types that can still be trades; liquidity, staking, NFT and other types never are.
GENERIC_TYPES = frozenset({"TRANSFER", "UNKNOWN"})

DEX_SOURCES = frozenset(
    {
        "PUMP_FUN",
        "PUMP_AMM",
        "JUPITER",
        "RAYDIUM",
        "RAYDIUM_AMM",
        "RAYDIUM_CLMM",
        "ORCA",
        "ORCA_WHIRLPOOL",
        "LIFINITY",
        "METEORA",
        "PHOENIX",
        "OPENBOOK",
        "MERCURIAL",
        "SABER",
        "SAROS",
        "CREMA",
        "ALDRIN",
        "CYKURA",
    }
)


def is_trade_like(event: TransactionEvent, wallet: str) -> bool:
    """Decide whether ``event`` is a trade for ``wallet``.

    Swap-typed events are accepted outright. Generic transfer events (type
    ``TRANSFER``, ``UNKNOWN`` or missing) count only when a known venue
    corroborates them (an embedded swap or a DEX source), the wallet moved a
    token that is neither SOL nor a stablecoin, and its SOL, WSOL or
    stablecoin balance changed too.
    """
    if event.has_error:
        return False
    if event.source == SYSTEM_PROGRAM_SOURCE:
        return False
    if event.type in SWAP_TYPES:
        return True
    if event.type is not None and event.type not in GENERIC_TYPES:
        return False
    if event.swap is None and event.source not in DEX_SOURCES:
        return False

    deltas = token_deltas(event, wallet)
    if not any(is_tradable_mint(mint) for mint in deltas):
        return False
    if not all(is_tradable_mint(mint) for mint in deltas):
        return True
    return net_sol_lamports(event, wallet) != 0
