"""Funding wallet selection for escrow transfers.

A seed (market id, payout id) maps deterministically onto one of the escrow
wallets, which spreads payouts across wallets while keeping retries on the
same starting wallet. Balances are then checked from that position onward.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Sequence
from typing import Protocol, TypeVar

from kol_wager_engine.chain.keys import EscrowWallet
from kol_wager_engine.chain.rpc import RPCError

logger = logging.getLogger(__name__)

FEE_BUFFER_LAMPORTS = 50_000

T = TypeVar("T")


class InsufficientFundsError(Exception):
    """Raised when no escrow wallet can cover a transfer plus fees."""

    def __init__(self, lamports: int, checked: int) -> None:
        self.lamports = lamports
        self.checked = checked
        super().__init__(f"No escrow wallet holds {lamports} lamports plus fee buffer ({checked} checked)")


class BalanceSource(Protocol):
    async def get_balance(self, address: str) -> int: ...


def rotation_start(seed: str, count: int) -> int:
    if count <= 0:
        raise ValueError("No funding candidates")
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return int(digest, 16) % count


def select_funding_wallet(seed: str, candidates: Sequence[T]) -> T:
    """Pick the candidate at ``sha256(seed) mod len(candidates)``.

    Raises:
        ValueError: If there are no candidates.
    """
    return candidates[rotation_start(seed, len(candidates))]


def rotated(seed: str, candidates: Sequence[T]) -> list[T]:
    """Candidates in checking order, starting at the selected one."""
    start = rotation_start(seed, len(candidates))
    return [*candidates[start:], *candidates[:start]]


class FundingSelector:
    """Chooses an escrow wallet with enough balance for a transfer."""

    def __init__(
        self,
        balances: BalanceSource,
        wallets: Sequence[EscrowWallet],
        *,
        fee_buffer_lamports: int = FEE_BUFFER_LAMPORTS,
        restrict_to: str | None = None,
    ) -> None:
        if restrict_to:
            wallets = [w for w in wallets if w.address == restrict_to]
        self._balances = balances
        self._wallets = list(wallets)
        self._fee_buffer = fee_buffer_lamports

    @property
    def wallets(self) -> list[EscrowWallet]:
        return list(self._wallets)

    async def pick(self, seed: str, lamports: int) -> EscrowWallet:
        """Raises:
        InsufficientFundsError: If no wallet covers ``lamports`` plus the fee buffer.
        """
        if not self._wallets:
            raise InsufficientFundsError(lamports, 0)

        needed = max(0, lamports) + self._fee_buffer
        checked = 0
        for wallet in rotated(seed, self._wallets):
            try:
                balance = await self._balances.get_balance(wallet.address)
            except RPCError as e:
                logger.warning("Balance check failed for %s: %s", wallet.address[:8], e)
                continue
            checked += 1
            if balance >= needed:
                return wallet
            logger.debug("Escrow %s holds %d, needs %d", wallet.address[:8], balance, needed)
        raise InsufficientFundsError(lamports, checked)
