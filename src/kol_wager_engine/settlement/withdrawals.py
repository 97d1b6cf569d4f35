"""Escrow withdrawal processing.

Withdrawal state lives behind stored procedures: ``pm_begin_withdrawal_send``
moves a REQUESTED row to SENDING under a processing nonce, and only the holder
of that nonce can mark it sent or failed. A withdrawal is only failed when no
transfer was signed or the signed one failed on chain; any other error after
signing leaves it SENDING.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from kol_wager_engine.budget import BatchBudget, BatchProgress
from kol_wager_engine.chain.rpc import ChainClientError, SolanaRpc, TransactionFailedError
from kol_wager_engine.settlement.funding import FundingSelector, InsufficientFundsError
from kol_wager_engine.settlement.safety import EmergencyHalt, EscrowAuditLog
from kol_wager_engine.storage.database import DatabaseManager
from kol_wager_engine.storage.procedures import ProcedureError, ProcedureGateway
from kol_wager_engine.storage.repos import WithdrawalDTO, WithdrawalRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 25
MAX_LIMIT = 100
STATUS_SENDING = "SENDING"
STATUS_SENT = "SENT"


def processing_nonce_for(withdrawal_id: str, *, now_ms: int | None = None) -> str:
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{now_ms}-{withdrawal_id}-{secrets.token_hex(6)}"


@dataclass
class WithdrawalOutcome:
    withdrawal_id: str
    ok: bool
    status: str | None = None
    tx_sig: str | None = None
    error: str | None = None
    skipped: bool = False
    dry_run: bool = False


@dataclass
class WithdrawalBatchResult:
    dry_run: bool
    outcomes: list[WithdrawalOutcome] = field(default_factory=list)
    progress: BatchProgress = field(default_factory=lambda: BatchProgress(total=0))


class WithdrawalProcessor:
    """Sends REQUESTED withdrawals from the escrow wallets."""

    def __init__(
        self,
        db: DatabaseManager,
        rpc: SolanaRpc,
        funding: FundingSelector,
        *,
        audit: EscrowAuditLog | None = None,
        halt: EmergencyHalt | None = None,
        gateway_factory: Callable[[AsyncSession], Any] = ProcedureGateway,
    ) -> None:
        self._db = db
        self._rpc = rpc
        self._funding = funding
        self._audit = audit
        self._halt = halt
        self._gateway_factory = gateway_factory

    async def _call(self, name: str, **params: Any) -> dict[str, Any]:
        async with self._db.get_async_session() as session:
            result: dict[str, Any] = await self._gateway_factory(session).call(name, **params)
            return result

    async def process(
        self,
        *,
        limit: int = DEFAULT_LIMIT,
        dry_run: bool = False,
        budget: BatchBudget | None = None,
    ) -> WithdrawalBatchResult:
        """Process the oldest REQUESTED withdrawals.

        Raises:
            EmergencyHaltError: If the halt switch is on.
        """
        if self._halt is not None:
            await self._halt.ensure_inactive()

        limit = max(1, min(MAX_LIMIT, limit))
        async with self._db.get_async_session() as session:
            rows = await WithdrawalRepository(session).list_requested(limit=limit)

        budget = budget or BatchBudget.unlimited()
        result = WithdrawalBatchResult(dry_run=dry_run, progress=BatchProgress(total=len(rows)))
        for row in rows:
            if budget.exhausted():
                result.progress.stop(row.withdrawal_id)
                break
            outcome = await self._process_one(row, dry_run=dry_run)
            result.outcomes.append(outcome)
            result.progress.processed += 1
            if outcome.skipped:
                result.progress.skipped.append(row.withdrawal_id)

        logger.info(
            "Withdrawals: %d ok, %d failed (%s)",
            sum(1 for o in result.outcomes if o.ok),
            sum(1 for o in result.outcomes if not o.ok),
            result.progress.summary(),
        )
        return result

    async def _process_one(self, row: WithdrawalDTO, *, dry_run: bool) -> WithdrawalOutcome:
        withdrawal_id = row.withdrawal_id
        if not withdrawal_id or not row.destination_pubkey or row.amount_lamports <= 0:
            return WithdrawalOutcome(withdrawal_id, ok=False, error="Invalid withdrawal row")
        if dry_run:
            return WithdrawalOutcome(withdrawal_id, ok=True, dry_run=True)

        nonce = processing_nonce_for(withdrawal_id)
        try:
            begin = await self._call(
                "pm_begin_withdrawal_send",
                p_withdrawal_id=withdrawal_id,
                p_processing_nonce=nonce,
            )
        except ProcedureError as e:
            return WithdrawalOutcome(withdrawal_id, ok=False, error=str(e))

        status = str(begin.get("status") or "")
        if status != STATUS_SENDING:
            logger.debug("Withdrawal %s not startable (status %s)", withdrawal_id, status)
            return WithdrawalOutcome(withdrawal_id, ok=True, status=status, skipped=True)

        pending: list[str] = []
        wallet_address: str | None = None

        async def remember(signature: str) -> None:
            pending.append(signature)

        try:
            wallet = await self._funding.pick(withdrawal_id, row.amount_lamports)
            wallet_address = wallet.address
            receipt = await self._rpc.send_transfer(
                wallet.keypair, row.destination_pubkey, row.amount_lamports, on_signed=remember
            )
            signature = receipt.signature
        except InsufficientFundsError as e:
            await self._fail(withdrawal_id, nonce, str(e))
            return WithdrawalOutcome(withdrawal_id, ok=False, error=str(e))
        except TransactionFailedError as e:
            # Executed with an error; no lamports moved.
            await self._fail(withdrawal_id, nonce, str(e))
            return WithdrawalOutcome(withdrawal_id, ok=False, tx_sig=pending[0] if pending else None, error=str(e))
        except ChainClientError as e:
            if not pending:
                await self._fail(withdrawal_id, nonce, str(e))
                return WithdrawalOutcome(withdrawal_id, ok=False, error=str(e))
            if not await self._rpc.verify_transaction(pending[0]):
                # The signed transfer may still land; the withdrawal stays SENDING.
                logger.warning("Withdrawal %s unconfirmed as %s (%s), left in SENDING", withdrawal_id, pending[0], e)
                return WithdrawalOutcome(
                    withdrawal_id, ok=False, status=STATUS_SENDING, tx_sig=pending[0], error=str(e)
                )
            signature = pending[0]
            logger.info("Withdrawal %s landed despite send error: %s", withdrawal_id, e)

        if self._audit is not None:
            await self._audit.record(
                "payout",
                escrow_address=wallet_address,
                reference_id=withdrawal_id,
                amount_lamports=row.amount_lamports,
                signature=signature,
                from_wallet=wallet_address,
                to_wallet=row.destination_pubkey,
            )

        try:
            await self._call(
                "pm_mark_withdrawal_sent",
                p_withdrawal_id=withdrawal_id,
                p_processing_nonce=nonce,
                p_tx_sig=signature,
            )
        except ProcedureError as e:
            logger.error("Withdrawal %s sent as %s but could not be marked: %s", withdrawal_id, signature, e)
            return WithdrawalOutcome(withdrawal_id, ok=False, tx_sig=signature, error=str(e))
        return WithdrawalOutcome(withdrawal_id, ok=True, status=STATUS_SENT, tx_sig=signature)

    async def _fail(self, withdrawal_id: str, nonce: str, error: str) -> None:
        try:
            await self._call(
                "pm_fail_withdrawal",
                p_withdrawal_id=withdrawal_id,
                p_processing_nonce=nonce,
                p_error=error[:2000],
            )
        except ProcedureError as e:
            logger.error("Could not mark withdrawal %s failed: %s", withdrawal_id, e)
        logger.warning("Withdrawal %s failed: %s", withdrawal_id, error)
