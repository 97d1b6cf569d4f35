"""Payout planning and the crash-safe payout state machine.

Planning is pure integer arithmetic over lamports. Persisted requests move
through ``unclaimed → processing → sent | failed``:

1. a conditional UPDATE claims the row under a fresh processing token;
2. the transfer is built and signed once, and its signature is stored as
   ``pending_signature`` before anything is broadcast;
3. the signed bytes are sent and confirmed, then the row is marked sent.

Every step after the claim is conditional on the token, so a second worker
can never finalize a row it does not hold. Once a transfer is signed the row
only leaves ``processing`` on chain evidence: a confirmed signature marks it
sent, while an execution error or a signature whose blockhash expired without
landing marks it failed. Any other error after signing leaves the row for
``PayoutProcessor.reconcile``. A re-claimed row checks its earlier signature
before signing a new transfer.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from kol_wager_engine.analytics.eligibility import ConfigLoader
from kol_wager_engine.budget import BatchBudget, BatchProgress
from kol_wager_engine.cache import Clock, TtlCache
from kol_wager_engine.chain.rpc import (
    DEFAULT_CONFIRM_TIMEOUT_SECONDS,
    SIGNATURE_CONFIRMED,
    SIGNATURE_EXPIRY_SECONDS,
    SIGNATURE_FAILED,
    SIGNATURE_MISSING,
    SIGNATURE_PENDING,
    ChainClientError,
    SolanaRpc,
    TransactionFailedError,
)
from kol_wager_engine.config import LAMPORTS_PER_SOL, SettlementSettings
from kol_wager_engine.settlement.funding import FundingSelector, InsufficientFundsError
from kol_wager_engine.settlement.safety import EmergencyHalt, EscrowAuditLog
from kol_wager_engine.storage.database import DatabaseManager
from kol_wager_engine.storage.repos import (
    PAYOUT_FAILED,
    PAYOUT_UNCLAIMED,
    MarketDTO,
    MarketRepository,
    OrderDTO,
    OrderRepository,
    PayoutRequestDTO,
    PayoutRequestRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

FEE_CONFIG_KEY = "fees"
BPS_DENOMINATOR = 10_000

KIND_WINNER = "winner"
KIND_FEE = "fee"

OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_PENDING = "pending"


class PayoutError(Exception):
    """Base exception for payout errors."""


class PayoutPlanningError(PayoutError):
    """Raised when a market cannot be paid out (unsettled, no deposits, no winners)."""


class MarketNotFoundError(PayoutError):
    """Raised when a payout is requested for an unknown market."""


class ClaimLostError(PayoutError):
    """Raised when a processing token no longer holds its row."""


# ============================================================================
# Fee configuration
# ============================================================================


class FeeConfig(BaseModel):
    """Fee defaults, overridable through ``system_config["fees"]``."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    default_fee_bps: int = Field(default=250, ge=0, le=BPS_DENOMINATOR)
    fee_wallet_address: str | None = None
    min_payout_sol: Decimal = Field(default=Decimal("0.001"), ge=0)

    @property
    def min_payout_lamports(self) -> int:
        return int(self.min_payout_sol * LAMPORTS_PER_SOL)

    @classmethod
    def from_settings(cls, settings: SettlementSettings) -> FeeConfig:
        return cls(
            default_fee_bps=settings.fee_bps,
            fee_wallet_address=settings.fee_wallet,
            min_payout_sol=Decimal(settings.min_payout_lamports) / LAMPORTS_PER_SOL,
        )


class FeeConfigProvider:
    """Fee config behind a 60 s TTL cache; store failures fall back to defaults."""

    def __init__(
        self,
        loader: ConfigLoader,
        *,
        defaults: FeeConfig | None = None,
        ttl_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self._loader = loader
        self._defaults = defaults or FeeConfig()
        self._cache: TtlCache[FeeConfig] = TtlCache(ttl_seconds, clock=clock)

    async def get(self) -> FeeConfig:
        cached = self._cache.get()
        if cached is not None:
            return cached

        config = self._defaults
        try:
            overrides: Mapping[str, Any] | None = await self._loader()
        except SQLAlchemyError as e:
            logger.warning("Failed to load %s config, using defaults: %s", FEE_CONFIG_KEY, e)
            overrides = None
        if overrides:
            try:
                config = FeeConfig.model_validate({**self._defaults.model_dump(), **dict(overrides)})
            except ValidationError as e:
                logger.warning("Ignoring invalid %s config: %s", FEE_CONFIG_KEY, e)

        self._cache.set(config)
        return config


# ============================================================================
# Planning
# ============================================================================


@dataclass(frozen=True)
class PlannedPayout:
    kind: str
    destination: str
    amount_lamports: int
    order_id: str | None = None
    deposit_lamports: int = 0


@dataclass
class PayoutPlan:
    market_id: str
    outcome: str
    fee_bps: int
    gross_pot_lamports: int
    winner_total_lamports: int
    fee_lamports: int
    distributable_lamports: int
    winners: list[PlannedPayout] = field(default_factory=list)
    below_minimum: list[PlannedPayout] = field(default_factory=list)
    fee: PlannedPayout | None = None

    @property
    def requests(self) -> list[PlannedPayout]:
        return [*self.winners, *([self.fee] if self.fee else [])]


def _funded(orders: Sequence[OrderDTO]) -> list[OrderDTO]:
    return [
        o
        for o in orders
        if o.side == "buy" and o.deposit_signature and o.deposit_lamports and o.deposit_lamports > 0
    ]


def plan_market_payouts(
    market: MarketDTO,
    orders: Sequence[OrderDTO],
    *,
    fee_bps: int,
    min_payout_lamports: int,
    fee_wallet: str | None,
) -> PayoutPlan:
    """Split a settled market's pot among winning deposits.

    fee = gross * fee_bps // 10_000; each winner receives
    deposit * (gross - fee) // winner_total. Floor division leaves dust in
    escrow, never overpays.

    Raises:
        PayoutPlanningError: If the market is unsettled or has no deposits or
            no winning deposits.
    """
    if market.status != "settled" or market.resolved_outcome not in ("yes", "no"):
        raise PayoutPlanningError(f"Market {market.id} not settled")
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise PayoutPlanningError(f"fee_bps out of range: {fee_bps}")

    funded = _funded(orders)
    gross = sum(o.deposit_lamports or 0 for o in funded)
    winners = [o for o in funded if o.outcome == market.resolved_outcome]
    winner_total = sum(o.deposit_lamports or 0 for o in winners)
    if gross <= 0:
        raise PayoutPlanningError(f"Market {market.id} has no deposits")
    if winner_total <= 0:
        raise PayoutPlanningError(f"Market {market.id} has no winning deposits")

    fee = gross * fee_bps // BPS_DENOMINATOR
    distributable = gross - fee
    plan = PayoutPlan(
        market_id=market.id,
        outcome=market.resolved_outcome,
        fee_bps=fee_bps,
        gross_pot_lamports=gross,
        winner_total_lamports=winner_total,
        fee_lamports=fee,
        distributable_lamports=distributable,
    )
    for order in winners:
        deposit = order.deposit_lamports or 0
        payout = PlannedPayout(
            kind=KIND_WINNER,
            destination=order.wallet_address,
            amount_lamports=deposit * distributable // winner_total,
            order_id=order.id,
            deposit_lamports=deposit,
        )
        if payout.amount_lamports <= 0 or payout.amount_lamports < min_payout_lamports:
            plan.below_minimum.append(payout)
        else:
            plan.winners.append(payout)

    if fee > 0 and fee_wallet:
        plan.fee = PlannedPayout(kind=KIND_FEE, destination=fee_wallet, amount_lamports=fee)
    return plan


@dataclass
class RequestCreation:
    plan: PayoutPlan
    created: int = 0
    existing: int = 0


class PayoutService:
    """Turns a settled market into persisted payout requests."""

    def __init__(self, session: AsyncSession, *, fee_config: FeeConfigProvider) -> None:
        self._markets = MarketRepository(session)
        self._orders = OrderRepository(session)
        self._requests = PayoutRequestRepository(session)
        self._fee_config = fee_config

    async def plan(self, market_id: str, *, fee_bps: int | None = None) -> PayoutPlan:
        """Raises:
        MarketNotFoundError: If the market does not exist.
        PayoutPlanningError: If the market cannot be paid out.
        """
        market = await self._markets.get(market_id)
        if market is None:
            raise MarketNotFoundError(f"Market not found: {market_id}")
        config = await self._fee_config.get()
        orders = await self._orders.list_funded_buys(market_id)
        if fee_bps is None:
            fee_bps = market.fee_bps if market.fee_bps is not None else config.default_fee_bps
        return plan_market_payouts(
            market,
            orders,
            fee_bps=fee_bps,
            min_payout_lamports=config.min_payout_lamports,
            fee_wallet=market.fee_wallet_address or config.fee_wallet_address,
        )

    async def create_requests(self, market_id: str, *, fee_bps: int | None = None) -> RequestCreation:
        """Persist the plan. Re-running never duplicates a request."""
        plan = await self.plan(market_id, fee_bps=fee_bps)
        creation = RequestCreation(plan=plan)
        for planned in plan.requests:
            inserted = await self._requests.insert_if_absent(
                PayoutRequestDTO(
                    id=str(uuid.uuid4()),
                    market_id=market_id,
                    kind=planned.kind,
                    destination=planned.destination,
                    amount_lamports=planned.amount_lamports,
                    order_id=planned.order_id,
                )
            )
            if inserted:
                creation.created += 1
            else:
                creation.existing += 1
        for skipped in plan.below_minimum:
            logger.info(
                "Order %s payout of %d lamports is below the minimum, not requested",
                skipped.order_id,
                skipped.amount_lamports,
            )
        logger.info(
            "Market %s: %d payout request(s) created, %d already present",
            market_id,
            creation.created,
            creation.existing,
        )
        return creation


# ============================================================================
# Processing
# ============================================================================


@dataclass
class PayoutOutcome:
    request_id: str
    status: str
    destination: str
    amount_lamports: int
    signature: str | None = None
    source_wallet: str | None = None
    error: str | None = None


@dataclass
class PayoutBatchResult:
    outcomes: list[PayoutOutcome] = field(default_factory=list)
    progress: BatchProgress = field(default_factory=lambda: BatchProgress(total=0))

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)


class PayoutProcessor:
    """Drives payout requests through claim, send and confirm.

    Each state change commits in its own short transaction so the claim and
    the pending signature are durable before funds move.
    """

    def __init__(
        self,
        db: DatabaseManager,
        rpc: SolanaRpc,
        funding: FundingSelector,
        *,
        audit: EscrowAuditLog | None = None,
        halt: EmergencyHalt | None = None,
        confirm_timeout_seconds: float = DEFAULT_CONFIRM_TIMEOUT_SECONDS,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._db = db
        self._rpc = rpc
        self._funding = funding
        self._audit = audit
        self._halt = halt
        self._confirm_timeout = confirm_timeout_seconds
        self._now = now

    async def pending_for_market(self, market_id: str, *, limit: int = 200) -> list[PayoutRequestDTO]:
        async with self._db.get_async_session() as session:
            rows = await PayoutRequestRepository(session).list_for_market(
                market_id, states=(PAYOUT_UNCLAIMED, PAYOUT_FAILED)
            )
        return [r for r in rows if r.tx_signature is None][:limit]

    async def process(
        self,
        requests: Sequence[PayoutRequestDTO],
        *,
        budget: BatchBudget | None = None,
    ) -> PayoutBatchResult:
        """Pay out each request at most once.

        Raises:
            EmergencyHaltError: If the halt switch is on when the batch starts.
        """
        if self._halt is not None:
            await self._halt.ensure_inactive()

        budget = budget or BatchBudget.unlimited()
        result = PayoutBatchResult(progress=BatchProgress(total=len(requests)))
        for request in requests:
            if budget.exhausted():
                result.progress.stop(request.id)
                break
            outcome = await self._process_one(request)
            result.outcomes.append(outcome)
            result.progress.processed += 1
            if outcome.status == OUTCOME_SKIPPED:
                result.progress.skipped.append(request.id)

        logger.info(
            "Payout batch: %d sent, %d failed, %d pending, %d skipped (%s)",
            result.count(OUTCOME_SENT),
            result.count(OUTCOME_FAILED),
            result.count(OUTCOME_PENDING),
            result.count(OUTCOME_SKIPPED),
            result.progress.summary(),
        )
        return result

    def _outcome(self, request: PayoutRequestDTO, status: str, **kwargs: Any) -> PayoutOutcome:
        return PayoutOutcome(
            request_id=request.id,
            status=status,
            destination=request.destination,
            amount_lamports=request.amount_lamports,
            **kwargs,
        )

    async def _process_one(self, request: PayoutRequestDTO) -> PayoutOutcome:
        token = str(uuid.uuid4())
        async with self._db.get_async_session() as session:
            repo = PayoutRequestRepository(session)
            claimed = await repo.claim(request.id, token=token, now=self._now())
            row = await repo.get(request.id) if claimed else None
        if row is None:
            logger.debug("Payout %s already processing or paid", request.id)
            return self._outcome(request, OUTCOME_SKIPPED, error="Already processing/paid")

        if row.pending_signature:
            earlier = await self._resolve_earlier_transfer(row, token)
            if earlier is not None:
                return earlier

        try:
            wallet = await self._funding.pick(request.market_id, request.amount_lamports)
        except InsufficientFundsError as e:
            await self._mark_failed(request.id, token, str(e))
            return self._outcome(request, OUTCOME_FAILED, error=str(e))

        pending: list[str] = []

        async def record_signature(signature: str) -> None:
            async with self._db.get_async_session() as session:
                held = await PayoutRequestRepository(session).set_pending_signature(
                    request.id, token=token, signature=signature, source_wallet=wallet.address, now=self._now()
                )
            if not held:
                raise ClaimLostError(f"Payout {request.id} no longer held by {token}")
            pending.append(signature)

        try:
            receipt = await self._rpc.send_transfer(
                wallet.keypair,
                request.destination,
                request.amount_lamports,
                on_signed=record_signature,
                confirm_timeout_seconds=self._confirm_timeout,
            )
            signature = receipt.signature
        except ClaimLostError as e:
            logger.warning("%s", e)
            return self._outcome(request, OUTCOME_SKIPPED, error=str(e))
        except TransactionFailedError as e:
            # Executed with an error; no lamports moved.
            await self._mark_failed(request.id, token, str(e))
            return self._outcome(
                request,
                OUTCOME_FAILED,
                signature=pending[0] if pending else None,
                source_wallet=wallet.address,
                error=str(e),
            )
        except ChainClientError as e:
            if not pending:
                await self._mark_failed(request.id, token, str(e))
                return self._outcome(request, OUTCOME_FAILED, source_wallet=wallet.address, error=str(e))
            if not await self._rpc.verify_transaction(pending[0]):
                # The signed bytes may still land; only reconcile releases the row.
                await self._record_error(request.id, token, str(e))
                return self._outcome(
                    request,
                    OUTCOME_PENDING,
                    signature=pending[0],
                    source_wallet=wallet.address,
                    error=str(e),
                )
            signature = pending[0]
            logger.info("Payout %s landed despite send error: %s", request.id, e)

        return await self._finalize(request, token, signature, wallet.address)

    def _signature_expired(self, row: PayoutRequestDTO) -> bool:
        if row.signed_at is None:
            return True
        return row.signed_at <= self._now() - timedelta(seconds=SIGNATURE_EXPIRY_SECONDS)

    async def _resolve_earlier_transfer(self, row: PayoutRequestDTO, token: str) -> PayoutOutcome | None:
        """Finish a re-claimed row from the transfer it already signed.

        Returns None when that transfer failed or expired and a new one may be
        sent.
        """
        signature = row.pending_signature or ""
        try:
            state = await self._rpc.signature_state(signature)
        except ChainClientError as e:
            error = f"Could not check earlier transfer {signature}: {e}"
            await self._record_error(row.id, token, error)
            return self._outcome(
                row, OUTCOME_PENDING, signature=signature, source_wallet=row.source_wallet, error=error
            )

        if state == SIGNATURE_CONFIRMED:
            logger.info("Payout %s already landed as %s", row.id, signature)
            return await self._finalize(row, token, signature, row.source_wallet or "")
        if state == SIGNATURE_PENDING or (state == SIGNATURE_MISSING and not self._signature_expired(row)):
            error = f"Earlier transfer {signature} may still land"
            await self._record_error(row.id, token, error)
            return self._outcome(
                row, OUTCOME_PENDING, signature=signature, source_wallet=row.source_wallet, error=error
            )
        return None

    async def _finalize(
        self, request: PayoutRequestDTO, token: str, signature: str, source_wallet: str
    ) -> PayoutOutcome:
        if self._audit is not None:
            await self._audit.record(
                "payout" if request.kind == KIND_WINNER else "fee_transfer",
                escrow_address=source_wallet,
                market_id=request.market_id,
                reference_id=request.order_id or request.id,
                amount_lamports=request.amount_lamports,
                signature=signature,
                from_wallet=source_wallet,
                to_wallet=request.destination,
            )
        try:
            async with self._db.get_async_session() as session:
                marked = await PayoutRequestRepository(session).mark_sent(
                    request.id, token=token, signature=signature, now=self._now()
                )
                if marked and request.kind == KIND_FEE:
                    await MarketRepository(session).add_fee_collected(request.market_id, request.amount_lamports)
        except SQLAlchemyError as e:
            logger.error("Payout %s sent as %s but could not be marked: %s", request.id, signature, e)
            marked = False
        if not marked:
            error = f"Transfer {signature} sent but state update failed"
            await self._record_error(request.id, token, error)
            return self._outcome(
                request, OUTCOME_PENDING, signature=signature, source_wallet=source_wallet, error=error
            )
        return self._outcome(request, OUTCOME_SENT, signature=signature, source_wallet=source_wallet)

    async def _mark_failed(self, request_id: str, token: str, error: str) -> None:
        async with self._db.get_async_session() as session:
            await PayoutRequestRepository(session).mark_failed(request_id, token=token, error=error)
        logger.warning("Payout %s failed: %s", request_id, error)

    async def _record_error(self, request_id: str, token: str, error: str) -> None:
        try:
            async with self._db.get_async_session() as session:
                await PayoutRequestRepository(session).record_error(request_id, token=token, error=error)
        except SQLAlchemyError as e:
            logger.error("Could not record error on payout %s: %s", request_id, e)

    async def reconcile(self, stale_after: timedelta, *, limit: int = 200) -> PayoutBatchResult:
        """Settle rows stuck in processing for longer than ``stale_after``.

        A row whose pending signature is confirmed on chain becomes sent. It
        becomes failed, and may be claimed again, only once that transfer
        failed or expired without landing. Anything undecided stays put.
        """
        cutoff = self._now() - stale_after
        async with self._db.get_async_session() as session:
            stale = await PayoutRequestRepository(session).list_stale_processing(older_than=cutoff, limit=limit)

        result = PayoutBatchResult(progress=BatchProgress(total=len(stale)))
        for row in stale:
            result.outcomes.append(await self._reconcile_one(row))
            result.progress.processed += 1

        logger.info(
            "Reconciled %d stale payout(s): %d sent, %d failed, %d undecided",
            len(stale),
            result.count(OUTCOME_SENT),
            result.count(OUTCOME_FAILED),
            result.count(OUTCOME_PENDING),
        )
        return result

    async def _reconcile_one(self, row: PayoutRequestDTO) -> PayoutOutcome:
        token = row.processing_token or ""
        signature = row.pending_signature
        if not signature:
            error = "Claimed but never signed"
            await self._mark_failed(row.id, token, error)
            return self._outcome(row, OUTCOME_FAILED, error=error)

        try:
            state = await self._rpc.signature_state(signature)
        except ChainClientError as e:
            logger.warning("Could not check payout %s transfer %s: %s", row.id, signature, e)
            return self._outcome(row, OUTCOME_PENDING, signature=signature, error=str(e))

        if state == SIGNATURE_CONFIRMED:
            return await self._finalize(row, token, signature, row.source_wallet or "")
        if state == SIGNATURE_FAILED:
            error = f"Transfer {signature} failed on chain"
        elif state == SIGNATURE_MISSING and self._signature_expired(row):
            error = f"Transfer {signature} not found on chain"
        else:
            return self._outcome(row, OUTCOME_PENDING, signature=signature, error=row.error)
        await self._mark_failed(row.id, token, error)
        return self._outcome(row, OUTCOME_FAILED, signature=signature, error=error)
