"""Repository pattern implementations for data access.

This module provides data access abstractions for tracked wallets, ingested
events, snapshots, markets, orders, payout requests, withdrawals, system
configuration and the escrow audit log.

Every mutation that can race with another worker is a single conditional
statement; methods return whether they won (rowcount > 0) so callers can
treat a loss as "already handled" instead of as an error.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from kol_wager_engine.storage.models import (
    EscrowAuditLogModel,
    EscrowWithdrawalModel,
    LeaderboardSnapshotModel,
    PayoutRequestModel,
    SystemConfigModel,
    TrackedWalletModel,
    TxEventModel,
    TxEventWalletModel,
    WagerMarketModel,
    WagerOrderModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

PAYOUT_UNCLAIMED = "unclaimed"
PAYOUT_PROCESSING = "processing"
PAYOUT_SENT = "sent"
PAYOUT_FAILED = "failed"

MARKET_OPEN = "open"
MARKET_CLOSED = "closed"
UNSETTLED_MARKET_STATUSES = (MARKET_OPEN, MARKET_CLOSED)


def to_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime (SQLite returns naive values)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Like ``to_utc`` but passes None through."""
    return to_utc(value) if value is not None else None


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upserts are not supported for dialect {dialect!r}")


# ============================================================================
# Tracked wallets
# ============================================================================


@dataclass
class TrackedWalletDTO:
    """Data transfer object for tracked KOL wallets."""

    wallet_address: str
    tracked_from: datetime
    display_name: str | None = None
    is_active: bool = True
    is_tracked: bool = True
    tracked_rank: int | None = None
    tracked_until: datetime | None = None
    wallet_created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TrackedWalletModel) -> TrackedWalletDTO:
        return cls(
            wallet_address=model.wallet_address,
            tracked_from=to_utc(model.tracked_from),
            display_name=model.display_name,
            is_active=model.is_active,
            is_tracked=model.is_tracked,
            tracked_rank=model.tracked_rank,
            tracked_until=as_utc(model.tracked_until),
            wallet_created_at=as_utc(model.wallet_created_at),
        )


class TrackedWalletRepository:
    """Repository for the tracked KOL cohort."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: TrackedWalletDTO) -> TrackedWalletDTO:
        values = {
            "wallet_address": dto.wallet_address,
            "display_name": dto.display_name,
            "is_active": dto.is_active,
            "is_tracked": dto.is_tracked,
            "tracked_rank": dto.tracked_rank,
            "tracked_from": as_utc(dto.tracked_from),
            "tracked_until": as_utc(dto.tracked_until),
            "wallet_created_at": as_utc(dto.wallet_created_at),
        }
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, TrackedWalletModel).values(**values, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address"],
            set_={k: v for k, v in values.items() if k != "wallet_address"} | {"updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def list_tracked_as_of(self, as_of: datetime, *, limit: int = 500) -> list[TrackedWalletDTO]:
        """Wallets that were part of the tracked cohort at ``as_of``."""
        as_of = to_utc(as_of)
        result = await self.session.execute(
            select(TrackedWalletModel)
            .where(
                TrackedWalletModel.is_active.is_(True),
                TrackedWalletModel.is_tracked.is_(True),
                TrackedWalletModel.tracked_from <= as_of,
                or_(
                    TrackedWalletModel.tracked_until.is_(None),
                    TrackedWalletModel.tracked_until > as_of,
                ),
            )
            .order_by(
                TrackedWalletModel.tracked_rank.asc().nulls_last(),
                TrackedWalletModel.wallet_address.asc(),
            )
            .limit(limit)
        )
        return [TrackedWalletDTO.from_model(m) for m in result.scalars().all()]

    async def list_tracked_page(self, *, after: str | None = None, limit: int = 10) -> list[str]:
        """Active tracked addresses in address order, strictly after ``after``."""
        result = await self.session.execute(
            select(TrackedWalletModel.wallet_address)
            .where(
                TrackedWalletModel.is_active.is_(True),
                TrackedWalletModel.is_tracked.is_(True),
                TrackedWalletModel.wallet_address > (after or ""),
            )
            .order_by(TrackedWalletModel.wallet_address.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def filter_tracked(self, addresses: Iterable[str]) -> set[str]:
        """Return the subset of ``addresses`` that are active tracked wallets."""
        wanted = list(dict.fromkeys(addresses))
        if not wanted:
            return set()
        result = await self.session.execute(
            select(TrackedWalletModel.wallet_address).where(
                TrackedWalletModel.wallet_address.in_(wanted),
                TrackedWalletModel.is_active.is_(True),
                TrackedWalletModel.is_tracked.is_(True),
            )
        )
        return {row[0] for row in result.all()}


# ============================================================================
# Transaction events
# ============================================================================


@dataclass
class TxEventDTO:
    """Data transfer object for an ingested event."""

    signature: str
    raw: dict[str, Any]
    block_time: datetime | None = None
    slot: int | None = None
    type: str | None = None
    source: str | None = None

    @classmethod
    def from_model(cls, model: TxEventModel) -> TxEventDTO:
        return cls(
            signature=model.signature,
            raw=model.raw,
            block_time=as_utc(model.block_time),
            slot=model.slot,
            type=model.type,
            source=model.source,
        )


@dataclass
class LinkedEventDTO:
    """An event together with the tracked wallet it is linked to."""

    wallet_address: str
    event: TxEventDTO


class TxEventRepository:
    """Repository for ingested events and their wallet links."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, signature: str) -> TxEventDTO | None:
        result = await self.session.execute(select(TxEventModel).where(TxEventModel.signature == signature))
        model = result.scalar_one_or_none()
        return TxEventDTO.from_model(model) if model else None

    async def upsert(self, dto: TxEventDTO) -> TxEventDTO:
        """Upsert event by signature (idempotent on webhook re-delivery)."""
        values = {
            "signature": dto.signature,
            "block_time": as_utc(dto.block_time),
            "slot": dto.slot,
            "type": dto.type,
            "source": dto.source,
            "raw": dto.raw,
        }
        stmt = _insert_for(self.session, TxEventModel).values(**values, created_at=datetime.now(UTC))
        stmt = stmt.on_conflict_do_update(
            index_elements=["signature"],
            set_={
                "block_time": stmt.excluded.block_time,
                "slot": stmt.excluded.slot,
                "type": stmt.excluded.type,
                "source": stmt.excluded.source,
                "raw": stmt.excluded.raw,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def link_wallets(self, signature: str, wallets: Iterable[str]) -> int:
        """Link ``signature`` to each wallet; existing links are left alone."""
        rows = [
            {"signature": signature, "wallet_address": w, "created_at": datetime.now(UTC)}
            for w in sorted(set(wallets))
        ]
        if not rows:
            return 0
        stmt = _insert_for(self.session, TxEventWalletModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["signature", "wallet_address"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return max(result.rowcount or 0, 0)

    async def list_linked_in_window(
        self,
        *,
        start: datetime,
        end: datetime,
        wallets: Sequence[str] | None = None,
        limit: int = 50_000,
    ) -> list[LinkedEventDTO]:
        """Events with ``start <= block_time < end`` linked to tracked wallets."""
        stmt = (
            select(TxEventWalletModel.wallet_address, TxEventModel)
            .join(TxEventModel, TxEventModel.signature == TxEventWalletModel.signature)
            .where(TxEventModel.block_time >= as_utc(start), TxEventModel.block_time < as_utc(end))
            .order_by(TxEventModel.block_time.desc(), TxEventModel.signature.asc())
            .limit(limit)
        )
        if wallets is not None:
            if not wallets:
                return []
            stmt = stmt.where(TxEventWalletModel.wallet_address.in_(list(wallets)))
        result = await self.session.execute(stmt)
        return [
            LinkedEventDTO(wallet_address=wallet, event=TxEventDTO.from_model(model))
            for wallet, model in result.all()
        ]


# ============================================================================
# Leaderboard snapshots
# ============================================================================


@dataclass
class SnapshotRecordDTO:
    """Data transfer object for a persisted snapshot."""

    window_key: str
    window_end: datetime
    content_hash: str
    sol_price_usd: Decimal
    entries: list[dict[str, Any]]
    created_at: datetime

    @classmethod
    def from_model(cls, model: LeaderboardSnapshotModel) -> SnapshotRecordDTO:
        return cls(
            window_key=model.window_key,
            window_end=to_utc(model.window_end),
            content_hash=model.content_hash,
            sol_price_usd=Decimal(str(model.sol_price_usd)),
            entries=list(model.entries),
            created_at=to_utc(model.created_at),
        )


class SnapshotRepository:
    """Repository for frozen leaderboard snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, window_key: str, window_end: datetime) -> SnapshotRecordDTO | None:
        result = await self.session.execute(
            select(LeaderboardSnapshotModel).where(
                LeaderboardSnapshotModel.window_key == window_key,
                LeaderboardSnapshotModel.window_end == as_utc(window_end),
            )
        )
        model = result.scalar_one_or_none()
        return SnapshotRecordDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: SnapshotRecordDTO) -> bool:
        """Persist ``dto`` unless a snapshot for the window already exists."""
        stmt = _insert_for(self.session, LeaderboardSnapshotModel).values(
            window_key=dto.window_key,
            window_end=as_utc(dto.window_end),
            content_hash=dto.content_hash,
            sol_price_usd=dto.sol_price_usd,
            entries=dto.entries,
            created_at=as_utc(dto.created_at),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["window_key", "window_end"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)


# ============================================================================
# Markets and orders
# ============================================================================


@dataclass
class MarketDTO:
    """Data transfer object for wager markets."""

    id: str
    window_key: str
    window_end: datetime
    kol_wallet_address: str
    status: str = "open"
    escrow_wallet_address: str | None = None
    fee_bps: int | None = None
    fee_wallet_address: str | None = None
    resolved_outcome: str | None = None
    resolved_rank: int | None = None
    resolved_profit_lamports: int | None = None
    resolved_profit_usd: Decimal | None = None
    snapshot_hash: str | None = None
    settlement_hash: str | None = None
    settlement_nonce: str | None = None
    settled_at: datetime | None = None
    fee_collected_lamports: int = 0

    @classmethod
    def from_model(cls, model: WagerMarketModel) -> MarketDTO:
        return cls(
            id=model.id,
            window_key=model.window_key,
            window_end=to_utc(model.window_end),
            kol_wallet_address=model.kol_wallet_address,
            status=model.status,
            escrow_wallet_address=model.escrow_wallet_address,
            fee_bps=model.fee_bps,
            fee_wallet_address=model.fee_wallet_address,
            resolved_outcome=model.resolved_outcome,
            resolved_rank=model.resolved_rank,
            resolved_profit_lamports=model.resolved_profit_lamports,
            resolved_profit_usd=model.resolved_profit_usd,
            snapshot_hash=model.snapshot_hash,
            settlement_hash=model.settlement_hash,
            settlement_nonce=model.settlement_nonce,
            settled_at=as_utc(model.settled_at),
            fee_collected_lamports=model.fee_collected_lamports or 0,
        )


@dataclass
class MarketResolution:
    """Values written when a market settles."""

    resolved_outcome: str
    resolved_rank: int | None
    resolved_profit_lamports: int | None
    resolved_profit_usd: Decimal | None
    snapshot_hash: str
    settlement_hash: str
    settlement_nonce: str
    settled_at: datetime


class MarketRepository:
    """Repository for wager markets."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: MarketDTO) -> MarketDTO:
        now = datetime.now(UTC)
        self.session.add(
            WagerMarketModel(
                id=dto.id,
                window_key=dto.window_key,
                window_end=as_utc(dto.window_end),
                kol_wallet_address=dto.kol_wallet_address,
                status=dto.status,
                escrow_wallet_address=dto.escrow_wallet_address,
                fee_bps=dto.fee_bps,
                fee_wallet_address=dto.fee_wallet_address,
                created_at=now,
                updated_at=now,
            )
        )
        await self.session.flush()
        return dto

    async def get(self, market_id: str) -> MarketDTO | None:
        result = await self.session.execute(
            select(WagerMarketModel)
            .where(WagerMarketModel.id == market_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return MarketDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: MarketDTO, *, now: datetime | None = None) -> bool:
        """Insert an open market unless one with the same id exists."""
        now = now or datetime.now(UTC)
        stmt = _insert_for(self.session, WagerMarketModel).values(
            id=dto.id,
            window_key=dto.window_key,
            window_end=as_utc(dto.window_end),
            kol_wallet_address=dto.kol_wallet_address,
            status=dto.status,
            escrow_wallet_address=dto.escrow_wallet_address,
            fee_bps=dto.fee_bps,
            fee_wallet_address=dto.fee_wallet_address,
            fee_collected_lamports=0,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def list_due_open(
        self,
        *,
        window_keys: Sequence[str],
        closes_before: datetime,
        limit: int = 1000,
    ) -> list[MarketDTO]:
        """Open markets whose window ended at or before ``closes_before``."""
        result = await self.session.execute(
            select(WagerMarketModel)
            .where(
                WagerMarketModel.window_key.in_(list(window_keys)),
                WagerMarketModel.status == MARKET_OPEN,
                WagerMarketModel.window_end <= as_utc(closes_before),
            )
            .order_by(WagerMarketModel.window_end.asc(), WagerMarketModel.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [MarketDTO.from_model(m) for m in result.scalars().all()]

    async def close_open(self, market_ids: Sequence[str]) -> int:
        """Move still-open markets to closed; returns how many moved."""
        if not market_ids:
            return 0
        result = await self.session.execute(
            update(WagerMarketModel)
            .where(WagerMarketModel.id.in_(list(market_ids)), WagerMarketModel.status == MARKET_OPEN)
            .values(status=MARKET_CLOSED, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return int(result.rowcount or 0)

    async def list_unsettled(
        self,
        *,
        window_keys: Sequence[str],
        closes_before: datetime,
        limit: int = 500,
    ) -> list[MarketDTO]:
        result = await self.session.execute(
            select(WagerMarketModel)
            .where(
                WagerMarketModel.window_key.in_(list(window_keys)),
                WagerMarketModel.window_end <= as_utc(closes_before),
                WagerMarketModel.status.in_(UNSETTLED_MARKET_STATUSES),
                WagerMarketModel.settled_at.is_(None),
            )
            .order_by(WagerMarketModel.window_end.asc(), WagerMarketModel.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [MarketDTO.from_model(m) for m in result.scalars().all()]

    async def nonce_applied(
        self,
        settlement_nonce: str,
        *,
        window_key: str | None = None,
        window_end: datetime | None = None,
    ) -> bool:
        """Whether any market (of the given window, if set) was settled with this nonce."""
        stmt = select(WagerMarketModel.id).where(WagerMarketModel.settlement_nonce == settlement_nonce)
        if window_key is not None:
            stmt = stmt.where(WagerMarketModel.window_key == window_key)
        if window_end is not None:
            stmt = stmt.where(WagerMarketModel.window_end == as_utc(window_end))
        result = await self.session.execute(stmt.limit(1))
        return result.first() is not None

    async def apply_settlement(self, market_id: str, resolution: MarketResolution) -> bool:
        """Settle the market if it is still unsettled. Returns False if another settler won."""
        result = await self.session.execute(
            update(WagerMarketModel)
            .where(
                WagerMarketModel.id == market_id,
                WagerMarketModel.settled_at.is_(None),
                WagerMarketModel.status.in_(UNSETTLED_MARKET_STATUSES),
            )
            .values(
                status="settled",
                resolved_outcome=resolution.resolved_outcome,
                resolved_rank=resolution.resolved_rank,
                resolved_profit_lamports=resolution.resolved_profit_lamports,
                resolved_profit_usd=resolution.resolved_profit_usd,
                snapshot_hash=resolution.snapshot_hash,
                settlement_hash=resolution.settlement_hash,
                settlement_nonce=resolution.settlement_nonce,
                settled_at=as_utc(resolution.settled_at),
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def add_fee_collected(self, market_id: str, lamports: int) -> None:
        await self.session.execute(
            update(WagerMarketModel)
            .where(WagerMarketModel.id == market_id)
            .values(
                fee_collected_lamports=WagerMarketModel.fee_collected_lamports + lamports,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()


@dataclass
class OrderDTO:
    """Data transfer object for wager orders."""

    id: str
    market_id: str
    wallet_address: str
    outcome: str
    side: str = "buy"
    deposit_lamports: int | None = None
    deposit_signature: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: WagerOrderModel) -> OrderDTO:
        return cls(
            id=model.id,
            market_id=model.market_id,
            wallet_address=model.wallet_address,
            outcome=model.outcome,
            side=model.side,
            deposit_lamports=model.deposit_lamports,
            deposit_signature=model.deposit_signature,
            created_at=as_utc(model.created_at),
        )


class OrderRepository:
    """Repository for wager orders."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: OrderDTO) -> OrderDTO:
        self.session.add(
            WagerOrderModel(
                id=dto.id,
                market_id=dto.market_id,
                wallet_address=dto.wallet_address,
                outcome=dto.outcome,
                side=dto.side,
                deposit_lamports=dto.deposit_lamports,
                deposit_signature=dto.deposit_signature,
                created_at=as_utc(dto.created_at) or datetime.now(UTC),
            )
        )
        await self.session.flush()
        return dto

    async def list_funded_buys(self, market_id: str, *, limit: int = 5000) -> list[OrderDTO]:
        """Buy orders with a confirmed deposit, oldest first."""
        result = await self.session.execute(
            select(WagerOrderModel)
            .where(
                WagerOrderModel.market_id == market_id,
                WagerOrderModel.side == "buy",
                WagerOrderModel.deposit_signature.is_not(None),
                WagerOrderModel.deposit_lamports.is_not(None),
            )
            .order_by(WagerOrderModel.created_at.asc(), WagerOrderModel.id.asc())
            .limit(limit)
        )
        return [OrderDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Payout requests
# ============================================================================


@dataclass
class PayoutRequestDTO:
    """Data transfer object for payout requests."""

    id: str
    market_id: str
    kind: str
    destination: str
    amount_lamports: int
    order_id: str | None = None
    state: str = PAYOUT_UNCLAIMED
    processing_token: str | None = None
    pending_signature: str | None = None
    tx_signature: str | None = None
    source_wallet: str | None = None
    error: str | None = None
    attempts: int = 0
    claimed_at: datetime | None = None
    signed_at: datetime | None = None
    sent_at: datetime | None = None

    @property
    def request_key(self) -> str:
        return f"{self.market_id}:{self.kind}:{self.order_id or '-'}"

    @classmethod
    def from_model(cls, model: PayoutRequestModel) -> PayoutRequestDTO:
        return cls(
            id=model.id,
            market_id=model.market_id,
            kind=model.kind,
            destination=model.destination,
            amount_lamports=model.amount_lamports,
            order_id=model.order_id,
            state=model.state,
            processing_token=model.processing_token,
            pending_signature=model.pending_signature,
            tx_signature=model.tx_signature,
            source_wallet=model.source_wallet,
            error=model.error,
            attempts=model.attempts or 0,
            claimed_at=as_utc(model.claimed_at),
            signed_at=as_utc(model.signed_at),
            sent_at=as_utc(model.sent_at),
        )


class PayoutRequestRepository:
    """Repository for the payout state machine.

    States: unclaimed → processing → sent | failed; failed may be re-claimed.
    Only the holder of ``processing_token`` can finalize a claim.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: PayoutRequestDTO) -> bool:
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, PayoutRequestModel).values(
            id=dto.id,
            request_key=dto.request_key,
            market_id=dto.market_id,
            order_id=dto.order_id,
            kind=dto.kind,
            destination=dto.destination,
            amount_lamports=dto.amount_lamports,
            state=PAYOUT_UNCLAIMED,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["request_key"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def get(self, request_id: str) -> PayoutRequestDTO | None:
        result = await self.session.execute(
            select(PayoutRequestModel)
            .where(PayoutRequestModel.id == request_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return PayoutRequestDTO.from_model(model) if model else None

    async def list_for_market(
        self,
        market_id: str,
        *,
        states: Sequence[str] | None = None,
        limit: int = 5000,
    ) -> list[PayoutRequestDTO]:
        stmt = (
            select(PayoutRequestModel)
            .where(PayoutRequestModel.market_id == market_id)
            .order_by(PayoutRequestModel.created_at.asc(), PayoutRequestModel.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        if states is not None:
            stmt = stmt.where(PayoutRequestModel.state.in_(list(states)))
        result = await self.session.execute(stmt)
        return [PayoutRequestDTO.from_model(m) for m in result.scalars().all()]

    async def claim(self, request_id: str, *, token: str, now: datetime | None = None) -> bool:
        """Atomically move an unclaimed/failed request to processing under ``token``.

        A previous ``pending_signature`` is kept so the new holder can check
        whether that transfer landed before signing another.
        """
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            update(PayoutRequestModel)
            .where(
                PayoutRequestModel.id == request_id,
                PayoutRequestModel.state.in_((PAYOUT_UNCLAIMED, PAYOUT_FAILED)),
                PayoutRequestModel.tx_signature.is_(None),
            )
            .values(
                state=PAYOUT_PROCESSING,
                processing_token=token,
                error=None,
                attempts=PayoutRequestModel.attempts + 1,
                claimed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return bool(result.rowcount)

    def _held(self, request_id: str, token: str) -> Any:
        return and_(
            PayoutRequestModel.id == request_id,
            PayoutRequestModel.processing_token == token,
            PayoutRequestModel.state == PAYOUT_PROCESSING,
        )

    async def set_pending_signature(
        self,
        request_id: str,
        *,
        token: str,
        signature: str,
        source_wallet: str,
        now: datetime | None = None,
    ) -> bool:
        """Record the signature of the signed transfer before it is broadcast."""
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            update(PayoutRequestModel)
            .where(self._held(request_id, token))
            .values(
                pending_signature=signature,
                source_wallet=source_wallet,
                signed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def mark_sent(
        self, request_id: str, *, token: str, signature: str, now: datetime | None = None
    ) -> bool:
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            update(PayoutRequestModel)
            .where(self._held(request_id, token))
            .values(state=PAYOUT_SENT, tx_signature=signature, error=None, sent_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def mark_failed(self, request_id: str, *, token: str, error: str) -> bool:
        result = await self.session.execute(
            update(PayoutRequestModel)
            .where(self._held(request_id, token))
            .values(state=PAYOUT_FAILED, error=error[:2000], updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def record_error(self, request_id: str, *, token: str, error: str) -> bool:
        """Attach an error without leaving processing (funds may have moved)."""
        result = await self.session.execute(
            update(PayoutRequestModel)
            .where(self._held(request_id, token))
            .values(error=error[:2000], updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def list_stale_processing(self, *, older_than: datetime, limit: int = 200) -> list[PayoutRequestDTO]:
        result = await self.session.execute(
            select(PayoutRequestModel)
            .where(
                PayoutRequestModel.state == PAYOUT_PROCESSING,
                PayoutRequestModel.claimed_at < as_utc(older_than),
            )
            .order_by(PayoutRequestModel.claimed_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [PayoutRequestDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Escrow withdrawals
# ============================================================================


@dataclass
class WithdrawalDTO:
    """Data transfer object for escrow withdrawals."""

    withdrawal_id: str
    user_pubkey: str
    destination_pubkey: str
    amount_lamports: int
    status: str = "REQUESTED"
    tx_sig: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: EscrowWithdrawalModel) -> WithdrawalDTO:
        return cls(
            withdrawal_id=model.withdrawal_id,
            user_pubkey=model.user_pubkey,
            destination_pubkey=model.destination_pubkey,
            amount_lamports=model.amount_lamports,
            status=model.status,
            tx_sig=model.tx_sig,
            created_at=as_utc(model.created_at),
        )


class WithdrawalRepository:
    """Read access to pending withdrawals; transitions go through stored procedures."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: WithdrawalDTO) -> WithdrawalDTO:
        self.session.add(
            EscrowWithdrawalModel(
                withdrawal_id=dto.withdrawal_id,
                user_pubkey=dto.user_pubkey,
                destination_pubkey=dto.destination_pubkey,
                amount_lamports=dto.amount_lamports,
                status=dto.status,
                tx_sig=dto.tx_sig,
                created_at=as_utc(dto.created_at) or datetime.now(UTC),
            )
        )
        await self.session.flush()
        return dto

    async def list_requested(self, *, limit: int = 25) -> list[WithdrawalDTO]:
        result = await self.session.execute(
            select(EscrowWithdrawalModel)
            .where(EscrowWithdrawalModel.status == "REQUESTED", EscrowWithdrawalModel.tx_sig.is_(None))
            .order_by(EscrowWithdrawalModel.created_at.asc())
            .limit(limit)
        )
        return [WithdrawalDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# System configuration and audit log
# ============================================================================


class SystemConfigRepository:
    """Key/value JSON configuration."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, key: str) -> dict[str, Any] | None:
        result = await self.session.execute(
            select(SystemConfigModel.value).where(SystemConfigModel.key == key)
        )
        row = result.first()
        if row is None or not isinstance(row[0], dict):
            return None
        return dict(row[0])

    async def set(self, key: str, value: dict[str, Any]) -> None:
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, SystemConfigModel).values(key=key, value=value, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": stmt.excluded.value, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()


@dataclass
class EscrowAuditEntryDTO:
    """Data transfer object for escrow audit log entries."""

    operation: str
    escrow_address: str | None = None
    market_id: str | None = None
    reference_id: str | None = None
    amount_lamports: int | None = None
    signature: str | None = None
    from_wallet: str | None = None
    to_wallet: str | None = None
    details: dict[str, Any] | None = field(default=None)
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: EscrowAuditLogModel) -> EscrowAuditEntryDTO:
        return cls(
            operation=model.operation,
            escrow_address=model.escrow_address,
            market_id=model.market_id,
            reference_id=model.reference_id,
            amount_lamports=model.amount_lamports,
            signature=model.signature,
            from_wallet=model.from_wallet,
            to_wallet=model.to_wallet,
            details=model.details,
            created_at=as_utc(model.created_at),
        )


class EscrowAuditLogRepository:
    """Append-only escrow audit log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: EscrowAuditEntryDTO) -> None:
        self.session.add(
            EscrowAuditLogModel(
                operation=dto.operation,
                escrow_address=dto.escrow_address,
                market_id=dto.market_id,
                reference_id=dto.reference_id,
                amount_lamports=dto.amount_lamports,
                signature=dto.signature,
                from_wallet=dto.from_wallet,
                to_wallet=dto.to_wallet,
                details=dto.details,
                created_at=as_utc(dto.created_at) or datetime.now(UTC),
            )
        )
        await self.session.flush()

    async def list_recent(self, *, limit: int = 100) -> list[EscrowAuditEntryDTO]:
        result = await self.session.execute(
            select(EscrowAuditLogModel).order_by(EscrowAuditLogModel.id.desc()).limit(limit)
        )
        return [EscrowAuditEntryDTO.from_model(m) for m in result.scalars().all()]
