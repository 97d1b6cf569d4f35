"""SQLAlchemy models for persistent storage.

This module defines the database schema for tracked wallets, ingested
transaction events, leaderboard snapshots, wager markets and orders, payout
requests, escrow withdrawals and operational configuration.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Base58 Solana addresses are at most 44 characters; signatures at most 88.
ADDRESS_LEN = 44
SIGNATURE_LEN = 88


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TrackedWalletModel(Base):
    """A KOL wallet whose activity is ranked.

    ``tracked_from`` / ``tracked_until`` version the cohort so historical
    windows are ranked against the wallets tracked at the time.
    """

    __tablename__ = "tracked_wallets"

    wallet_address: Mapped[str] = mapped_column(String(ADDRESS_LEN), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_tracked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    tracked_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tracked_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    tracked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    wallet_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("idx_tracked_wallets_active_rank", "is_active", "is_tracked", "tracked_rank"),
    )


class TxEventModel(Base):
    """An ingested transaction event, keyed by signature."""

    __tablename__ = "tx_events"

    signature: Mapped[str] = mapped_column(String(SIGNATURE_LEN), primary_key=True)
    block_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    slot: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (Index("idx_tx_events_block_time", "block_time"),)


class TxEventWalletModel(Base):
    """Link between an event and a tracked wallet it touched."""

    __tablename__ = "tx_event_wallets"

    signature: Mapped[str] = mapped_column(
        String(SIGNATURE_LEN),
        ForeignKey("tx_events.signature", ondelete="CASCADE"),
        primary_key=True,
    )
    wallet_address: Mapped[str] = mapped_column(String(ADDRESS_LEN), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (Index("idx_tx_event_wallets_wallet", "wallet_address"),)


class LeaderboardSnapshotModel(Base):
    """Frozen, hash-stamped ranking for one (window_key, window_end)."""

    __tablename__ = "leaderboard_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    window_key: Mapped[str] = mapped_column(String(16), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(32), nullable=False)
    sol_price_usd: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    entries: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("window_key", "window_end", name="uq_leaderboard_snapshots_window"),
    )


class WagerMarketModel(Base):
    """A yes/no market on whether a KOL finishes a window in the top N."""

    __tablename__ = "wager_markets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    window_key: Mapped[str] = mapped_column(String(16), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    kol_wallet_address: Mapped[str] = mapped_column(String(ADDRESS_LEN), nullable=False)
    # open | closed | settled | cancelled
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    escrow_wallet_address: Mapped[str | None] = mapped_column(String(ADDRESS_LEN), nullable=True)
    fee_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fee_wallet_address: Mapped[str | None] = mapped_column(String(ADDRESS_LEN), nullable=True)

    resolved_outcome: Mapped[str | None] = mapped_column(String(3), nullable=True)
    resolved_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_profit_lamports: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolved_profit_usd: Mapped[Decimal | None] = mapped_column(Numeric(24, 6), nullable=True)
    snapshot_hash: Mapped[str | None] = mapped_column(String(32), nullable=True)
    settlement_hash: Mapped[str | None] = mapped_column(String(32), nullable=True)
    settlement_nonce: Mapped[str | None] = mapped_column(String(64), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fee_collected_lamports: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("idx_wager_markets_window", "window_key", "window_end"),
        Index("idx_wager_markets_status", "status", "window_end"),
        Index("idx_wager_markets_nonce", "settlement_nonce"),
    )


class WagerOrderModel(Base):
    """A deposit-backed position on one side of a market."""

    __tablename__ = "wager_orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    market_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("wager_markets.id", ondelete="CASCADE"), nullable=False
    )
    wallet_address: Mapped[str] = mapped_column(String(ADDRESS_LEN), nullable=False)
    outcome: Mapped[str] = mapped_column(String(3), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False, default="buy")
    deposit_lamports: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    deposit_signature: Mapped[str | None] = mapped_column(String(SIGNATURE_LEN), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (Index("idx_wager_orders_market", "market_id", "created_at"),)


class PayoutRequestModel(Base):
    """One escrow transfer driven through unclaimed → processing → sent|failed."""

    __tablename__ = "payout_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # "<market_id>:<kind>:<order_id or ->" makes planning idempotent.
    request_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    market_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    destination: Mapped[str] = mapped_column(String(ADDRESS_LEN), nullable=False)
    amount_lamports: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_wallet: Mapped[str | None] = mapped_column(String(ADDRESS_LEN), nullable=True)

    state: Mapped[str] = mapped_column(String(12), nullable=False, default="unclaimed")
    processing_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    pending_signature: Mapped[str | None] = mapped_column(String(SIGNATURE_LEN), nullable=True)
    tx_signature: Mapped[str | None] = mapped_column(String(SIGNATURE_LEN), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("idx_payout_requests_market", "market_id"),
        Index("idx_payout_requests_state", "state", "claimed_at"),
    )


class EscrowWithdrawalModel(Base):
    """User withdrawal request; state transitions happen in stored procedures."""

    __tablename__ = "escrow_withdrawals"

    withdrawal_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_pubkey: Mapped[str] = mapped_column(String(ADDRESS_LEN), nullable=False)
    destination_pubkey: Mapped[str] = mapped_column(String(ADDRESS_LEN), nullable=False)
    amount_lamports: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # REQUESTED | SENDING | SENT | FAILED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="REQUESTED")
    processing_nonce: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tx_sig: Mapped[str | None] = mapped_column(String(SIGNATURE_LEN), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (Index("idx_escrow_withdrawals_status", "status", "created_at"),)


class SystemConfigModel(Base):
    """Hot-reloadable JSON configuration keyed by name."""

    __tablename__ = "system_config"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class EscrowAuditLogModel(Base):
    """Append-only record of escrow fund movements and admin actions."""

    __tablename__ = "escrow_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    escrow_address: Mapped[str | None] = mapped_column(String(ADDRESS_LEN), nullable=True)
    market_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount_lamports: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    signature: Mapped[str | None] = mapped_column(String(SIGNATURE_LEN), nullable=True)
    from_wallet: Mapped[str | None] = mapped_column(String(ADDRESS_LEN), nullable=True)
    to_wallet: Mapped[str | None] = mapped_column(String(ADDRESS_LEN), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (Index("idx_escrow_audit_log_created", "created_at"),)
