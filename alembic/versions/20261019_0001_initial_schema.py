"""Initial schema for tracked wallets, events, snapshots and wager markets.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tracked KOL wallets
    op.create_table(
        "tracked_wallets",
        sa.Column("wallet_address", sa.String(44), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_tracked", sa.Boolean(), nullable=False),
        sa.Column("tracked_rank", sa.Integer(), nullable=True),
        sa.Column("tracked_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tracked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("wallet_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_address"),
    )
    op.create_index(
        "idx_tracked_wallets_active_rank",
        "tracked_wallets",
        ["is_active", "is_tracked", "tracked_rank"],
    )

    # Ingested transaction events
    op.create_table(
        "tx_events",
        sa.Column("signature", sa.String(88), nullable=False),
        sa.Column("block_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("slot", sa.BigInteger(), nullable=True),
        sa.Column("type", sa.String(64), nullable=True),
        sa.Column("source", sa.String(64), nullable=True),
        sa.Column("raw", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("signature"),
    )
    op.create_index("idx_tx_events_block_time", "tx_events", ["block_time"])

    op.create_table(
        "tx_event_wallets",
        sa.Column("signature", sa.String(88), nullable=False),
        sa.Column("wallet_address", sa.String(44), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["signature"], ["tx_events.signature"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("signature", "wallet_address"),
    )
    op.create_index("idx_tx_event_wallets_wallet", "tx_event_wallets", ["wallet_address"])

    # Frozen leaderboard snapshots
    op.create_table(
        "leaderboard_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("window_key", sa.String(16), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("content_hash", sa.String(32), nullable=False),
        sa.Column("sol_price_usd", sa.Numeric(18, 6), nullable=False),
        sa.Column("entries", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("window_key", "window_end", name="uq_leaderboard_snapshots_window"),
    )

    # Wager markets and orders
    op.create_table(
        "wager_markets",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("window_key", sa.String(16), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("kol_wallet_address", sa.String(44), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("escrow_wallet_address", sa.String(44), nullable=True),
        sa.Column("fee_bps", sa.Integer(), nullable=True),
        sa.Column("fee_wallet_address", sa.String(44), nullable=True),
        sa.Column("resolved_outcome", sa.String(3), nullable=True),
        sa.Column("resolved_rank", sa.Integer(), nullable=True),
        sa.Column("resolved_profit_lamports", sa.BigInteger(), nullable=True),
        sa.Column("resolved_profit_usd", sa.Numeric(24, 6), nullable=True),
        sa.Column("snapshot_hash", sa.String(32), nullable=True),
        sa.Column("settlement_hash", sa.String(32), nullable=True),
        sa.Column("settlement_nonce", sa.String(64), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fee_collected_lamports", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_wager_markets_window", "wager_markets", ["window_key", "window_end"])
    op.create_index("idx_wager_markets_status", "wager_markets", ["status", "window_end"])
    op.create_index("idx_wager_markets_nonce", "wager_markets", ["settlement_nonce"])

    op.create_table(
        "wager_orders",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("market_id", sa.String(64), nullable=False),
        sa.Column("wallet_address", sa.String(44), nullable=False),
        sa.Column("outcome", sa.String(3), nullable=False),
        sa.Column("side", sa.String(4), nullable=False),
        sa.Column("deposit_lamports", sa.BigInteger(), nullable=True),
        sa.Column("deposit_signature", sa.String(88), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["market_id"], ["wager_markets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_wager_orders_market", "wager_orders", ["market_id", "created_at"])

    # Payouts and withdrawals
    op.create_table(
        "payout_requests",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("request_key", sa.String(200), nullable=False),
        sa.Column("market_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.String(64), nullable=True),
        sa.Column("kind", sa.String(8), nullable=False),
        sa.Column("destination", sa.String(44), nullable=False),
        sa.Column("amount_lamports", sa.BigInteger(), nullable=False),
        sa.Column("source_wallet", sa.String(44), nullable=True),
        sa.Column("state", sa.String(12), nullable=False),
        sa.Column("processing_token", sa.String(36), nullable=True),
        sa.Column("pending_signature", sa.String(88), nullable=True),
        sa.Column("tx_signature", sa.String(88), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_key"),
    )
    op.create_index("idx_payout_requests_market", "payout_requests", ["market_id"])
    op.create_index("idx_payout_requests_state", "payout_requests", ["state", "claimed_at"])

    op.create_table(
        "escrow_withdrawals",
        sa.Column("withdrawal_id", sa.String(64), nullable=False),
        sa.Column("user_pubkey", sa.String(44), nullable=False),
        sa.Column("destination_pubkey", sa.String(44), nullable=False),
        sa.Column("amount_lamports", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("processing_nonce", sa.String(100), nullable=True),
        sa.Column("tx_sig", sa.String(88), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("withdrawal_id"),
    )
    op.create_index("idx_escrow_withdrawals_status", "escrow_withdrawals", ["status", "created_at"])

    # Operational configuration and audit trail
    op.create_table(
        "system_config",
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("value", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "escrow_audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("operation", sa.String(32), nullable=False),
        sa.Column("escrow_address", sa.String(44), nullable=True),
        sa.Column("market_id", sa.String(64), nullable=True),
        sa.Column("reference_id", sa.String(64), nullable=True),
        sa.Column("amount_lamports", sa.BigInteger(), nullable=True),
        sa.Column("signature", sa.String(88), nullable=True),
        sa.Column("from_wallet", sa.String(44), nullable=True),
        sa.Column("to_wallet", sa.String(44), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_escrow_audit_log_created", "escrow_audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_index("idx_escrow_audit_log_created", table_name="escrow_audit_log")
    op.drop_table("escrow_audit_log")
    op.drop_table("system_config")
    op.drop_index("idx_escrow_withdrawals_status", table_name="escrow_withdrawals")
    op.drop_table("escrow_withdrawals")
    op.drop_index("idx_payout_requests_state", table_name="payout_requests")
    op.drop_index("idx_payout_requests_market", table_name="payout_requests")
    op.drop_table("payout_requests")
    op.drop_index("idx_wager_orders_market", table_name="wager_orders")
    op.drop_table("wager_orders")
    op.drop_index("idx_wager_markets_nonce", table_name="wager_markets")
    op.drop_index("idx_wager_markets_status", table_name="wager_markets")
    op.drop_index("idx_wager_markets_window", table_name="wager_markets")
    op.drop_table("wager_markets")
    op.drop_table("leaderboard_snapshots")
    op.drop_index("idx_tx_event_wallets_wallet", table_name="tx_event_wallets")
    op.drop_table("tx_event_wallets")
    op.drop_index("idx_tx_events_block_time", table_name="tx_events")
    op.drop_table("tx_events")
    op.drop_index("idx_tracked_wallets_active_rank", table_name="tracked_wallets")
    op.drop_table("tracked_wallets")
