"""Analytics - trade classification, realized PnL, eligibility and snapshots."""

from kol_wager_engine.analytics.classifier import is_trade_like
from kol_wager_engine.analytics.eligibility import (
    EligibilityConfig,
    EligibilityConfigProvider,
    WalletWindowStats,
    evaluate_eligibility,
)
from kol_wager_engine.analytics.ledger import (
    InventoryState,
    RealizedPnL,
    TradeLeg,
    compute_realized_pnl,
    extract_trade_leg,
)
from kol_wager_engine.analytics.snapshot import (
    WINDOW_LENGTHS,
    RankedEntry,
    Snapshot,
    SnapshotAudit,
    SnapshotIntegrityError,
    SnapshotService,
    build_snapshot,
    verify_snapshot_hash,
)

__all__ = [
    "WINDOW_LENGTHS",
    "EligibilityConfig",
    "EligibilityConfigProvider",
    "InventoryState",
    "RankedEntry",
    "RealizedPnL",
    "Snapshot",
    "SnapshotAudit",
    "SnapshotIntegrityError",
    "SnapshotService",
    "TradeLeg",
    "WalletWindowStats",
    "build_snapshot",
    "compute_realized_pnl",
    "evaluate_eligibility",
    "extract_trade_leg",
    "is_trade_like",
    "verify_snapshot_hash",
]
