"""Settlement - market resolution, payouts, withdrawals and escrow safety."""

from kol_wager_engine.settlement.funding import (
    FundingSelector,
    InsufficientFundsError,
    select_funding_wallet,
)
from kol_wager_engine.settlement.markets import MarketLifecycle, next_window_close
from kol_wager_engine.settlement.payouts import (
    FeeConfig,
    FeeConfigProvider,
    PayoutPlan,
    PayoutPlanningError,
    PayoutProcessor,
    PayoutService,
    plan_market_payouts,
)
from kol_wager_engine.settlement.resolver import (
    SettlementReport,
    SettlementService,
    compute_settlement_hash,
    settlement_nonce_for,
)
from kol_wager_engine.settlement.safety import EmergencyHalt, EmergencyHaltError, EscrowAuditLog
from kol_wager_engine.settlement.withdrawals import WithdrawalProcessor

__all__ = [
    "EmergencyHalt",
    "EmergencyHaltError",
    "EscrowAuditLog",
    "FeeConfig",
    "FeeConfigProvider",
    "FundingSelector",
    "InsufficientFundsError",
    "MarketLifecycle",
    "PayoutPlan",
    "PayoutPlanningError",
    "PayoutProcessor",
    "PayoutService",
    "SettlementReport",
    "SettlementService",
    "WithdrawalProcessor",
    "compute_settlement_hash",
    "next_window_close",
    "plan_market_payouts",
    "select_funding_wallet",
    "settlement_nonce_for",
]
