"""Storage layer - Database schemas, repositories and stored procedures."""

from kol_wager_engine.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from kol_wager_engine.storage.models import Base
from kol_wager_engine.storage.procedures import ProcedureError, ProcedureGateway, UnknownProcedureError
from kol_wager_engine.storage.repos import (
    EscrowAuditLogRepository,
    MarketRepository,
    OrderRepository,
    PayoutRequestRepository,
    SnapshotRepository,
    SystemConfigRepository,
    TrackedWalletRepository,
    TxEventRepository,
    WithdrawalRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "EscrowAuditLogRepository",
    "MarketRepository",
    "OrderRepository",
    "PayoutRequestRepository",
    "ProcedureError",
    "ProcedureGateway",
    "SnapshotRepository",
    "SystemConfigRepository",
    "TrackedWalletRepository",
    "TxEventRepository",
    "UnknownProcedureError",
    "WithdrawalRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
