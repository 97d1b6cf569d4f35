"""Escrow safety controls: emergency halt switch and escrow audit log."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from kol_wager_engine.storage.database import DatabaseManager
from kol_wager_engine.storage.repos import (
    EscrowAuditEntryDTO,
    EscrowAuditLogRepository,
    SystemConfigRepository,
)

logger = logging.getLogger(__name__)

EMERGENCY_HALT_KEY = "emergency_halt"


class EmergencyHaltError(Exception):
    """Raised when escrow movement is attempted while the halt switch is on."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(f"Emergency halt active: {reason}" if reason else "Emergency halt active")


class EmergencyHalt:
    """Halt switch stored under ``system_config["emergency_halt"]``.

    Every escrow-moving job checks it before starting a batch. Each call uses
    its own short session so the flag is read fresh.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def status(self) -> dict[str, Any]:
        async with self._db.get_async_session() as session:
            value = await SystemConfigRepository(session).get(EMERGENCY_HALT_KEY)
        return value or {"active": False}

    async def is_active(self) -> bool:
        status = await self.status()
        return status.get("active") is True

    async def ensure_inactive(self) -> None:
        """Raises:
        EmergencyHaltError: If the halt switch is on.
        """
        status = await self.status()
        if status.get("active") is True:
            raise EmergencyHaltError(status.get("reason"))

    async def activate(self, reason: str, *, now: datetime | None = None) -> None:
        now = now or datetime.now(UTC)
        async with self._db.get_async_session() as session:
            await SystemConfigRepository(session).set(
                EMERGENCY_HALT_KEY,
                {"active": True, "reason": reason, "activated_at": now.isoformat()},
            )
        logger.warning("Emergency halt activated: %s", reason)

    async def deactivate(self, *, now: datetime | None = None) -> None:
        now = now or datetime.now(UTC)
        async with self._db.get_async_session() as session:
            await SystemConfigRepository(session).set(
                EMERGENCY_HALT_KEY,
                {"active": False, "deactivated_at": now.isoformat()},
            )
        logger.warning("Emergency halt deactivated")


class EscrowAuditLog:
    """Append-only record of escrow movements.

    Entries are written in their own transaction so they survive a rollback
    of the caller's work. A failed insert is logged and never interrupts the
    transfer it describes.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def record(
        self,
        operation: str,
        *,
        escrow_address: str | None = None,
        market_id: str | None = None,
        reference_id: str | None = None,
        amount_lamports: int | None = None,
        signature: str | None = None,
        from_wallet: str | None = None,
        to_wallet: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        entry = EscrowAuditEntryDTO(
            operation=operation,
            escrow_address=escrow_address,
            market_id=market_id,
            reference_id=reference_id,
            amount_lamports=amount_lamports,
            signature=signature,
            from_wallet=from_wallet,
            to_wallet=to_wallet,
            details=details,
        )
        try:
            async with self._db.get_async_session() as session:
                await EscrowAuditLogRepository(session).insert(entry)
        except SQLAlchemyError as e:
            logger.warning("Failed to write escrow audit log (%s %s): %s", operation, signature, e)
            return False
        return True
