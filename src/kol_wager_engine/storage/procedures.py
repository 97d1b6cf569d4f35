"""Invocation of the exchange's PostgreSQL stored procedures.

Order matching, nonce consumption and withdrawal transitions live in
database functions. This module only calls them by name with named
parameters and decodes their JSON result.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

KNOWN_PROCEDURES = frozenset(
    {
        "pm_place_order",
        "pm_cancel_order",
        "pm_claim_settlement",
        "pm_credit_deposit",
        "pm_use_nonce",
        "pm_begin_withdrawal_send",
        "pm_mark_withdrawal_sent",
        "pm_fail_withdrawal",
    }
)

_PARAM_RE = re.compile(r"^p_[a-z0-9_]+$")


class ProcedureError(Exception):
    """Raised when a stored procedure call fails."""


class UnknownProcedureError(ProcedureError):
    """Raised for procedure names outside the allow-list."""


def build_call_sql(name: str, params: dict[str, Any]) -> str:
    """Render ``SELECT name(p_a => :p_a, ...) AS result`` for an allowed name.

    Raises:
        UnknownProcedureError: If ``name`` is not a known procedure.
        ProcedureError: If a parameter name is not of the form ``p_<ident>``.
    """
    if name not in KNOWN_PROCEDURES:
        raise UnknownProcedureError(f"Unknown stored procedure: {name}")
    for key in params:
        if not _PARAM_RE.match(key):
            raise ProcedureError(f"Invalid parameter name for {name}: {key!r}")
    args = ", ".join(f"{key} => :{key}" for key in params)
    return f"SELECT {name}({args}) AS result"


def _decode(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, (str, bytes)):
        value = json.loads(value)
    if isinstance(value, dict):
        return value
    return {"value": value}


class ProcedureGateway:
    """Calls whitelisted stored procedures on a PostgreSQL session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def call(self, name: str, **params: Any) -> dict[str, Any]:
        """Execute ``name`` with named ``p_*`` parameters and return its JSON result."""
        sql = build_call_sql(name, params)
        try:
            result = await self.session.execute(text(sql), params)
            row = result.first()
        except SQLAlchemyError as e:
            logger.warning("Stored procedure %s failed: %s", name, e)
            raise ProcedureError(f"{name} failed: {e}") from e
        try:
            return _decode(row[0] if row is not None else None)
        except ValueError as e:
            raise ProcedureError(f"{name} returned invalid JSON: {e}") from e
