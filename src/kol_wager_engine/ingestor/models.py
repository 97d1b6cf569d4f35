"""Data models for ingested transaction events.

Payloads come from a third-party enhanced-transaction webhook whose schema is
not versioned. Every field is optional: each accessor checks presence and type
and falls back to ``None`` / empty instead of assuming a shape.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

SIGNATURE_KEYS = ("signature", "transactionSignature", "txSignature")
TIMESTAMP_KEYS = ("timestamp", "blockTime", "block_time")
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
# Wider than any u64/u128 on-chain amount; larger magnitudes are garbage.
MAX_EXPONENT = 40


class MalformedEventError(ValueError):
    """Raised when a payload cannot be turned into a TransactionEvent."""


def _as_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_decimal(value: object) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        result = Decimal(str(value).strip()) if isinstance(value, (int, float, str)) else None
    except InvalidOperation:
        return None
    if result is None or not result.is_finite() or result.adjusted() > MAX_EXPONENT:
        return None
    return result


def _as_int(value: object) -> int | None:
    """Integer value of ``value``; fractions truncate, non-finite or absurd values are None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, (float, str)):
        number = _as_decimal(value)
        return int(number) if number is not None else None
    return None


def _as_int64(value: object) -> int | None:
    """Like ``_as_int`` but None outside the signed 64-bit range of BIGINT columns."""
    number = _as_int(value)
    if number is None or not INT64_MIN <= number <= INT64_MAX:
        return None
    return number


def _as_list(value: object) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_timestamp(value: object) -> datetime | None:
    """Parse seconds, milliseconds (> 1e12) or ISO-8601 strings to UTC."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts != ts or ts <= 0:
            return None
        if ts > 1e12:
            ts /= 1000.0
        with contextlib.suppress(OverflowError, OSError, ValueError):
            return datetime.fromtimestamp(ts, tz=UTC)
        return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        numeric = _as_decimal(text)
        if numeric is not None:
            return parse_timestamp(float(numeric))
        with contextlib.suppress(ValueError):
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
    return None


@dataclass(frozen=True)
class NativeTransfer:
    """A lamport movement between two accounts."""

    from_account: str | None
    to_account: str | None
    amount: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NativeTransfer:
        amount = _as_int(data.get("amount"))
        if amount is None:
            amount = _as_int(data.get("lamports"))
        return cls(
            from_account=_as_str(data.get("fromUserAccount")),
            to_account=_as_str(data.get("toUserAccount")),
            amount=amount or 0,
        )


@dataclass(frozen=True)
class TokenTransfer:
    """An SPL token movement; ``amount`` is in UI units."""

    from_account: str | None
    to_account: str | None
    mint: str | None
    amount: Decimal

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenTransfer:
        return cls(
            from_account=_as_str(data.get("fromUserAccount")),
            to_account=_as_str(data.get("toUserAccount")),
            mint=_as_str(data.get("mint")),
            amount=_as_decimal(data.get("tokenAmount")) or Decimal(0),
        )


@dataclass(frozen=True)
class TokenAmount:
    """A raw base-unit amount plus optional decimals."""

    raw: int
    decimals: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenAmount:
        return cls(
            raw=_as_int(data.get("tokenAmount")) or 0,
            decimals=_as_int(data.get("decimals")),
        )

    @property
    def ui_amount(self) -> Decimal:
        if not self.decimals:
            return Decimal(self.raw)
        return Decimal(self.raw).scaleb(-self.decimals)


@dataclass(frozen=True)
class TokenBalanceChange:
    """Token balance delta recorded against an account."""

    user_account: str | None
    mint: str | None
    amount: TokenAmount

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenBalanceChange:
        return cls(
            user_account=_as_str(data.get("userAccount")),
            mint=_as_str(data.get("mint")),
            amount=TokenAmount.from_dict(_as_dict(data.get("rawTokenAmount"))),
        )


@dataclass(frozen=True)
class AccountData:
    """Per-account balance deltas for the transaction."""

    account: str | None
    native_balance_change: int | None
    token_balance_changes: tuple[TokenBalanceChange, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccountData:
        return cls(
            account=_as_str(data.get("account")),
            native_balance_change=_as_int(data.get("nativeBalanceChange")),
            token_balance_changes=tuple(
                TokenBalanceChange.from_dict(c)
                for c in _as_list(data.get("tokenBalanceChanges"))
                if isinstance(c, dict)
            ),
        )

    def owned_token_changes(self, wallet: str) -> list[TokenBalanceChange]:
        """Token changes owned by ``wallet`` (by userAccount, else by account)."""
        return [
            c
            for c in self.token_balance_changes
            if (c.user_account or self.account) == wallet
        ]


@dataclass(frozen=True)
class SwapNativeLeg:
    account: str | None
    amount: int

    @classmethod
    def from_dict(cls, data: object) -> SwapNativeLeg | None:
        if not isinstance(data, dict):
            return None
        return cls(account=_as_str(data.get("account")), amount=_as_int(data.get("amount")) or 0)


@dataclass(frozen=True)
class SwapTokenLeg:
    user_account: str | None
    mint: str | None
    amount: TokenAmount

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SwapTokenLeg:
        return cls(
            user_account=_as_str(data.get("userAccount")),
            mint=_as_str(data.get("mint")),
            amount=TokenAmount.from_dict(_as_dict(data.get("rawTokenAmount"))),
        )


@dataclass(frozen=True)
class SwapEvent:
    """Decoded swap, possibly routed through nested inner swaps."""

    native_input: SwapNativeLeg | None = None
    native_output: SwapNativeLeg | None = None
    token_inputs: tuple[SwapTokenLeg, ...] = ()
    token_outputs: tuple[SwapTokenLeg, ...] = ()
    inner_swaps: tuple[SwapEvent, ...] = ()

    @classmethod
    def from_dict(cls, data: object, *, depth: int = 0) -> SwapEvent | None:
        if not isinstance(data, dict) or depth > 16:
            return None
        inner = tuple(
            s
            for s in (cls.from_dict(x, depth=depth + 1) for x in _as_list(data.get("innerSwaps")))
            if s is not None
        )
        return cls(
            native_input=SwapNativeLeg.from_dict(data.get("nativeInput")),
            native_output=SwapNativeLeg.from_dict(data.get("nativeOutput")),
            token_inputs=tuple(
                SwapTokenLeg.from_dict(t) for t in _as_list(data.get("tokenInputs")) if isinstance(t, dict)
            ),
            token_outputs=tuple(
                SwapTokenLeg.from_dict(t) for t in _as_list(data.get("tokenOutputs")) if isinstance(t, dict)
            ),
            inner_swaps=inner,
        )

    def walk(self) -> list[SwapEvent]:
        """This swap followed by every nested inner swap, depth first."""
        out = [self]
        for inner in self.inner_swaps:
            out.extend(inner.walk())
        return out


@dataclass(frozen=True)
class TransactionEvent:
    """One decoded, finalized transaction.

    Immutable once ingested and keyed by ``signature``. ``raw`` keeps the
    original payload so the event can be re-parsed when the model evolves.
    """

    signature: str
    timestamp: datetime | None = None
    slot: int | None = None
    type: str | None = None
    source: str | None = None
    fee: int | None = None
    fee_payer: str | None = None
    transaction_error: object | None = None
    native_transfers: tuple[NativeTransfer, ...] = ()
    token_transfers: tuple[TokenTransfer, ...] = ()
    account_data: tuple[AccountData, ...] = ()
    swap: SwapEvent | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @classmethod
    def from_payload(cls, payload: object) -> TransactionEvent:
        """Create a TransactionEvent from a webhook payload.

        Raises:
            MalformedEventError: If the payload is not an object or has no
                usable signature.
        """
        if not isinstance(payload, dict):
            raise MalformedEventError(f"event payload must be an object, got {type(payload).__name__}")

        signature = next((s for s in (_as_str(payload.get(k)) for k in SIGNATURE_KEYS) if s), None)
        if signature is None:
            raise MalformedEventError("event payload has no signature")

        timestamp = None
        for key in TIMESTAMP_KEYS:
            timestamp = parse_timestamp(payload.get(key))
            if timestamp is not None:
                break

        tx_error = payload.get("transactionError")
        if isinstance(tx_error, dict):
            tx_error = tx_error.get("error")

        events = _as_dict(payload.get("events"))

        return cls(
            signature=signature,
            timestamp=timestamp,
            slot=_as_int64(payload.get("slot")),
            type=_as_str(payload.get("type")),
            source=_as_str(payload.get("source")),
            fee=_as_int64(payload.get("fee")),
            fee_payer=_as_str(payload.get("feePayer")),
            transaction_error=tx_error or None,
            native_transfers=tuple(
                NativeTransfer.from_dict(t) for t in _as_list(payload.get("nativeTransfers")) if isinstance(t, dict)
            ),
            token_transfers=tuple(
                TokenTransfer.from_dict(t) for t in _as_list(payload.get("tokenTransfers")) if isinstance(t, dict)
            ),
            account_data=tuple(
                AccountData.from_dict(a) for a in _as_list(payload.get("accountData")) if isinstance(a, dict)
            ),
            swap=SwapEvent.from_dict(events.get("swap")),
            raw=payload,
        )

    @property
    def has_error(self) -> bool:
        return self.transaction_error is not None

    def mentioned_wallets(self) -> set[str]:
        """Every address the payload attributes a movement or fee to."""
        found: set[str] = set()

        def add(value: str | None) -> None:
            if value:
                found.add(value)

        add(self.fee_payer)
        for acc in self.account_data:
            add(acc.account)
            for change in acc.token_balance_changes:
                add(change.user_account)
        for nt in self.native_transfers:
            add(nt.from_account)
            add(nt.to_account)
        for tt in self.token_transfers:
            add(tt.from_account)
            add(tt.to_account)
        if self.swap is not None:
            for s in self.swap.walk():
                for leg in (s.native_input, s.native_output):
                    if leg is not None:
                        add(leg.account)
                for tleg in (*s.token_inputs, *s.token_outputs):
                    add(tleg.user_account)
        return found
