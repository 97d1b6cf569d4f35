"""Wallet-signed action messages.

Users sign a plain-text message with their Solana wallet::

    <title>
    key=value
    ...

The server rebuilds the message from the request fields and checks the
ed25519 signature against the wallet's public key.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from solders.pubkey import Pubkey
from solders.signature import Signature

DEFAULT_MAX_SKEW_SECONDS = 300


class SignedActionError(Exception):
    """Base exception for signed action errors; ``status`` mirrors an HTTP code."""

    status = 500

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status


class InvalidRequestError(SignedActionError):
    """Missing or malformed fields, stale ``issued_at`` or message mismatch."""

    status = 400


class SignatureRejectedError(SignedActionError):
    status = 401


def build_message(title: str, fields: Mapping[str, str]) -> str:
    """Render ``title`` followed by one ``key=value`` line per field, in order."""
    return "\n".join([title, *(f"{key}={value}" for key, value in fields.items())])


def format_number(value: Decimal | int | float | str) -> str:
    """Shortest plain decimal text for a number (``0.50`` → ``0.5``, ``1E+1`` → ``10``).

    Raises:
        InvalidRequestError: If ``value`` is not a finite number.
    """
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise InvalidRequestError(f"Invalid number: {value!r}") from None
    if not number.is_finite():
        raise InvalidRequestError(f"Invalid number: {value!r}")
    if number == number.to_integral_value():
        return str(number.quantize(Decimal(1)))
    return format(number.normalize(), "f")


def parse_issued_at(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed); naive values are UTC.

    Raises:
        InvalidRequestError: If the value is not a timestamp.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidRequestError("Invalid issued_at") from None
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)


def require_fresh_issued_at(
    issued_at: str,
    *,
    max_skew_seconds: float = DEFAULT_MAX_SKEW_SECONDS,
    now: datetime | None = None,
) -> datetime:
    """Return the parsed timestamp if it is within ``max_skew_seconds`` of now.

    Raises:
        InvalidRequestError: If it does not parse or is too old or too far ahead.
    """
    parsed = parse_issued_at(issued_at)
    now = now or datetime.now(UTC)
    if abs((now - parsed).total_seconds()) > max_skew_seconds:
        raise InvalidRequestError("Signature expired")
    return parsed


def verify_signature(message: str, signature_b64: str, wallet_address: str) -> bool:
    """True if ``signature_b64`` is the wallet's ed25519 signature of ``message``."""
    try:
        pubkey = Pubkey.from_string(wallet_address)
        raw = base64.b64decode(signature_b64, validate=True)
    except (ValueError, binascii.Error):
        return False
    if len(raw) != 64:
        return False
    signature = Signature.from_bytes(raw)
    return signature.verify(pubkey, message.encode("utf-8"))
