"""Escrow wallet keys.

Secrets are accepted as a JSON byte array (``[12, 34, ...]``) or base64 of
the 64-byte ed25519 keypair. Parsed keypairs are checked against the address
they are configured for before anything is signed with them.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from solders.keypair import Keypair

if TYPE_CHECKING:
    from kol_wager_engine.config import EscrowSettings

logger = logging.getLogger(__name__)

SECRET_KEY_LENGTH = 64
RECOMMENDED_WALLET_COUNT = 3


class EscrowKeyError(Exception):
    """Raised when an escrow secret is missing, malformed or mismatched."""


def parse_secret_key(raw: str) -> Keypair:
    """Parse a 64-byte secret key from a JSON array or base64 string.

    Raises:
        EscrowKeyError: If the value is empty, malformed or the wrong length.
    """
    text = raw.strip() if raw else ""
    if not text:
        raise EscrowKeyError("Empty secret key")

    try:
        if text.startswith("["):
            values = json.loads(text)
            if not isinstance(values, list) or not all(isinstance(v, int) and 0 <= v <= 255 for v in values):
                raise EscrowKeyError("Invalid JSON array format")
            data = bytes(values)
        else:
            data = base64.b64decode(text, validate=True)
    except (ValueError, binascii.Error) as e:
        raise EscrowKeyError(f"Failed to parse secret key: {e}") from e

    if len(data) != SECRET_KEY_LENGTH:
        raise EscrowKeyError(f"Invalid key length: {len(data)} bytes (expected {SECRET_KEY_LENGTH})")
    try:
        return Keypair.from_bytes(data)
    except ValueError as e:
        raise EscrowKeyError(f"Invalid ed25519 keypair: {e}") from e


@dataclass(frozen=True)
class EscrowWallet:
    address: str
    keypair: Keypair


def load_escrow_wallets(settings: EscrowSettings) -> list[EscrowWallet]:
    """Keypairs for every configured escrow wallet that has a valid secret.

    Wallets without a secret are skipped. A secret that does not parse or
    does not belong to its configured address raises.

    Raises:
        EscrowKeyError: On a malformed or mismatched secret.
    """
    wallets: list[EscrowWallet] = []
    for address, secret in settings.configured_wallets():
        if secret is None:
            logger.debug("Escrow wallet %s has no secret configured", address[:8])
            continue
        keypair = parse_secret_key(secret.get_secret_value())
        if str(keypair.pubkey()) != address:
            raise EscrowKeyError(f"Secret for escrow wallet {address[:8]}... does not match its address")
        wallets.append(EscrowWallet(address=address, keypair=keypair))
    return wallets


@dataclass(frozen=True)
class EscrowWalletStatus:
    address: str
    has_secret: bool
    is_valid: bool
    validation_error: str | None = None


@dataclass
class EscrowConfigurationAudit:
    wallets: list[EscrowWalletStatus] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_ready(self) -> bool:
        return bool(self.wallets) and all(w.is_valid for w in self.wallets)


def audit_escrow_configuration(settings: EscrowSettings) -> EscrowConfigurationAudit:
    """Check escrow configuration without raising: missing, invalid, mismatched or duplicate keys."""
    audit = EscrowConfigurationAudit()
    configured = settings.configured_wallets()

    if not configured:
        audit.warnings.append("No escrow wallets configured")
    elif len(configured) < RECOMMENDED_WALLET_COUNT:
        audit.warnings.append(
            f"Only {len(configured)} escrow wallet(s) configured (recommended: {RECOMMENDED_WALLET_COUNT})"
        )

    seen: set[str] = set()
    for address, secret in configured:
        short = address[:8]
        if address in seen:
            audit.warnings.append(f"Escrow wallet {short}... configured more than once")
        seen.add(address)

        if secret is None:
            audit.wallets.append(EscrowWalletStatus(address, False, False, "Missing secret key"))
            audit.warnings.append(f"Escrow wallet {short}... missing secret key")
            continue
        try:
            keypair = parse_secret_key(secret.get_secret_value())
        except EscrowKeyError as e:
            audit.wallets.append(EscrowWalletStatus(address, True, False, str(e)))
            audit.warnings.append(f"Escrow wallet {short}... has invalid secret: {e}")
            continue
        if str(keypair.pubkey()) != address:
            error = "Secret does not match address"
            audit.wallets.append(EscrowWalletStatus(address, True, False, error))
            audit.warnings.append(f"Escrow wallet {short}... secret does not match its address")
            continue
        audit.wallets.append(EscrowWalletStatus(address, True, True))

    return audit
