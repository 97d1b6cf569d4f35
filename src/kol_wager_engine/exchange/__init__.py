"""Exchange - wallet-signed user actions forwarded to stored procedures."""

from kol_wager_engine.exchange.actions import (
    ActionBackendError,
    ActionHaltedError,
    CancelOrderRequest,
    ClaimSettlementRequest,
    CreditDepositRequest,
    NonceReusedError,
    PlaceOrderRequest,
    SignedActionService,
    verify_sol_deposit,
)
from kol_wager_engine.exchange.signing import (
    InvalidRequestError,
    SignatureRejectedError,
    SignedActionError,
    build_message,
    require_fresh_issued_at,
    verify_signature,
)

__all__ = [
    "ActionBackendError",
    "ActionHaltedError",
    "CancelOrderRequest",
    "ClaimSettlementRequest",
    "CreditDepositRequest",
    "InvalidRequestError",
    "NonceReusedError",
    "PlaceOrderRequest",
    "SignatureRejectedError",
    "SignedActionError",
    "SignedActionService",
    "build_message",
    "require_fresh_issued_at",
    "verify_signature",
    "verify_sol_deposit",
]
