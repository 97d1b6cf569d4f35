"""Chain access - Solana RPC with failover and escrow keys."""

from kol_wager_engine.chain.keys import (
    EscrowKeyError,
    EscrowWallet,
    audit_escrow_configuration,
    load_escrow_wallets,
    parse_secret_key,
)
from kol_wager_engine.chain.rpc import (
    ChainClientError,
    ConfirmationTimeoutError,
    RetryPolicy,
    RPCError,
    SolanaRpc,
    TransactionFailedError,
    TransferReceipt,
    attempt_with_fallback,
)

__all__ = [
    "ChainClientError",
    "ConfirmationTimeoutError",
    "EscrowKeyError",
    "EscrowWallet",
    "RPCError",
    "RetryPolicy",
    "SolanaRpc",
    "TransactionFailedError",
    "TransferReceipt",
    "attempt_with_fallback",
    "audit_escrow_configuration",
    "load_escrow_wallets",
    "parse_secret_key",
]
