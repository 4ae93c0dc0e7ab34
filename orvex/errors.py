#!/usr/bin/env python3
"""
Error taxonomy for the custody and swap engine.

Every error carries a stable ``code`` the front end can map to a message,
a human readable ``message`` and a ``details`` dict with whatever context
the failing stage had.
"""
from typing import Any, Dict, Optional


class OrvexError(Exception):
    """Base exception for all engine operations."""
    code = "ORVEX_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code
        # Set by SwapExecutor so callers can inspect the state trace
        self.attempt = None

    def __str__(self):
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# ─── Input ────────────────────────────────────────────────────────────────

class ValidationError(OrvexError):
    """Malformed address, amount, setting or secret. Nothing was mutated."""
    code = "VALIDATION_ERROR"


class InvalidFormatError(ValidationError):
    """Secret material that does not decode to a valid 64-byte keypair."""
    code = "INVALID_FORMAT"


# ─── Custody ──────────────────────────────────────────────────────────────

class WalletExistsError(OrvexError):
    code = "ALREADY_EXISTS"


class WalletNotFoundError(OrvexError):
    code = "NO_WALLET"


class CustodyError(OrvexError):
    """Stored key material cannot be used. User must re-import or recreate."""
    code = "CUSTODY_ERROR"


class KeyMismatchError(CustodyError):
    """Wallet was encrypted under a different server secret."""
    code = "KEY_MISMATCH"


# ─── Risk gate ────────────────────────────────────────────────────────────

class RiskRejectedError(OrvexError):
    """Trade rejected before any transaction was built."""
    code = "RISK_REJECTED"


class NoLiquidityError(RiskRejectedError):
    code = "NO_LIQUIDITY"


class ImpactTooHighError(RiskRejectedError):
    code = "IMPACT_TOO_HIGH"


class InsufficientBalanceError(RiskRejectedError):
    code = "INSUFFICIENT_BALANCE"


class SlippageOutOfBoundsError(RiskRejectedError):
    code = "SLIPPAGE_OUT_OF_BOUNDS"


# ─── Network / submission ─────────────────────────────────────────────────

class NetworkError(OrvexError):
    """Quote, build or RPC unreachable. Safe to retry from scratch."""
    code = "NETWORK_ERROR"


class BuildError(NetworkError):
    """Aggregator refused to build a transaction for the quote."""
    code = "BUILD_FAILED"


class SubmissionError(OrvexError):
    """Relay or chain rejected the transaction before finality."""
    code = "SUBMISSION_FAILED"


class TransactionFailedError(SubmissionError):
    """Transaction landed but the chain reported an execution error."""
    code = "TX_FAILED"


class ConfirmationTimeoutError(OrvexError):
    """Outcome unknown. Must be treated as neither success nor failure."""
    code = "CONFIRMATION_TIMEOUT"


# ─── Concurrency ──────────────────────────────────────────────────────────

class TradeInProgressError(OrvexError):
    code = "TRADE_IN_PROGRESS"


class PersistenceConflictError(OrvexError):
    code = "PERSISTENCE_CONFLICT"
