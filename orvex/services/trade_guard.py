#!/usr/bin/env python3
"""
Trade Guard - pre-build risk checks and per-user execution leases.

Every swap passes the gate after quoting and before a transaction is built:
- Price impact ceiling
- SOL (and token) balance covering the trade plus fees
- Slippage bounds

The lease registry makes sure a user never has two swaps or withdrawals
in flight at once.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Optional, Set

from orvex import config
from orvex.errors import (
    ImpactTooHighError,
    InsufficientBalanceError,
    SlippageOutOfBoundsError,
    TradeInProgressError,
)
from orvex.services.audit import AuditEventType, audit_log

logger = logging.getLogger("trade_guard")


class RiskGate:
    """Local checks with no side effects. Raises a RiskRejectedError subclass."""

    def __init__(
        self,
        max_price_impact: float = None,
        min_slippage_bps: int = None,
        max_slippage_bps: int = None,
    ):
        self.max_price_impact = config.MAX_PRICE_IMPACT if max_price_impact is None else max_price_impact
        self.min_slippage_bps = config.MIN_SLIPPAGE_BPS if min_slippage_bps is None else min_slippage_bps
        self.max_slippage_bps = config.MAX_SLIPPAGE_BPS if max_slippage_bps is None else max_slippage_bps

    def check(
        self,
        quote,
        slippage_bps: int,
        sol_balance: int,
        sol_required: int,
        token_balance: Optional[int] = None,
        token_required: Optional[int] = None,
    ) -> None:
        """
        Validate a quoted trade.

        Args:
            quote: The aggregator quote (price_impact is a fraction)
            slippage_bps: Slippage tolerance the quote was requested with
            sol_balance: Wallet SOL balance in lamports
            sol_required: Lamports the trade spends, fees included
            token_balance: Raw token balance, for sells
            token_required: Raw token amount sold, for sells
        """
        # 1. Price impact
        if quote.price_impact > self.max_price_impact:
            raise ImpactTooHighError(
                f"Price impact {quote.price_impact:.2%} exceeds the {self.max_price_impact:.0%} limit",
                details={"price_impact": quote.price_impact, "max_price_impact": self.max_price_impact}
            )

        # 2. Balances
        if sol_balance < sol_required:
            raise InsufficientBalanceError(
                f"Insufficient SOL: need {sol_required / config.LAMPORTS_PER_SOL:.6f}, "
                f"have {sol_balance / config.LAMPORTS_PER_SOL:.6f}",
                details={"balance_lamports": sol_balance, "required_lamports": sol_required}
            )
        if token_required is not None and (token_balance or 0) < token_required:
            raise InsufficientBalanceError(
                "Insufficient token balance",
                details={"token_balance": token_balance, "token_required": token_required}
            )

        # 3. Slippage bounds
        if not self.min_slippage_bps <= slippage_bps <= self.max_slippage_bps:
            raise SlippageOutOfBoundsError(
                f"Slippage {slippage_bps} bps outside [{self.min_slippage_bps}, {self.max_slippage_bps}]",
                details={
                    "slippage_bps": slippage_bps,
                    "min_bps": self.min_slippage_bps,
                    "max_bps": self.max_slippage_bps,
                }
            )


class ExecutionLeases:
    """
    In-process registry of users with an execution in flight.

    Thread-safe. A second acquisition for the same user fails immediately
    instead of queueing behind the first.
    """

    def __init__(self):
        self._active: Set[str] = set()
        self._lock = threading.Lock()

    def is_held(self, user_id) -> bool:
        with self._lock:
            return str(user_id) in self._active

    @contextmanager
    def hold(self, user_id):
        key = str(user_id)
        with self._lock:
            if key in self._active:
                held = True
            else:
                held = False
                self._active.add(key)
        if held:
            audit_log(AuditEventType.TRADE_IN_PROGRESS, severity="warning", user=key)
            raise TradeInProgressError("Another trade is already in progress for this user")
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(key)
