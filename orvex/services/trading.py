#!/usr/bin/env python3
"""
Swap execution via the Jupiter aggregator.

A swap walks QUOTE_REQUESTED -> QUOTED -> RISK_CHECKED -> BUILT -> SIGNED ->
SUBMITTED -> CONFIRMED, or ends in FAILED from any stage. The state trace is
kept on a SwapAttempt that travels with any error raised. Only a confirmed
swap touches the position ledger.
"""
import math
import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import List, Optional, Union

from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from orvex import config
from orvex.errors import (
    ConfirmationTimeoutError,
    InsufficientBalanceError,
    NetworkError,
    NoLiquidityError,
    OrvexError,
    RiskRejectedError,
    TransactionFailedError,
    ValidationError,
    WalletNotFoundError,
)
from orvex.services.audit import AuditEventType, audit_log, audit_logger
from orvex.services.jupiter import Quote
from orvex.services.positions import Position
from orvex.services.router import SubmissionReceipt
from orvex.services.trade_guard import ExecutionLeases, RiskGate

logger = logging.getLogger("trading")


def validate_address(value, field_name: str = "address") -> str:
    """Return ``value`` if it is a valid base58 Solana address."""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", details={"field": field_name})
    try:
        Pubkey.from_string(value.strip())
    except ValueError:
        raise ValidationError(f"Invalid {field_name}", details={"field": field_name, "value": value})
    return value.strip()


class Direction(Enum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value) -> "Direction":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError("Direction must be 'buy' or 'sell'", details={"direction": value})


@dataclass(frozen=True)
class TradeRequest:
    """A fully resolved trade: SOL amount for buys, percentage of holdings for sells."""
    token_mint: str
    direction: Direction
    amount: float

    def __post_init__(self):
        object.__setattr__(self, 'token_mint', validate_address(self.token_mint, "token_mint"))
        object.__setattr__(self, 'direction', Direction.parse(self.direction))
        if self.token_mint == config.SOL_MINT:
            raise ValidationError("Cannot trade SOL against itself", details={"token_mint": self.token_mint})

        try:
            amount = float(self.amount)
        except (TypeError, ValueError):
            raise ValidationError("Amount must be a number", details={"amount": self.amount})
        if not math.isfinite(amount) or amount <= 0:
            raise ValidationError("Amount must be a positive number", details={"amount": self.amount})
        if self.direction is Direction.BUY and amount > config.MAX_TRADE_AMOUNT_SOL:
            raise ValidationError(
                f"Amount exceeds the {config.MAX_TRADE_AMOUNT_SOL} SOL limit",
                details={"amount": amount, "max": config.MAX_TRADE_AMOUNT_SOL}
            )
        if self.direction is Direction.SELL and not 1 <= amount <= 100:
            raise ValidationError("Sell percentage must be between 1 and 100", details={"amount": amount})
        object.__setattr__(self, 'amount', amount)

    def to_dict(self) -> dict:
        return {"token_mint": self.token_mint, "direction": self.direction.value, "amount": self.amount}


class SwapState(Enum):
    QUOTE_REQUESTED = "QUOTE_REQUESTED"
    QUOTED = "QUOTED"
    RISK_CHECKED = "RISK_CHECKED"
    BUILT = "BUILT"
    SIGNED = "SIGNED"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


@dataclass
class SwapAttempt:
    user_id: str
    request: TradeRequest
    states: List[SwapState] = field(default_factory=list)
    quote: Optional[Quote] = None
    amount_in: Optional[int] = None
    last_valid_block_height: Optional[int] = None
    signed_tx: Optional[bytes] = None
    receipt: Optional[SubmissionReceipt] = None
    error: Optional[OrvexError] = None

    @property
    def state(self) -> Optional[SwapState]:
        return self.states[-1] if self.states else None

    @property
    def signature(self) -> Optional[str]:
        return self.receipt.signature if self.receipt else None

    @property
    def outcome(self) -> Optional[str]:
        if self.state is SwapState.CONFIRMED:
            return "confirmed"
        if self.state is SwapState.FAILED:
            return "failed"
        return None

    def advance(self, state: SwapState):
        self.states.append(state)
        logger.debug(f"[{self.user_id}] {self.request.direction.value} {self.request.token_mint[:8]}...: {state.value}")

    def fail(self, error: OrvexError):
        self.error = error
        self.advance(SwapState.FAILED)

    def to_dict(self) -> dict:
        return {
            "request": self.request.to_dict(),
            "states": [s.value for s in self.states],
            "outcome": self.outcome,
            "amount_in": self.amount_in,
            "out_amount": self.quote.out_amount if self.quote else None,
            "price_impact": self.quote.price_impact if self.quote else None,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class Withdrawal:
    destination: str
    lamports: int
    receipt: SubmissionReceipt

    def to_dict(self) -> dict:
        return {
            "destination": self.destination,
            "lamports": self.lamports,
            "amount_sol": self.lamports / config.LAMPORTS_PER_SOL,
            "receipt": self.receipt.to_dict(),
        }


class SwapExecutor:
    def __init__(
        self,
        vault,
        settings,
        ledger,
        jupiter,
        chain,
        router,
        gate: RiskGate = None,
        leases: ExecutionLeases = None,
        poll_interval: float = None,
        confirm_timeout: float = None,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.vault = vault
        self.settings = settings
        self.ledger = ledger
        self.jupiter = jupiter
        self.chain = chain
        self.router = router
        self.gate = gate or RiskGate()
        self.leases = leases or ExecutionLeases()
        self.poll_interval = config.CONFIRM_POLL_INTERVAL if poll_interval is None else poll_interval
        self.confirm_timeout = config.CONFIRM_TIMEOUT if confirm_timeout is None else confirm_timeout
        self._sleep = sleep
        self._clock = clock

    def _wallet(self, user_id):
        wallet = self.vault.get_wallet(user_id)
        if wallet is None:
            raise WalletNotFoundError("No wallet on file", details={"user_id": str(user_id)})
        return wallet

    # ─── Swaps ────────────────────────────────────────────────────────────

    def execute(self, user_id, request: TradeRequest) -> SwapAttempt:
        """
        Run one swap to a terminal state.

        Returns the confirmed SwapAttempt. Any failure is raised as an
        OrvexError with ``error.attempt`` set to the failed attempt.

        Raises:
            TradeInProgressError: Another execution holds this user's lease
        """
        user_id = str(user_id)
        attempt = SwapAttempt(user_id=user_id, request=request)
        with self.leases.hold(user_id):
            try:
                self._run(attempt)
            except OrvexError as e:
                stage = attempt.state
                attempt.fail(e)
                e.attempt = attempt
                self._audit_failure(attempt, e, stage)
                raise
        return attempt

    def _run(self, attempt: SwapAttempt):
        user_id, request = attempt.user_id, attempt.request
        wallet = self._wallet(user_id)
        settings = self.settings.get(user_id)
        fee_lamports = settings.priority_fee_lamports

        # 1. Quote
        attempt.advance(SwapState.QUOTE_REQUESTED)
        token_balance = None
        if request.direction is Direction.BUY:
            input_mint, output_mint = config.SOL_MINT, request.token_mint
            attempt.amount_in = int(round(request.amount * config.LAMPORTS_PER_SOL))
        else:
            input_mint, output_mint = request.token_mint, config.SOL_MINT
            token_balance = self.chain.get_token_balance(wallet.public_key, request.token_mint)
            attempt.amount_in = int(token_balance * Fraction(str(request.amount)) / 100)
            if attempt.amount_in <= 0:
                raise ValidationError(
                    "No tokens to sell",
                    details={"token_mint": request.token_mint, "token_balance": token_balance},
                    code="NO_TOKENS",
                )
        sol_balance = self.chain.get_balance(wallet.public_key)

        quote = self.jupiter.get_quote(input_mint, output_mint, attempt.amount_in, settings.slippage_bps)
        if quote is None:
            raise NoLiquidityError(
                "No route found for this token",
                details={"input_mint": input_mint, "output_mint": output_mint, "amount": attempt.amount_in}
            )
        attempt.quote = quote
        attempt.advance(SwapState.QUOTED)

        # 2. Risk
        if request.direction is Direction.BUY:
            self.gate.check(quote, settings.slippage_bps, sol_balance, attempt.amount_in + fee_lamports)
        else:
            self.gate.check(
                quote, settings.slippage_bps, sol_balance, fee_lamports,
                token_balance=token_balance, token_required=attempt.amount_in,
            )
        attempt.advance(SwapState.RISK_CHECKED)

        # 3. Build
        built = self.jupiter.build_transaction(quote, wallet.public_key, fee_lamports)
        attempt.last_valid_block_height = built.last_valid_block_height
        attempt.advance(SwapState.BUILT)

        # 4. Sign
        with self.vault.signer(user_id) as signer:
            attempt.signed_tx = signer.sign_transaction(built.tx_bytes)
        attempt.advance(SwapState.SIGNED)

        # 5. Submit
        attempt.receipt = self.router.submit(attempt.signed_tx, protected=settings.mev_protection)
        attempt.advance(SwapState.SUBMITTED)
        logger.info(
            f"[{user_id}] {request.direction.value} {request.token_mint[:8]}... submitted "
            f"via {attempt.receipt.route}: {attempt.signature}"
        )

        # 6. Confirm
        self.confirm(attempt.signature, attempt.last_valid_block_height)
        attempt.advance(SwapState.CONFIRMED)

        # 7. Ledger
        if request.direction is Direction.BUY:
            self.ledger.add(user_id, Position(
                token_mint=request.token_mint,
                amount_raw=quote.out_amount,
                buy_price_sol=request.amount,
            ))
        elif request.amount >= 100:
            self.ledger.remove(user_id, request.token_mint)

        audit_logger.log_trade(
            input_mint, output_mint, attempt.amount_in, attempt.receipt.route, attempt.signature, user_id
        )
        logger.info(f"[{user_id}] Trade confirmed: {attempt.signature}")

    def _audit_failure(self, attempt: SwapAttempt, error: OrvexError, stage: Optional[SwapState]):
        if isinstance(error, RiskRejectedError):
            quote = attempt.quote
            audit_logger.log_trade_blocked(
                quote.input_mint if quote else None,
                quote.output_mint if quote else None,
                attempt.amount_in, error.code, error.message, attempt.user_id,
            )
            logger.info(f"[{attempt.user_id}] Trade blocked: {error}")
        else:
            audit_logger.log_trade_failed(
                error.code, error.message, attempt.signature or error.details.get("signature"), attempt.user_id
            )
            logger.warning(f"[{attempt.user_id}] Trade failed after {stage.value if stage else 'start'}: {error}")

    # ─── Confirmation ─────────────────────────────────────────────────────

    def confirm(self, signature: str, last_valid_block_height: Optional[int]) -> None:
        """
        Wait for ``signature`` to confirm.

        Polls until the chain passes ``last_valid_block_height`` or the
        wall-clock cap runs out, then makes one history lookup before giving up.

        Raises:
            TransactionFailedError: The transaction landed with an error
            ConfirmationTimeoutError: Outcome unknown
        """
        deadline = self._clock() + self.confirm_timeout
        while True:
            try:
                status = self.chain.get_signature_status(signature)
                if status is not None:
                    if status.err:
                        raise TransactionFailedError(
                            f"Transaction failed: {status.err}",
                            details={"signature": signature, "reason": status.err}
                        )
                    if status.confirmed:
                        return
                if last_valid_block_height and self.chain.get_block_height() > last_valid_block_height:
                    break
            except NetworkError as e:
                logger.warning(f"Confirmation poll for {signature[:16]}... failed: {e.message}")

            if self._clock() >= deadline:
                break
            self._sleep(self.poll_interval)

        try:
            status = self.chain.get_signature_status(signature, search_history=True)
        except NetworkError as e:
            logger.warning(f"Reconciliation lookup for {signature[:16]}... failed: {e.message}")
            status = None

        if status is not None and status.err:
            raise TransactionFailedError(
                f"Transaction failed: {status.err}", details={"signature": signature, "reason": status.err}
            )
        if status is not None and status.confirmed:
            logger.info(f"Transaction {signature[:16]}... found confirmed on reconciliation")
            return

        raise ConfirmationTimeoutError(
            "Transaction not confirmed before its blockhash expired. Check the explorer before retrying.",
            details={"signature": signature, "last_valid_block_height": last_valid_block_height}
        )

    # ─── Withdrawals ──────────────────────────────────────────────────────

    def withdraw(self, user_id, destination: str, amount: Union[float, str]) -> Withdrawal:
        """
        Send SOL from a user's wallet to ``destination``.

        ``amount`` is a SOL amount or "all"; a transfer fee reserve always
        stays behind. Uses direct submission.
        """
        user_id = str(user_id)
        destination = validate_address(destination, "destination")
        send_all = isinstance(amount, str) and amount.strip().lower() == "all"
        if not send_all:
            try:
                amount = float(amount)
            except (TypeError, ValueError):
                raise ValidationError("Amount must be a number or 'all'", details={"amount": amount})
            if not math.isfinite(amount) or amount <= 0:
                raise ValidationError("Amount must be a positive number", details={"amount": amount})

        with self.leases.hold(user_id):
            wallet = self._wallet(user_id)
            if destination == wallet.public_key:
                raise ValidationError("Destination is the wallet itself", details={"destination": destination})

            balance = self.chain.get_balance(wallet.public_key)
            fee = config.TRANSFER_FEE_LAMPORTS
            lamports = balance - fee if send_all else int(round(amount * config.LAMPORTS_PER_SOL))
            if lamports <= 0 or balance < lamports + fee:
                raise InsufficientBalanceError(
                    "Insufficient SOL balance for withdrawal",
                    details={"balance_lamports": balance, "requested_lamports": lamports, "fee_lamports": fee}
                )

            blockhash, last_valid_block_height = self.chain.get_latest_blockhash()
            payer = Pubkey.from_string(wallet.public_key)
            ix = transfer(TransferParams(
                from_pubkey=payer,
                to_pubkey=Pubkey.from_string(destination),
                lamports=lamports
            ))
            msg = MessageV0.try_compile(
                payer=payer,
                instructions=[ix],
                address_lookup_table_accounts=[],
                recent_blockhash=blockhash,
            )
            unsigned = VersionedTransaction.populate(msg, [Signature.default()])

            with self.vault.signer(user_id) as signer:
                signed = signer.sign_transaction(bytes(unsigned))

            receipt = self.router.submit(signed, protected=False)
            try:
                self.confirm(receipt.signature, last_valid_block_height)
            except OrvexError as e:
                audit_logger.log_trade_failed(e.code, e.message, receipt.signature, user_id)
                raise

        audit_log(
            AuditEventType.WITHDRAWAL_EXECUTED,
            details={"destination": destination, "lamports": lamports, "signature": receipt.signature},
            user=user_id
        )
        logger.info(f"[{user_id}] Withdrew {lamports / config.LAMPORTS_PER_SOL:.6f} SOL to {destination}: {receipt.signature}")
        return Withdrawal(destination=destination, lamports=lamports, receipt=receipt)
