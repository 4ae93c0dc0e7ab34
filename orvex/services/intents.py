#!/usr/bin/env python3
"""
Typed intents from the conversational front end and their dispatch.

The front end posts one JSON intent per button press or message.
parse_intent() validates it at the boundary; IntentDispatcher runs it
against the core services and returns the payload the front end renders.
"""
import logging
from dataclasses import dataclass, fields, MISSING
from typing import Any, ClassVar, Dict, Optional

from orvex import config
from orvex.errors import NetworkError, OrvexError, ValidationError, WalletExistsError, WalletNotFoundError
from orvex.services.keystore import Wallet
from orvex.services.pending_actions import AWAITING_AMOUNT
from orvex.services.trading import TradeRequest

logger = logging.getLogger("intents")


@dataclass(frozen=True)
class StartWallet:
    type: ClassVar[str] = "start_wallet"


@dataclass(frozen=True)
class CreateWallet:
    type: ClassVar[str] = "create_wallet"


@dataclass(frozen=True)
class ImportWallet:
    type: ClassVar[str] = "import_wallet"
    secret: Optional[str] = None


@dataclass(frozen=True)
class ShowSettings:
    type: ClassVar[str] = "show_settings"


@dataclass(frozen=True)
class UpdateSetting:
    type: ClassVar[str] = "update_setting"
    field: str
    value: Any


@dataclass(frozen=True)
class InitiateTrade:
    type: ClassVar[str] = "initiate_trade"
    token_mint: str
    direction: str
    amount: Optional[float] = None


@dataclass(frozen=True)
class ConfirmAmount:
    type: ClassVar[str] = "confirm_amount"
    value: Any


@dataclass(frozen=True)
class TextMessage:
    type: ClassVar[str] = "text"
    text: str


@dataclass(frozen=True)
class Cancel:
    type: ClassVar[str] = "cancel"


@dataclass(frozen=True)
class ShowPositions:
    type: ClassVar[str] = "show_positions"


@dataclass(frozen=True)
class RevealSecret:
    type: ClassVar[str] = "reveal_secret"


@dataclass(frozen=True)
class DeleteWallet:
    type: ClassVar[str] = "delete_wallet"


@dataclass(frozen=True)
class Withdraw:
    type: ClassVar[str] = "withdraw"
    destination: str
    amount: Any


INTENT_TYPES = {
    cls.type: cls for cls in (
        StartWallet, CreateWallet, ImportWallet, ShowSettings, UpdateSetting,
        InitiateTrade, ConfirmAmount, TextMessage, Cancel,
        ShowPositions, RevealSecret, DeleteWallet, Withdraw,
    )
}


def parse_intent(payload) -> Any:
    """
    Build a typed intent from a JSON payload like ``{"type": "cancel"}``.

    Raises:
        ValidationError: Unknown type, missing, unexpected or mistyped fields
    """
    if not isinstance(payload, dict):
        raise ValidationError("Intent must be a JSON object")
    intent_type = payload.get("type")
    cls = INTENT_TYPES.get(intent_type)
    if cls is None:
        raise ValidationError(f"Unknown intent type: {intent_type}", details={"type": intent_type})

    known = {f.name: f for f in fields(cls)}
    extra = set(payload) - set(known) - {"type"}
    if extra:
        raise ValidationError(f"Unexpected fields for {intent_type}: {sorted(extra)}", details={"type": intent_type})
    missing = [
        name for name, f in known.items()
        if name not in payload and f.default is MISSING
    ]
    if missing:
        raise ValidationError(f"Missing fields for {intent_type}: {missing}", details={"type": intent_type})

    for name, f in known.items():
        if name in payload:
            _check_field_type(intent_type, f, payload[name])

    return cls(**{name: payload[name] for name in known if name in payload})


def _check_field_type(intent_type, f, value) -> None:
    if value is None and f.default is None:
        return
    if f.type in (str, Optional[str]):
        ok = isinstance(value, str)
        expected = "a string"
    elif f.type in (float, Optional[float]):
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        expected = "a number"
    else:
        return
    if not ok:
        raise ValidationError(
            f"Field {f.name} of {intent_type} must be {expected}",
            details={"type": intent_type, "field": f.name},
        )


class IntentDispatcher:
    """Runs typed intents against the core services."""

    def __init__(self, vault, settings, ledger, pending, executor, chain):
        self.vault = vault
        self.settings = settings
        self.ledger = ledger
        self.pending = pending
        self.executor = executor
        self.chain = chain
        self._handlers = {
            StartWallet: self._start_wallet,
            CreateWallet: self._create_wallet,
            ImportWallet: self._import_wallet,
            ShowSettings: self._show_settings,
            UpdateSetting: self._update_setting,
            InitiateTrade: self._initiate_trade,
            ConfirmAmount: self._confirm_amount,
            TextMessage: self._text,
            Cancel: self._cancel,
            ShowPositions: self._show_positions,
            RevealSecret: self._reveal_secret,
            DeleteWallet: self._delete_wallet,
            Withdraw: self._withdraw,
        }

    def dispatch(self, user_id, intent) -> Dict[str, Any]:
        """Run ``intent`` for ``user_id``. Engine errors become the error payload."""
        user_id = str(user_id)
        handler = self._handlers[type(intent)]
        try:
            data = handler(user_id, intent)
        except OrvexError as e:
            error = e.to_dict()
            if e.attempt is not None:
                error["attempt"] = e.attempt.to_dict()
            return {"success": False, "intent": intent.type, "error": error}
        return {"success": True, "intent": intent.type, "data": data}

    def _require_wallet(self, user_id) -> Wallet:
        wallet = self.vault.get_wallet(user_id)
        if wallet is None:
            raise WalletNotFoundError("No wallet on file. Create or import one first.")
        return wallet

    # ─── Wallet ───────────────────────────────────────────────────────────

    def _start_wallet(self, user_id, intent):
        wallet = self.vault.get_wallet(user_id)
        if wallet is None:
            return {"has_wallet": False}
        try:
            balance_sol = self.chain.get_balance(wallet.public_key) / config.LAMPORTS_PER_SOL
        except NetworkError as e:
            logger.warning(f"Balance unavailable for user {user_id}: {e.message}")
            balance_sol = None
        return {"has_wallet": True, "wallet": wallet.to_dict(), "balance_sol": balance_sol}

    def _create_wallet(self, user_id, intent):
        return {"wallet": self.vault.generate(user_id).to_dict()}

    def _import_wallet(self, user_id, intent: ImportWallet):
        if intent.secret is None:
            if self.vault.get_wallet(user_id):
                raise WalletExistsError("A wallet already exists for this user")
            self.pending.begin_import(user_id)
            return {"awaiting": "import_secret"}
        self.pending.cancel(user_id)
        return {"wallet": self.vault.import_wallet(user_id, intent.secret).to_dict()}

    def _reveal_secret(self, user_id, intent):
        return self.vault.reveal(user_id).to_dict()

    def _delete_wallet(self, user_id, intent):
        return {"deleted": self.vault.delete(user_id)}

    def _withdraw(self, user_id, intent: Withdraw):
        return self.executor.withdraw(user_id, intent.destination, intent.amount).to_dict()

    # ─── Settings / positions ─────────────────────────────────────────────

    def _show_settings(self, user_id, intent):
        return self.settings.get(user_id).to_dict()

    def _update_setting(self, user_id, intent: UpdateSetting):
        return self.settings.update(user_id, **{intent.field: intent.value}).to_dict()

    def _show_positions(self, user_id, intent):
        return {"positions": [p.to_dict() for p in self.ledger.list(user_id)]}

    # ─── Trading ──────────────────────────────────────────────────────────

    def _execute(self, user_id, request: TradeRequest):
        return {"trade": self.executor.execute(user_id, request).to_dict()}

    def _initiate_trade(self, user_id, intent: InitiateTrade):
        self._require_wallet(user_id)
        if intent.amount is None:
            action = self.pending.begin_amount(user_id, intent.token_mint, intent.direction)
            return {"awaiting": "amount", "token_mint": action.token_mint, "direction": action.direction}
        self.pending.cancel(user_id)
        return self._execute(user_id, TradeRequest(intent.token_mint, intent.direction, intent.amount))

    def _confirm_amount(self, user_id, intent: ConfirmAmount):
        request = self.pending.handle_text(user_id, str(intent.value), expect=AWAITING_AMOUNT)
        if request is None:
            raise ValidationError("No trade is waiting for an amount", code="NO_PENDING_ACTION")
        return self._execute(user_id, request)

    def _text(self, user_id, intent: TextMessage):
        result = self.pending.handle_text(user_id, intent.text)
        if result is None:
            return {"consumed": False}
        if isinstance(result, Wallet):
            return {"consumed": True, "wallet": result.to_dict()}
        return {"consumed": True, **self._execute(user_id, result)}

    def _cancel(self, user_id, intent):
        return {"cancelled": self.pending.cancel(user_id)}
