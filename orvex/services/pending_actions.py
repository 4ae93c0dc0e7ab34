#!/usr/bin/env python3
"""
Single-slot conversation state per user.

A user is either idle, waiting to paste a private key, or waiting to type a
custom trade amount. The slot lives in the keyed store so every front end
worker sees the same state, and every transition is one atomic update.
"""
import math
import time
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Union

from orvex import config
from orvex.errors import ValidationError
from orvex.models import PENDING_ACTION
from orvex.services.keystore import Wallet
from orvex.services.trading import Direction, TradeRequest, validate_address

logger = logging.getLogger("pending_actions")

AWAITING_IMPORT_SECRET = "awaiting_import_secret"
AWAITING_AMOUNT = "awaiting_amount"


@dataclass(frozen=True)
class PendingAction:
    kind: str
    token_mint: Optional[str] = None
    direction: Optional[str] = None
    created_at: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def parse_amount(text: str, direction: Direction) -> float:
    """
    Parse a typed trade amount.

    Buys take a SOL amount in (0, MAX_TRADE_AMOUNT_SOL]. Sells take a
    percentage, optionally suffixed with %, rounded and clamped to [1, 100].
    """
    raw = (text or "").strip()
    if direction is Direction.SELL and raw.endswith('%'):
        raw = raw[:-1].strip()
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError("Amount must be a number", details={"text": text})
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("Amount must be a positive number", details={"text": text})

    if direction is Direction.BUY:
        if value > config.MAX_TRADE_AMOUNT_SOL:
            raise ValidationError(
                f"Amount exceeds the {config.MAX_TRADE_AMOUNT_SOL} SOL limit",
                details={"amount": value, "max": config.MAX_TRADE_AMOUNT_SOL}
            )
        return value

    return float(min(100, max(1, round(value))))


class PendingActionTracker:
    def __init__(self, db, vault, ttl_seconds: float = None, clock=time.time):
        self.db = db
        self.vault = vault
        self.ttl = config.PENDING_ACTION_TTL if ttl_seconds is None else ttl_seconds
        self._clock = clock

    def _expired(self, action: dict) -> bool:
        return bool(self.ttl) and self._clock() - action.get('created_at', 0) > self.ttl

    def _set(self, user_id, action: PendingAction):
        self.db.update_record(PENDING_ACTION, user_id, lambda _current: action.to_dict())

    def get(self, user_id) -> Optional[PendingAction]:
        stored = self.db.get_record(PENDING_ACTION, user_id)
        if not stored or self._expired(stored):
            return None
        return PendingAction(**stored)

    def begin_import(self, user_id) -> PendingAction:
        action = PendingAction(kind=AWAITING_IMPORT_SECRET, created_at=self._clock())
        self._set(user_id, action)
        return action

    def begin_amount(self, user_id, token_mint: str, direction) -> PendingAction:
        direction = Direction.parse(direction)
        action = PendingAction(
            kind=AWAITING_AMOUNT,
            token_mint=validate_address(token_mint, "token_mint"),
            direction=direction.value,
            created_at=self._clock(),
        )
        self._set(user_id, action)
        return action

    def cancel(self, user_id) -> bool:
        """Clear the slot. Returns True if something was pending."""
        return self._take(user_id) is not None

    def _take(self, user_id, expect: Optional[str] = None) -> Optional[dict]:
        """
        Atomically read and clear the slot.

        With ``expect``, a slot holding a different kind is left in place
        and None is returned.
        """
        taken = {}

        def clear(current):
            if expect and current and current['kind'] != expect:
                taken['action'] = None
                return current
            taken['action'] = current
            return None

        self.db.update_record(PENDING_ACTION, user_id, clear)
        action = taken.get('action')
        if action and self._expired(action):
            logger.debug(f"Dropped expired {action['kind']} for user {user_id}")
            return None
        return action

    def handle_text(self, user_id, text: str, expect: Optional[str] = None) -> Optional[Union[Wallet, TradeRequest]]:
        """
        Feed free text to whatever the user is waiting on.

        Returns the imported Wallet, the resolved TradeRequest, or None when
        nothing was pending (the text is not consumed). Passing ``expect``
        restricts the text to that kind of pending action. The slot is
        cleared before the text is acted on, so a failed import or a bad
        amount still ends the pending step.
        """
        action = self._take(user_id, expect)
        if action is None:
            return None

        if action['kind'] == AWAITING_IMPORT_SECRET:
            return self.vault.import_wallet(user_id, text)

        if action['kind'] == AWAITING_AMOUNT:
            direction = Direction.parse(action['direction'])
            amount = parse_amount(text, direction)
            return TradeRequest(token_mint=action['token_mint'], direction=direction, amount=amount)

        logger.warning(f"Unknown pending action kind for user {user_id}: {action['kind']}")
        return None
