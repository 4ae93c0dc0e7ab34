#!/usr/bin/env python3
"""Per-user trade configuration with documented defaults."""
import math
import logging
from dataclasses import dataclass, asdict, fields

from orvex import config
from orvex.errors import ValidationError
from orvex.models import SETTINGS
from orvex.services.audit import AuditEventType, audit_log

logger = logging.getLogger("user_settings")


@dataclass(frozen=True)
class UserSettings:
    priority_fee_sol: float = config.DEFAULT_SETTINGS["priority_fee_sol"]
    mev_protection: bool = config.DEFAULT_SETTINGS["mev_protection"]
    default_buy_amount_sol: float = config.DEFAULT_SETTINGS["default_buy_amount_sol"]
    slippage_bps: int = config.DEFAULT_SETTINGS["slippage_bps"]

    @property
    def priority_fee_lamports(self) -> int:
        return int(round(self.priority_fee_sol * config.LAMPORTS_PER_SOL))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "UserSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


def _number(field_name, value) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number", details={"field": field_name})
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a number", details={"field": field_name, "value": value})
    if not math.isfinite(number):
        raise ValidationError(f"{field_name} must be finite", details={"field": field_name})
    return number


def _validate_field(field_name: str, value):
    """Coerce and range-check one settings field."""
    if field_name == "priority_fee_sol":
        fee = _number(field_name, value)
        if fee < 0:
            raise ValidationError("Priority fee cannot be negative", details={"field": field_name, "value": fee})
        return fee

    if field_name == "default_buy_amount_sol":
        amount = _number(field_name, value)
        if amount <= 0:
            raise ValidationError("Default buy amount must be positive", details={"field": field_name, "value": amount})
        return amount

    if field_name == "slippage_bps":
        bps = _number(field_name, value)
        if bps != int(bps) or not 0 < bps <= 10_000:
            raise ValidationError(
                "Slippage must be a whole number of basis points between 1 and 10000",
                details={"field": field_name, "value": value}
            )
        return int(bps)

    if field_name == "mev_protection":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false", "on", "off"):
            return value.lower() in ("true", "on")
        raise ValidationError("mev_protection must be a boolean", details={"field": field_name, "value": value})

    raise ValidationError(f"Unknown setting: {field_name}", details={"field": field_name})


class SettingsStore:
    """Reads and merges user settings over the keyed record store."""

    def __init__(self, db):
        self.db = db

    def get(self, user_id) -> UserSettings:
        """Stored settings, or the defaults (persisted on first read)."""
        stored = self.db.get_record(SETTINGS, user_id)
        if stored is None:
            defaults = UserSettings()
            if not self.db.insert_record_if_absent(SETTINGS, user_id, defaults.to_dict()):
                stored = self.db.get_record(SETTINGS, user_id)
                return UserSettings.from_dict(stored)
            return defaults
        return UserSettings.from_dict(stored)

    def update(self, user_id, **changes) -> UserSettings:
        """
        Merge ``changes`` onto the current settings.

        Raises:
            ValidationError: Unknown field or out-of-range value. Nothing is written.
        """
        if not changes:
            raise ValidationError("No settings given")
        cleaned = {name: _validate_field(name, value) for name, value in changes.items()}

        def merge(current):
            merged = UserSettings.from_dict(current).to_dict()
            merged.update(cleaned)
            return merged

        updated = self.db.update_record(SETTINGS, user_id, merge, default=UserSettings().to_dict())
        audit_log(AuditEventType.SETTINGS_CHANGED, details={"changes": cleaned}, user=str(user_id))
        logger.info(f"Settings updated for user {user_id}: {cleaned}")
        return UserSettings.from_dict(updated)
