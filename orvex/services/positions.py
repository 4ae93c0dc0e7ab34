#!/usr/bin/env python3
"""Per-user list of open holdings, one row per executed buy."""
import time
import logging
from dataclasses import dataclass, asdict, field
from typing import List

from orvex.models import POSITIONS

logger = logging.getLogger("positions")


@dataclass(frozen=True)
class Position:
    token_mint: str
    amount_raw: int
    buy_price_sol: float
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)


class PositionLedger:
    def __init__(self, db):
        self.db = db

    def list(self, user_id) -> List[Position]:
        rows = self.db.get_record(POSITIONS, user_id) or []
        return [Position(**row) for row in rows]

    def add(self, user_id, position: Position) -> None:
        """Append a position. Rows for the same mint are never merged."""
        self.db.update_record(
            POSITIONS, user_id,
            lambda rows: rows + [position.to_dict()],
            default=[],
        )
        logger.info(f"Position added for user {user_id}: {position.token_mint} ({position.amount_raw})")

    def remove(self, user_id, token_mint: str) -> int:
        """Drop every row for ``token_mint``. Returns how many were removed."""
        removed = 0

        def drop(rows):
            nonlocal removed
            kept = [row for row in rows if row['token_mint'] != token_mint]
            removed = len(rows) - len(kept)
            return kept or None

        self.db.update_record(POSITIONS, user_id, drop, default=[])
        if removed:
            logger.info(f"Removed {removed} position(s) for user {user_id}: {token_mint}")
        return removed
