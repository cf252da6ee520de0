# perpbt/backtest/portfolio/position.py
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional


@dataclass
class Position:
    """
    Open exposure in one instrument. Mutated only by PositionLedger.
    quantity is signed: + long / − short.
    """

    instrument: str
    quantity: float = 0.0
    entry_price: float = 0.0
    last_price: float = 0.0
    funding_pnl: float = 0.0
    realized_pnl: float = 0.0
    opened_at: Optional[int] = None

    @property
    def is_flat(self) -> bool:
        return self.quantity == 0.0

    @property
    def side(self) -> int:
        if self.quantity > 0:
            return 1
        if self.quantity < 0:
            return -1
        return 0

    @property
    def notional(self) -> float:
        return abs(self.quantity) * self.last_price

    @property
    def unrealized_pnl(self) -> float:
        if self.is_flat:
            return 0.0
        return (self.last_price - self.entry_price) * self.quantity

    @property
    def unrealized_pct(self) -> float:
        """Price move since entry in the position's favour, as a fraction of entry."""
        if self.is_flat or self.entry_price <= 0.0:
            return 0.0
        return self.side * (self.last_price - self.entry_price) / self.entry_price

    def snapshot(self) -> "Position":
        return replace(self)
