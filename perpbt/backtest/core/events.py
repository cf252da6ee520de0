# perpbt/backtest/core/events.py
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Collection, Optional

import numpy as np

from perpbt.backtest.core.types import (
    FundingSample,
    LegKind,
    Liquidity,
    MarketBar,
    OrderKind,
    Side,
    TimeInForce,
)
from perpbt.utils.errors import InvalidOrder


# -------------------------
# Base
# -------------------------
class Event:
    pass


def _is_number(x) -> bool:
    return isinstance(x, (int, float, np.integer, np.floating)) and not isinstance(x, bool)


# -------------------------
# Market
# -------------------------
@dataclass(frozen=True, eq=False)
class MarketEvent(Event):
    """
    What a strategy may observe at bar `index`.

    closes: read-only view of closes[0..index] (no look-ahead)
    funding: latest sample with timestamp <= ts, or None
    """

    ts: int
    instrument: str
    index: int
    bar: MarketBar
    closes: np.ndarray
    funding: Optional[FundingSample] = None

    @property
    def price(self) -> float:
        return self.bar.close


# -------------------------
# Signal
# -------------------------
@dataclass(frozen=True)
class SignalEvent(Event):
    ts: int
    instrument: str
    direction: int        # +1 / -1 / 0
    strength: float = 1.0
    reason: str = "signal"

    def __post_init__(self):
        if self.direction not in (-1, 0, 1):
            raise ValueError(f"direction must be -1/0/+1, got {self.direction}")
        if not (0.0 < self.strength <= 1.0):
            raise ValueError(f"strength must be in (0, 1], got {self.strength}")


# -------------------------
# Order
# -------------------------
@dataclass(frozen=True)
class OrderRequest(Event):
    instrument: str
    side: Side
    quantity: float
    kind: OrderKind = OrderKind.MARKET
    price: Optional[float] = None
    reduce_only: bool = False
    time_in_force: TimeInForce = TimeInForce.GTC
    reason: str = "signal"

    @property
    def signed_quantity(self) -> float:
        return self.side.sign * self.quantity

    def validate(self, known_instruments: Collection[str]) -> None:
        """Reject anything the ledger could not book. Raises InvalidOrder."""
        if not isinstance(self.instrument, str) or self.instrument not in known_instruments:
            raise InvalidOrder(f"unknown instrument: {self.instrument!r}")
        if not isinstance(self.side, Side):
            raise InvalidOrder(f"side must be a Side, got {self.side!r}")
        if not isinstance(self.kind, OrderKind):
            raise InvalidOrder(f"kind must be an OrderKind, got {self.kind!r}")
        if not isinstance(self.time_in_force, TimeInForce):
            raise InvalidOrder(f"time_in_force must be a TimeInForce, got {self.time_in_force!r}")
        if not _is_number(self.quantity) or not math.isfinite(self.quantity) or self.quantity <= 0.0:
            raise InvalidOrder(f"quantity must be positive and finite, got {self.quantity!r}")
        if self.kind is OrderKind.LIMIT and self.price is None:
            raise InvalidOrder("LIMIT order requires a price")
        if self.price is not None and (
            not _is_number(self.price) or not math.isfinite(self.price) or self.price <= 0.0
        ):
            raise InvalidOrder(f"malformed price: {self.price!r}")
        if self.time_in_force is TimeInForce.POST_ONLY and self.kind is not OrderKind.LIMIT:
            raise InvalidOrder("POST_ONLY requires a LIMIT order")

    def with_quantity(self, quantity: float) -> "OrderRequest":
        return OrderRequest(
            instrument=self.instrument,
            side=self.side,
            quantity=quantity,
            kind=self.kind,
            price=self.price,
            reduce_only=self.reduce_only,
            time_in_force=self.time_in_force,
            reason=self.reason,
        )


# -------------------------
# Fill
# -------------------------
@dataclass(frozen=True)
class Fill(Event):
    ts: int
    instrument: str
    side: Side
    quantity: float
    price: float
    fee: float
    liquidity: Liquidity

    @property
    def notional(self) -> float:
        return abs(self.quantity * self.price)


# -------------------------
# Ledger facts
# -------------------------
@dataclass(frozen=True)
class Trade:
    """One leg of a fill as seen by the ledger."""

    ts: int
    instrument: str
    side: Side
    quantity: float
    price: float
    fee: float
    realized_pnl: float      # gross price PnL of this leg
    leg: LegKind
    entry_ts: int
    reason: str = "signal"

    @property
    def net_pnl(self) -> float:
        return self.realized_pnl - self.fee

    @property
    def is_closing(self) -> bool:
        return self.leg in (LegKind.REDUCE, LegKind.CLOSE)

    @property
    def duration_ms(self) -> int:
        return self.ts - self.entry_ts


@dataclass(frozen=True)
class FundingPayment:
    ts: int
    instrument: str
    position_qty: float
    rate: float
    mark_price: float
    amount: float            # + received / − paid

    @property
    def is_received(self) -> bool:
        return self.amount > 0.0


@dataclass(frozen=True)
class AlertEvent(Event):
    ts: int
    instrument: Optional[str]
    kind: str
    message: str
    details: dict = field(default_factory=dict)
