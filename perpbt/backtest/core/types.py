# perpbt/backtest/core/types.py
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

from perpbt.utils.datetime_utils import MS_PER_DAY, MS_PER_HOUR, MS_PER_MINUTE
from perpbt.utils.errors import InputDataError, UnsupportedInterval


class Interval(str, Enum):
    """Supported bar intervals. Perpetual markets trade 24/7/365."""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @classmethod
    def parse(cls, value: "Interval | str") -> "Interval":
        if isinstance(value, Interval):
            return value
        try:
            return cls(str(value).strip())
        except ValueError:
            raise UnsupportedInterval(value) from None

    @property
    def ms(self) -> int:
        return _INTERVAL_MS[self]

    @property
    def periods_per_year(self) -> float:
        return 365 * MS_PER_DAY / self.ms


_INTERVAL_MS = {
    Interval.M1: MS_PER_MINUTE,
    Interval.M5: 5 * MS_PER_MINUTE,
    Interval.M15: 15 * MS_PER_MINUTE,
    Interval.H1: MS_PER_HOUR,
    Interval.H4: 4 * MS_PER_HOUR,
    Interval.D1: MS_PER_DAY,
}


class FundingAlignment(str, Enum):
    """
    Which bar a funding sample is settled on.

    NEXT_BAR: prev_bar_ts < sample_ts <= bar_ts
    EXACT:    sample_ts == bar_ts only
    """

    NEXT_BAR = "next_bar"
    EXACT = "exact"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1

    @classmethod
    def from_sign(cls, x: float) -> "Side":
        return cls.BUY if x > 0 else cls.SELL


class OrderKind(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class TimeInForce(str, Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"
    POST_ONLY = "POST_ONLY"


class Liquidity(str, Enum):
    MAKER = "MAKER"
    TAKER = "TAKER"


class LegKind(str, Enum):
    OPEN = "OPEN"
    INCREASE = "INCREASE"
    REDUCE = "REDUCE"
    CLOSE = "CLOSE"


# -------------------------
# Market facts
# -------------------------
@dataclass(frozen=True)
class MarketBar:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def validate(self) -> None:
        vals = (self.open, self.high, self.low, self.close, self.volume)
        if not all(math.isfinite(v) for v in vals):
            raise InputDataError(f"non-finite bar at ts={self.timestamp}")
        hi = max(self.open, self.close)
        lo = min(self.open, self.close)
        if not (self.high >= hi and lo >= self.low and self.low >= 0.0):
            raise InputDataError(f"OHLC invariant violated at ts={self.timestamp}")
        if self.volume < 0.0:
            raise InputDataError(f"negative volume at ts={self.timestamp}")


@dataclass(frozen=True)
class FundingSample:
    timestamp: int
    rate: float     # signed fraction of notional per funding interval
