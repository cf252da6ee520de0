# perpbt/backtest/strategy/funding_arbitrage.py
from __future__ import annotations

import math
from typing import Optional

from perpbt.backtest.core.events import MarketEvent, SignalEvent
from perpbt.backtest.strategy.base import Strategy
from perpbt.utils.errors import ConfigurationError


class FundingArbitrageStrategy(Strategy):
    """
    Collect funding by sitting on the receiving side.

      rate >  threshold → short (longs pay)
      rate < -threshold → long  (shorts pay)
      |rate| <= threshold while holding → flat

    Only target changes are emitted.
    """

    name = "funding_arbitrage"

    def __init__(self, threshold: float = 0.0001, strength: float = 1.0) -> None:
        if not isinstance(threshold, (int, float)) or not math.isfinite(threshold) or threshold <= 0:
            raise ConfigurationError(f"funding_arbitrage threshold={threshold} must be > 0")
        if not (0.0 < strength <= 1.0):
            raise ConfigurationError(f"strength={strength} out of range (0, 1]")
        self.threshold = float(threshold)
        self.strength = strength
        self._target = 0

    def on_market(self, event: MarketEvent) -> Optional[SignalEvent]:
        sample = event.funding
        if sample is None:
            return None

        rate = sample.rate
        if rate > self.threshold:
            target = -1
        elif rate < -self.threshold:
            target = 1
        else:
            target = 0

        if target == self._target:
            return None
        self._target = target

        return SignalEvent(
            ts=event.ts,
            instrument=event.instrument,
            direction=target,
            strength=self.strength,
            reason=f"funding_rate={rate:.6f}",
        )
