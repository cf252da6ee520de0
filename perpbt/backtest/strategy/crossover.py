# perpbt/backtest/strategy/crossover.py
from __future__ import annotations

from typing import Optional

from perpbt.backtest.core.events import MarketEvent, SignalEvent
from perpbt.backtest.strategy.base import Strategy
from perpbt.utils.errors import ConfigurationError


class MovingAverageCrossStrategy(Strategy):
    """
    规则：
      - short MA 上穿 long MA → long
      - short MA 下穿 long MA → flat（allow_short 时 → short）
      - 不足 long_window 根 bar → 无信号

    Before the first defined bar the relation counts as short <= long,
    so a series that starts trending up enters on its first defined bar.
    """

    name = "ma_cross"

    def __init__(
        self,
        short_window: int = 10,
        long_window: int = 30,
        allow_short: bool = False,
        strength: float = 1.0,
    ) -> None:
        if not isinstance(short_window, int) or not isinstance(long_window, int):
            raise ConfigurationError("ma_cross windows must be integers")
        if short_window < 1 or long_window < 1:
            raise ConfigurationError("ma_cross windows must be >= 1")
        if short_window >= long_window:
            raise ConfigurationError(
                f"ma_cross short_window={short_window} must be < long_window={long_window}"
            )
        if not (0.0 < strength <= 1.0):
            raise ConfigurationError(f"strength={strength} out of range (0, 1]")

        self.short_window = short_window
        self.long_window = long_window
        self.allow_short = allow_short
        self.strength = strength

        self._above = False
        self._target = 0

    def on_market(self, event: MarketEvent) -> Optional[SignalEvent]:
        closes = event.closes
        if len(closes) < self.long_window:
            return None

        short_ma = float(closes[-self.short_window:].mean())
        long_ma = float(closes[-self.long_window:].mean())
        above = short_ma > long_ma

        crossed = above != self._above
        self._above = above
        if not crossed:
            return None

        if above:
            target = 1
        else:
            target = -1 if self.allow_short else 0

        if target == self._target:
            return None
        self._target = target

        return SignalEvent(
            ts=event.ts,
            instrument=event.instrument,
            direction=target,
            strength=self.strength,
            reason="ma_cross_up" if above else "ma_cross_down",
        )
