# perpbt/backtest/portfolio/funding.py
from __future__ import annotations

import math
from typing import List, Set, Tuple

from perpbt.backtest.core.data import MarketSeries
from perpbt.backtest.core.types import FundingAlignment, FundingSample
from perpbt.backtest.portfolio.position import Position
from perpbt.utils.errors import NumericFault


class FundingAccrualEngine:
    """
    FundingAccrualEngine (FINAL)

    数学语义：
      payment = quantity × mark × rate
      cash   -= payment        (long pays when rate > 0, short receives)

    Each (instrument, sample timestamp) is settled at most once per run.
    """

    def __init__(self, alignment: FundingAlignment = FundingAlignment.NEXT_BAR, enabled: bool = True) -> None:
        self.alignment = FundingAlignment(alignment)
        self.enabled = enabled
        self._applied: Set[Tuple[str, int]] = set()

    # ------------------------------------------------------------------
    def due_samples(self, series: MarketSeries, index: int) -> List[FundingSample]:
        if not self.enabled:
            return []

        ts = int(series.timestamps[index])
        if self.alignment is FundingAlignment.EXACT:
            s = series.funding_exact(ts)
            return [s] if s is not None else []

        # NEXT_BAR：(prev_bar_ts, bar_ts]，第一根 bar 只接收恰好落在其时间戳上的样本
        prev_ts = int(series.timestamps[index - 1]) if index > 0 else ts - 1
        return series.funding_between(prev_ts, ts)

    def already_applied(self, instrument: str, sample: FundingSample) -> bool:
        return (instrument, sample.timestamp) in self._applied

    def apply_funding(self, position: Position, sample: FundingSample, mark_price: float) -> float:
        """Return the payment (+ paid by the holder). 0.0 for flat / disabled / duplicate."""
        if not self.enabled:
            return 0.0

        key = (position.instrument, sample.timestamp)
        if key in self._applied:
            return 0.0
        self._applied.add(key)

        if position.is_flat:
            return 0.0

        payment = position.quantity * mark_price * sample.rate
        if not math.isfinite(payment):
            raise NumericFault(
                f"non-finite funding payment for {position.instrument} at ts={sample.timestamp}"
            )
        return payment
