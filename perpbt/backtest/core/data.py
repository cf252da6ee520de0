"""
{#!filepath: perpbt/backtest/core/data.py}

MarketSeries (FINAL / FROZEN)

Defines WHAT is observable for one instrument over a replay window.

Contract:
- bars are validated once at construction; a bad series never reaches the loop
- closes(upto) / funding_at(ts) never expose data after the requested point
- arrays are read-only; the series is shared freely between sweep workers
"""
from __future__ import annotations

import math
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from perpbt.backtest.core.types import FundingSample, Interval, MarketBar
from perpbt.utils.errors import InputDataError

BAR_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]
FUNDING_COLUMNS = ["timestamp", "rate"]


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.ascontiguousarray(arr)
    arr.setflags(write=False)
    return arr


class MarketSeries:
    def __init__(
        self,
        instrument: str,
        interval: Interval | str,
        bars: Sequence[MarketBar],
        funding: Iterable[FundingSample] = (),
        *,
        allow_gaps: bool = False,
    ) -> None:
        if not instrument:
            raise InputDataError("instrument id must be non-empty")
        self.instrument = instrument
        self.interval = Interval.parse(interval)
        self.allow_gaps = allow_gaps

        bars = list(bars)
        if not bars:
            raise InputDataError(f"[{instrument}] empty bar series")

        for b in bars:
            b.validate()

        self._ts = _readonly(np.asarray([b.timestamp for b in bars], dtype=np.int64))
        self._open = _readonly(np.asarray([b.open for b in bars], dtype=np.float64))
        self._high = _readonly(np.asarray([b.high for b in bars], dtype=np.float64))
        self._low = _readonly(np.asarray([b.low for b in bars], dtype=np.float64))
        self._close = _readonly(np.asarray([b.close for b in bars], dtype=np.float64))
        self._volume = _readonly(np.asarray([b.volume for b in bars], dtype=np.float64))

        self._check_spacing()

        samples = list(funding)
        self._f_ts = _readonly(np.asarray([s.timestamp for s in samples], dtype=np.int64))
        self._f_rate = _readonly(np.asarray([s.rate for s in samples], dtype=np.float64))
        self._check_funding()

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------
    def _check_spacing(self) -> None:
        if len(self._ts) < 2:
            return
        steps = np.diff(self._ts)
        if np.any(steps <= 0):
            i = int(np.argmax(steps <= 0)) + 1
            raise InputDataError(
                f"[{self.instrument}] bar timestamps not strictly increasing at index {i}"
            )
        if not self.allow_gaps and np.any(steps != self.interval.ms):
            i = int(np.argmax(steps != self.interval.ms)) + 1
            raise InputDataError(
                f"[{self.instrument}] gap at index {i}: "
                f"step={int(steps[i - 1])}ms expected={self.interval.ms}ms"
            )
        if self.allow_gaps and np.any(steps % self.interval.ms != 0):
            raise InputDataError(f"[{self.instrument}] bar timestamps off the {self.interval.value} grid")

    def _check_funding(self) -> None:
        if len(self._f_ts) > 1 and np.any(np.diff(self._f_ts) <= 0):
            raise InputDataError(f"[{self.instrument}] funding timestamps not strictly increasing")
        if not np.all(np.isfinite(self._f_rate)):
            raise InputDataError(f"[{self.instrument}] non-finite funding rate")

    # ------------------------------------------------------------------
    # bars
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._ts)

    @property
    def timestamps(self) -> np.ndarray:
        return self._ts

    @property
    def start_ts(self) -> int:
        return int(self._ts[0])

    @property
    def end_ts(self) -> int:
        return int(self._ts[-1])

    def bar(self, i: int) -> MarketBar:
        return MarketBar(
            timestamp=int(self._ts[i]),
            open=float(self._open[i]),
            high=float(self._high[i]),
            low=float(self._low[i]),
            close=float(self._close[i]),
            volume=float(self._volume[i]),
        )

    def closes(self, upto: Optional[int] = None) -> np.ndarray:
        """Closes [0..upto] inclusive, as a read-only view."""
        if upto is None:
            return self._close
        return self._close[: upto + 1]

    # ------------------------------------------------------------------
    # funding
    # ------------------------------------------------------------------
    @property
    def funding_samples(self) -> List[FundingSample]:
        return [FundingSample(int(t), float(r)) for t, r in zip(self._f_ts, self._f_rate)]

    @property
    def funding_rates(self) -> np.ndarray:
        return self._f_rate

    def funding_at(self, ts: int) -> Optional[FundingSample]:
        """Latest sample with timestamp <= ts."""
        i = int(np.searchsorted(self._f_ts, ts, side="right")) - 1
        if i < 0:
            return None
        return FundingSample(int(self._f_ts[i]), float(self._f_rate[i]))

    def funding_between(self, start_exclusive: Optional[int], end_inclusive: int) -> List[FundingSample]:
        lo = 0 if start_exclusive is None else int(np.searchsorted(self._f_ts, start_exclusive, side="right"))
        hi = int(np.searchsorted(self._f_ts, end_inclusive, side="right"))
        return [FundingSample(int(self._f_ts[i]), float(self._f_rate[i])) for i in range(lo, hi)]

    def funding_exact(self, ts: int) -> Optional[FundingSample]:
        i = int(np.searchsorted(self._f_ts, ts, side="left"))
        if i < len(self._f_ts) and int(self._f_ts[i]) == ts:
            return FundingSample(ts, float(self._f_rate[i]))
        return None

    # ------------------------------------------------------------------
    # slicing / frames
    # ------------------------------------------------------------------
    def window(self, start_ms: int, end_ms: int) -> "MarketSeries":
        """Sub-series with start_ms <= ts <= end_ms (funding filtered the same way)."""
        lo = int(np.searchsorted(self._ts, start_ms, side="left"))
        hi = int(np.searchsorted(self._ts, end_ms, side="right"))
        bars = [self.bar(i) for i in range(lo, hi)]
        funding = [s for s in self.funding_samples if start_ms <= s.timestamp <= end_ms]
        return MarketSeries(self.instrument, self.interval, bars, funding, allow_gaps=self.allow_gaps)

    @classmethod
    def from_frames(
        cls,
        instrument: str,
        interval: Interval | str,
        bars: pd.DataFrame,
        funding: Optional[pd.DataFrame] = None,
        *,
        allow_gaps: bool = False,
    ) -> "MarketSeries":
        missing = [c for c in BAR_COLUMNS if c not in bars.columns]
        if missing:
            raise InputDataError(f"[{instrument}] bar frame missing columns: {missing}")

        bar_list = [
            MarketBar(int(r.timestamp), float(r.open), float(r.high), float(r.low), float(r.close), float(r.volume))
            for r in bars[BAR_COLUMNS].itertuples(index=False)
        ]

        samples: List[FundingSample] = []
        if funding is not None and len(funding):
            missing = [c for c in FUNDING_COLUMNS if c not in funding.columns]
            if missing:
                raise InputDataError(f"[{instrument}] funding frame missing columns: {missing}")
            samples = [
                FundingSample(int(r.timestamp), float(r.rate))
                for r in funding[FUNDING_COLUMNS].itertuples(index=False)
            ]

        return cls(instrument, interval, bar_list, samples, allow_gaps=allow_gaps)

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame(
            {
                "timestamp": self._ts,
                "open": self._open,
                "high": self._high,
                "low": self._low,
                "close": self._close,
                "volume": self._volume,
            }
        )
        # latest funding rate known at each bar (forward-filled)
        rates = np.full(len(self._ts), math.nan)
        f_idx = np.searchsorted(self._f_ts, self._ts, side="right") - 1
        known = f_idx >= 0
        rates[known] = self._f_rate[f_idx[known]]
        df["funding_rate"] = rates
        return df

    def funding_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"timestamp": self._f_ts, "rate": self._f_rate})

    def __repr__(self) -> str:
        return (
            f"MarketSeries({self.instrument}, {self.interval.value}, "
            f"bars={len(self)}, funding={len(self._f_ts)})"
        )
