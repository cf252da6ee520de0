# perpbt/backtest/core/provider.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import pandas as pd

from perpbt import logs
from perpbt.backtest.core.data import MarketSeries
from perpbt.backtest.core.types import Interval
from perpbt.utils.errors import DataUnavailable, InputDataError


class MarketDataProvider(ABC):
    """
    MarketDataProvider (FROZEN)

    fetch(instrument, interval, start_ms, end_ms) -> MarketSeries

    - range is inclusive on both ends
    - UnsupportedInterval for an interval outside 1m/5m/15m/1h/4h/1d
    - DataUnavailable when the full range cannot be served
    - never returns silently partial data
    """

    @abstractmethod
    def fetch(self, instrument: str, interval: Interval | str, start_ms: int, end_ms: int) -> MarketSeries:
        ...


class FrameDataProvider(MarketDataProvider):
    """
    In-memory provider over pandas frames, keyed by (instrument, interval).

    Network retrieval lives outside this package; a downloader writes
    frames and hands them over here.
    """

    def __init__(self, *, allow_gaps: bool = False) -> None:
        self._frames: Dict[Tuple[str, Interval], Tuple[pd.DataFrame, Optional[pd.DataFrame]]] = {}
        self._allow_gaps = allow_gaps

    def add(
        self,
        instrument: str,
        interval: Interval | str,
        bars: pd.DataFrame,
        funding: Optional[pd.DataFrame] = None,
    ) -> "FrameDataProvider":
        self._frames[(instrument, Interval.parse(interval))] = (bars, funding)
        return self

    def fetch(self, instrument: str, interval: Interval | str, start_ms: int, end_ms: int) -> MarketSeries:
        itv = Interval.parse(interval)

        if start_ms > end_ms:
            raise InputDataError(f"start_ms={start_ms} > end_ms={end_ms}")

        key = (instrument, itv)
        if key not in self._frames:
            raise DataUnavailable(f"no data for {instrument} {itv.value}")

        bars, funding = self._frames[key]
        sel = bars[(bars["timestamp"] >= start_ms) & (bars["timestamp"] <= end_ms)]
        if sel.empty:
            raise DataUnavailable(f"{instrument} {itv.value}: no bars in [{start_ms}, {end_ms}]")

        first, last = int(sel["timestamp"].iloc[0]), int(sel["timestamp"].iloc[-1])
        # 覆盖不足：首尾 bar 距离请求边界超过一个 interval
        if first - start_ms >= itv.ms or end_ms - last >= itv.ms:
            raise DataUnavailable(
                f"{instrument} {itv.value}: requested [{start_ms}, {end_ms}] "
                f"but data covers [{first}, {last}]"
            )

        f_sel = None
        if funding is not None:
            f_sel = funding[(funding["timestamp"] >= start_ms) & (funding["timestamp"] <= end_ms)]

        series = MarketSeries.from_frames(
            instrument, itv, sel.reset_index(drop=True), f_sel, allow_gaps=self._allow_gaps
        )
        logs.debug(f"[FrameDataProvider] fetched {series!r}")
        return series
