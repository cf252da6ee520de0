# tests/backtest/conftest.py
from __future__ import annotations

from typing import List

import pytest

from perpbt.backtest.core.data import MarketSeries
from perpbt.backtest.core.events import MarketEvent


def replay_events(series: MarketSeries) -> List[MarketEvent]:
    """Strategy-only replay: the MarketEvents the engine would build for `series`."""
    out = []
    for i in range(len(series)):
        bar = series.bar(i)
        out.append(
            MarketEvent(
                ts=bar.timestamp,
                instrument=series.instrument,
                index=i,
                bar=bar,
                closes=series.closes(i),
                funding=series.funding_at(bar.timestamp),
            )
        )
    return out


@pytest.fixture
def events_of():
    return replay_events
