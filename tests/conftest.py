# tests/conftest.py
from __future__ import annotations

from typing import Dict, Optional, Sequence

import pytest
from loguru import logger

from perpbt.backtest.core.data import MarketSeries
from perpbt.backtest.core.types import FundingSample, Interval, MarketBar
from perpbt.config.backtest_config import BacktestConfig, CommissionConfig, RiskConfig

# 2024-01-01 00:00:00 UTC
T0 = 1_704_067_200_000
HOUR = 3_600_000


@pytest.fixture(autouse=True)
def disable_file_logger():
    logger.remove()
    logger.add(lambda msg: None)  # or sys.stderr
    yield


def make_series(
    closes: Sequence[float],
    *,
    instrument: str = "BTC",
    interval: str = "1h",
    funding: Optional[Dict[int, float]] = None,
    samples: Sequence[FundingSample] = (),
    start: int = T0,
) -> MarketSeries:
    """
    Flat bars (O=H=L=C) on a regular grid.
    funding: {bar_index: rate} placed exactly on the bar timestamp.
    samples: extra FundingSample objects at arbitrary timestamps.
    """
    step = Interval.parse(interval).ms
    bars = [
        MarketBar(timestamp=start + i * step, open=c, high=c, low=c, close=c, volume=1.0)
        for i, c in enumerate(closes)
    ]
    samples = list(samples) + [FundingSample(start + i * step, r) for i, r in sorted((funding or {}).items())]
    samples.sort(key=lambda s: s.timestamp)
    return MarketSeries(instrument, interval, bars, samples)


def quiet_risk(**overrides) -> RiskConfig:
    """Risk config with every protective check off unless overridden."""
    base = dict(
        max_position_size_pct=1.0,
        max_daily_loss_pct=None,
        stop_loss_pct=None,
        take_profit_pct=None,
        max_leverage=3.0,
        max_positions=5,
        max_drawdown_pct=None,
    )
    base.update(overrides)
    return RiskConfig(**base)


def make_config(strategy: Optional[dict] = None, *, risk: Optional[RiskConfig] = None,
                commission: Optional[CommissionConfig] = None, **kw) -> BacktestConfig:
    return BacktestConfig(
        name=kw.pop("name", "test"),
        initial_capital=kw.pop("initial_capital", 10_000.0),
        strategy=strategy or {"type": "ma_cross", "short_window": 2, "long_window": 3},
        risk=risk or quiet_risk(),
        commission=commission or CommissionConfig(maker_rate=0.0, taker_rate=0.0),
        **kw,
    )


@pytest.fixture
def series_factory():
    return make_series


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def t0() -> int:
    return T0


@pytest.fixture
def hour() -> int:
    return HOUR


@pytest.fixture
def risk_factory():
    return quiet_risk
