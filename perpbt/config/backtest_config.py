from __future__ import annotations

import math
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from perpbt.backtest.core.types import FundingAlignment
from perpbt.utils.errors import ConfigurationError


def _require(cond: bool, msg: str) -> None:
    # ConfigurationError is not a ValueError, so pydantic lets it through untouched
    if not cond:
        raise ConfigurationError(msg)


def _fraction(name: str, value: Optional[float], *, allow_zero: bool = False, upper: float = 1.0) -> None:
    if value is None:
        return
    lo_ok = value >= 0.0 if allow_zero else value > 0.0
    _require(
        math.isfinite(value) and lo_ok and value <= upper,
        f"{name}={value} out of range ({'[' if allow_zero else '('}0, {upper}])",
    )


class CommissionConfig(BaseModel):
    """
    CommissionConfig（FROZEN）

    Rates are fractions of traded notional (0.0005 = 5 bps).
    """

    model_config = ConfigDict(frozen=True)

    maker_rate: float = 0.0002
    taker_rate: float = 0.0005
    funding_enabled: bool = True

    @model_validator(mode="after")
    def _check_rates(self) -> "CommissionConfig":
        _fraction("maker_rate", self.maker_rate, allow_zero=True)
        _fraction("taker_rate", self.taker_rate, allow_zero=True)
        _require(
            self.maker_rate <= self.taker_rate,
            f"maker_rate={self.maker_rate} must not exceed taker_rate={self.taker_rate}",
        )
        return self


class RiskConfig(BaseModel):
    """
    RiskConfig（FROZEN）

    All *_pct fields are fractions. None disables the corresponding check.
    """

    model_config = ConfigDict(frozen=True)

    max_position_size_pct: float = 0.1
    max_daily_loss_pct: Optional[float] = 0.02
    stop_loss_pct: Optional[float] = 0.05
    take_profit_pct: Optional[float] = 0.1
    max_leverage: float = 3.0
    max_positions: int = 5
    max_drawdown_pct: Optional[float] = 0.15
    # this instrument's share of gross notional after the fill; None = off
    max_concentration_pct: Optional[float] = None
    use_trailing_stop: bool = False
    trailing_stop_distance_pct: Optional[float] = None

    @model_validator(mode="after")
    def _check_ranges(self) -> "RiskConfig":
        _require(
            math.isfinite(self.max_leverage) and self.max_leverage > 0.0,
            f"max_leverage={self.max_leverage} must be > 0",
        )
        _fraction("max_position_size_pct", self.max_position_size_pct, upper=self.max_leverage)
        _fraction("max_daily_loss_pct", self.max_daily_loss_pct)
        _fraction("stop_loss_pct", self.stop_loss_pct)
        _fraction("take_profit_pct", self.take_profit_pct, upper=math.inf)
        _fraction("max_drawdown_pct", self.max_drawdown_pct)
        _fraction("max_concentration_pct", self.max_concentration_pct)
        _fraction("trailing_stop_distance_pct", self.trailing_stop_distance_pct)
        _require(self.max_positions >= 1, f"max_positions={self.max_positions} must be >= 1")
        if self.use_trailing_stop:
            _require(
                self.trailing_stop_distance_pct is not None,
                "use_trailing_stop requires trailing_stop_distance_pct",
            )
        return self


class BacktestConfig(BaseModel):
    """
    BacktestConfig（FINAL / FROZEN）

    语义：
      - 一次回测的"实验定义"
      - 数据（MarketSeries）不在这里，由调用方注入
      - strategy 参数 opaque，由 StrategyFactory 解释
    """

    model_config = ConfigDict(frozen=True)

    name: str = "default"
    initial_capital: float = 10_000.0

    commission: CommissionConfig = Field(default_factory=CommissionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)

    # {"type": "ma_cross", "short_window": 10, "long_window": 30}
    strategy: Dict[str, Any] = Field(default_factory=lambda: {"type": "ma_cross"})

    funding_alignment: FundingAlignment = FundingAlignment.NEXT_BAR

    @model_validator(mode="after")
    def _check_run(self) -> "BacktestConfig":
        _require(
            math.isfinite(self.initial_capital) and self.initial_capital > 0.0,
            f"initial_capital={self.initial_capital} must be positive",
        )
        _require("type" in self.strategy, "strategy config is missing 'type'")
        return self
