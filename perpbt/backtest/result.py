# perpbt/backtest/result.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from perpbt.backtest.core.events import FundingPayment, Trade
from perpbt.backtest.metrics.report import PerformanceReport
from perpbt.backtest.report.equity_curve import EquityPoint
from perpbt.observability.diagnostics import Diagnostics, NoOpDiagnostics
from perpbt.utils.errors import BacktestError


@dataclass(frozen=True)
class BacktestResult:
    """
    BacktestResult (FINAL / FROZEN)

    不可变事实结果，用于：
      - 结果回放
      - 回归测试
      - Metrics 派生
    """

    # -----------------------
    # Experiment identity
    # -----------------------
    name: str
    instruments: Tuple[str, ...]
    interval: str
    strategy: Dict              # 原始 strategy config

    # -----------------------
    # Time / event stats
    # -----------------------
    start_ts: Optional[int]
    end_ts: Optional[int]
    n_bars: int
    n_signals: int

    # -----------------------
    # Core trajectories
    # -----------------------
    report: PerformanceReport
    equity_curve: Tuple[EquityPoint, ...]
    trades: Tuple[Trade, ...]
    funding_payments: Tuple[FundingPayment, ...]

    truncated: bool = False
    diagnostics: Diagnostics = field(default_factory=NoOpDiagnostics, compare=False)

    ok = True

    @property
    def equity(self) -> List[float]:
        return [p.equity for p in self.equity_curve]

    @property
    def timestamps(self) -> List[int]:
        return [p.ts for p in self.equity_curve]


@dataclass(frozen=True)
class BacktestFailure:
    """
    A run that did not complete.

    last_timestamp is None when the run never started (bad data / config);
    otherwise it is the last bar fully committed before the fault.
    """

    name: str
    error: BacktestError
    last_timestamp: Optional[int] = None
    equity_curve: Tuple[EquityPoint, ...] = ()
    diagnostics: Diagnostics = field(default_factory=NoOpDiagnostics, compare=False)

    ok = False

    @property
    def kind(self) -> str:
        return type(self.error).__name__
