from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from perpbt.backtest.commission import CommissionStats
from perpbt.backtest.core.events import FundingPayment, Trade
from perpbt.backtest.core.types import Interval
from perpbt.backtest.report.equity_curve import EquityPoint
from perpbt.utils.errors import NumericFault


# ---------------------------------------------------------------------------
# Report value objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class FundingRateDistribution:
    count: int = 0
    mean: float = 0.0
    median: float = 0.0
    std: float = 0.0
    min: float = 0.0
    max: float = 0.0
    skewness: float = 0.0
    kurtosis: float = 0.0     # excess
    p10: float = 0.0
    p25: float = 0.0
    p75: float = 0.0
    p90: float = 0.0


@dataclass(frozen=True)
class FundingDirectionStats:
    positive_count: int = 0
    negative_count: int = 0
    zero_count: int = 0
    positive_share: float = 0.0
    negative_share: float = 0.0
    avg_positive_rate: float = 0.0
    avg_negative_rate: float = 0.0
    longest_positive_streak: int = 0
    longest_negative_streak: int = 0


@dataclass(frozen=True)
class FundingPeriodMetric:
    period: str            # "2024-01-01" / "2024-01-01/2024-01-07" / "2024-01"
    start_ts: int
    n_payments: int
    avg_rate: float
    total_pnl: float
    volatility: float      # std of rates inside the period
    sharpe: float          # mean / std of payments inside the period, not annualised


@dataclass(frozen=True)
class FundingMetricsByPeriod:
    """UTC calendar buckets; weeks run Monday to Sunday. Empty periods are omitted."""

    daily: Tuple[FundingPeriodMetric, ...] = ()
    weekly: Tuple[FundingPeriodMetric, ...] = ()
    monthly: Tuple[FundingPeriodMetric, ...] = ()


@dataclass(frozen=True)
class FundingSummary:
    total_funding_pnl: float = 0.0
    funding_received: float = 0.0
    funding_paid: float = 0.0          # reported as a positive magnitude
    payments_received: int = 0
    payments_paid: int = 0
    avg_payment: float = 0.0
    avg_rate: float = 0.0
    rate_volatility: float = 0.0
    efficiency: float = 0.0            # net / (received + paid)
    contribution_pct: float = 0.0      # funding_pnl / total PnL × 100
    funding_only_return: float = 0.0   # funding_pnl / initial capital
    distribution: FundingRateDistribution = field(default_factory=FundingRateDistribution)
    direction: FundingDirectionStats = field(default_factory=FundingDirectionStats)
    by_period: FundingMetricsByPeriod = field(default_factory=FundingMetricsByPeriod)


@dataclass(frozen=True)
class PerformanceReport:
    """
    PerformanceReport (FINAL / FROZEN)

    Pure function of the run's facts; generating it twice from the same
    inputs yields equal values.
    """

    initial_capital: float
    final_equity: float
    total_return: float
    total_pnl: float
    trading_pnl: float
    unrealized_pnl: float
    total_commission: float
    funding_pnl: float

    sharpe: float
    sortino: float
    max_drawdown: float

    n_bars: int
    n_trades: int                 # closing legs
    n_fills: int                  # all legs
    win_rate: float
    profit_factor: Optional[float]
    avg_trade_duration_ms: float

    start_ts: Optional[int]
    end_ts: Optional[int]
    truncated: bool

    funding: FundingSummary
    commission: CommissionStats

    trades: Tuple[Trade, ...] = ()
    funding_payments: Tuple[FundingPayment, ...] = ()

    def summary(self) -> Dict[str, Any]:
        """Flat scalar view (no trade / funding logs)."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            if f.name in ("trades", "funding_payments"):
                continue
            v = getattr(self, f.name)
            if is_dataclass(v):
                for k, x in asdict(v).items():
                    if isinstance(x, dict):
                        for kk, xx in x.items():
                            if isinstance(xx, (list, tuple)):
                                continue
                            out[f"{f.name}.{k}.{kk}"] = xx
                    else:
                        out[f"{f.name}.{k}"] = x
            else:
                out[f.name] = v
        out["commission.average_rate"] = self.commission.average_rate
        out["commission.maker_taker_ratio"] = self.commission.maker_taker_ratio
        return out


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------
class ReportGenerator:
    """
    ReportGenerator

    curve + trades + funding log + commission stats → PerformanceReport

    - Sharpe: mean / std(ddof=1) × sqrt(periods_per_year); 0.0 when < 2 returns
      or zero dispersion
    - max drawdown: largest fractional peak-to-trough decline
    - win rate: closing legs with net_pnl > 0
    """

    def __init__(self, initial_capital: float, interval: Interval | str) -> None:
        self.initial_capital = float(initial_capital)
        self.interval = Interval.parse(interval)

    def generate(
        self,
        curve: Sequence[EquityPoint],
        trades: Sequence[Trade],
        funding_payments: Sequence[FundingPayment],
        commission_stats: CommissionStats,
        truncated: bool = False,
        funding_rates: Sequence[float] = (),
    ) -> PerformanceReport:
        eq = np.concatenate([[self.initial_capital], [p.equity for p in curve]]).astype(np.float64)
        last = curve[-1] if curve else None

        final_equity = float(eq[-1])
        total_pnl = final_equity - self.initial_capital
        funding_pnl = last.funding_pnl if last else 0.0

        returns = self._returns(eq)
        closing = [t for t in trades if t.is_closing]

        report = PerformanceReport(
            initial_capital=self.initial_capital,
            final_equity=final_equity,
            total_return=final_equity / self.initial_capital - 1.0,
            total_pnl=total_pnl,
            trading_pnl=float(sum(t.realized_pnl for t in trades)),
            unrealized_pnl=last.unrealized_pnl if last else 0.0,
            total_commission=commission_stats.total_commission,
            funding_pnl=funding_pnl,
            sharpe=self.sharpe(returns),
            sortino=self.sortino(returns),
            max_drawdown=self.max_drawdown(eq),
            n_bars=len(curve),
            n_trades=len(closing),
            n_fills=len(trades),
            win_rate=self.win_rate(closing),
            profit_factor=self.profit_factor(closing),
            avg_trade_duration_ms=float(np.mean([t.duration_ms for t in closing])) if closing else 0.0,
            start_ts=curve[0].ts if curve else None,
            end_ts=last.ts if last else None,
            truncated=truncated,
            funding=self.funding_summary(funding_payments, funding_rates, funding_pnl, total_pnl),
            commission=commission_stats,
            trades=tuple(trades),
            funding_payments=tuple(funding_payments),
        )
        self._check_finite(report)
        return report

    # ------------------------------------------------------------------
    # return statistics
    # ------------------------------------------------------------------
    @staticmethod
    def _returns(eq: np.ndarray) -> np.ndarray:
        if len(eq) < 2:
            return np.empty(0)
        prev = eq[:-1]
        if np.any(prev <= 0.0):
            raise NumericFault("[ReportGenerator] non-positive equity; per-bar returns undefined")
        return np.diff(eq) / prev

    def sharpe(self, returns: np.ndarray) -> float:
        if len(returns) < 2:
            return 0.0
        sd = float(np.std(returns, ddof=1))
        if sd == 0.0:
            return 0.0
        return float(np.mean(returns)) / sd * math.sqrt(self.interval.periods_per_year)

    def sortino(self, returns: np.ndarray) -> float:
        if len(returns) < 2:
            return 0.0
        downside = np.minimum(returns, 0.0)
        dd = float(np.sqrt(np.mean(downside ** 2)))
        if dd == 0.0:
            return 0.0
        return float(np.mean(returns)) / dd * math.sqrt(self.interval.periods_per_year)

    @staticmethod
    def max_drawdown(eq: np.ndarray) -> float:
        if len(eq) == 0:
            return 0.0
        peak = np.maximum.accumulate(eq)
        safe = np.where(peak > 0.0, peak, 1.0)
        dd = np.where(peak > 0.0, (peak - eq) / safe, 0.0)
        return float(dd.max())

    # ------------------------------------------------------------------
    # trade statistics
    # ------------------------------------------------------------------
    @staticmethod
    def win_rate(closing: Sequence[Trade]) -> float:
        if not closing:
            return 0.0
        return sum(1 for t in closing if t.net_pnl > 0.0) / len(closing)

    @staticmethod
    def profit_factor(closing: Sequence[Trade]) -> Optional[float]:
        gross_profit = sum(t.net_pnl for t in closing if t.net_pnl > 0.0)
        gross_loss = -sum(t.net_pnl for t in closing if t.net_pnl < 0.0)
        # 无亏损时未定义
        if gross_loss == 0.0:
            return None
        return gross_profit / gross_loss

    # ------------------------------------------------------------------
    # funding
    # ------------------------------------------------------------------
    def funding_summary(
        self,
        payments: Sequence[FundingPayment],
        rates: Sequence[float],
        funding_pnl: float,
        total_pnl: float,
    ) -> FundingSummary:
        received = float(sum(p.amount for p in payments if p.amount > 0.0))
        paid = float(-sum(p.amount for p in payments if p.amount < 0.0))
        pay_rates = np.asarray([p.rate for p in payments], dtype=np.float64)

        gross = received + paid
        return FundingSummary(
            total_funding_pnl=funding_pnl,
            funding_received=received,
            funding_paid=paid,
            payments_received=sum(1 for p in payments if p.amount > 0.0),
            payments_paid=sum(1 for p in payments if p.amount < 0.0),
            avg_payment=float(np.mean([p.amount for p in payments])) if payments else 0.0,
            avg_rate=float(pay_rates.mean()) if len(pay_rates) else 0.0,
            rate_volatility=float(pay_rates.std(ddof=1)) if len(pay_rates) > 1 else 0.0,
            efficiency=(received - paid) / gross if gross > 0.0 else 0.0,
            contribution_pct=funding_pnl / total_pnl * 100.0 if total_pnl != 0.0 else 0.0,
            funding_only_return=funding_pnl / self.initial_capital,
            distribution=self.rate_distribution(rates),
            direction=self.direction_stats(rates),
            by_period=self.period_metrics(payments),
        )

    @staticmethod
    def rate_distribution(rates: Sequence[float]) -> FundingRateDistribution:
        r = pd.Series(list(rates), dtype="float64")
        if r.empty:
            return FundingRateDistribution()

        def _or0(x: float) -> float:
            # pandas returns NaN for skew (n < 3) / kurt (n < 4) / std (n < 2)
            return 0.0 if pd.isna(x) else float(x)

        p10, p25, p75, p90 = np.percentile(r.to_numpy(), [10, 25, 75, 90])
        return FundingRateDistribution(
            count=int(r.size),
            mean=float(r.mean()),
            median=float(r.median()),
            std=_or0(r.std(ddof=1)),
            min=float(r.min()),
            max=float(r.max()),
            skewness=_or0(r.skew()),
            kurtosis=_or0(r.kurt()),
            p10=float(p10),
            p25=float(p25),
            p75=float(p75),
            p90=float(p90),
        )

    @staticmethod
    def period_metrics(payments: Sequence[FundingPayment]) -> FundingMetricsByPeriod:
        if not payments:
            return FundingMetricsByPeriod()

        df = pd.DataFrame(
            {
                "ts": [p.ts for p in payments],
                "rate": [p.rate for p in payments],
                "amount": [p.amount for p in payments],
            }
        )
        when = pd.to_datetime(df["ts"], unit="ms")
        return FundingMetricsByPeriod(
            daily=_period_rows(df, when.dt.to_period("D")),
            weekly=_period_rows(df, when.dt.to_period("W-SUN")),
            monthly=_period_rows(df, when.dt.to_period("M")),
        )

    @staticmethod
    def direction_stats(rates: Sequence[float]) -> FundingDirectionStats:
        r = np.asarray(list(rates), dtype=np.float64)
        n = len(r)
        if n == 0:
            return FundingDirectionStats()

        pos = r[r > 0.0]
        neg = r[r < 0.0]

        longest_pos = longest_neg = run_pos = run_neg = 0
        for x in r:
            run_pos = run_pos + 1 if x > 0.0 else 0
            run_neg = run_neg + 1 if x < 0.0 else 0
            longest_pos = max(longest_pos, run_pos)
            longest_neg = max(longest_neg, run_neg)

        return FundingDirectionStats(
            positive_count=len(pos),
            negative_count=len(neg),
            zero_count=n - len(pos) - len(neg),
            positive_share=len(pos) / n,
            negative_share=len(neg) / n,
            avg_positive_rate=float(pos.mean()) if len(pos) else 0.0,
            avg_negative_rate=float(neg.mean()) if len(neg) else 0.0,
            longest_positive_streak=longest_pos,
            longest_negative_streak=longest_neg,
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _check_finite(report: PerformanceReport) -> None:
        for key, value in report.summary().items():
            if isinstance(value, float) and not math.isfinite(value):
                raise NumericFault(f"[ReportGenerator] non-finite statistic {key}={value}")


def _period_rows(df: pd.DataFrame, keys: pd.Series) -> Tuple[FundingPeriodMetric, ...]:
    rows = []
    for period, g in df.groupby(keys, sort=True):
        amounts = g["amount"]
        sd_rate = g["rate"].std(ddof=1)
        sd_amt = amounts.std(ddof=1)
        rows.append(
            FundingPeriodMetric(
                period=str(period),
                start_ts=int(period.start_time.value // 1_000_000),
                n_payments=int(len(g)),
                avg_rate=float(g["rate"].mean()),
                total_pnl=float(amounts.sum()),
                volatility=0.0 if pd.isna(sd_rate) else float(sd_rate),
                sharpe=0.0 if pd.isna(sd_amt) or sd_amt == 0.0 else float(amounts.mean() / sd_amt),
            )
        )
    return tuple(rows)
