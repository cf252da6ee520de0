#!filepath: tests/backtest/metrics/test_report_generator.py
from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from perpbt.backtest.commission import CommissionStats
from perpbt.backtest.core.events import FundingPayment, Trade
from perpbt.backtest.core.types import LegKind, Side
from perpbt.backtest.metrics.report import ReportGenerator
from perpbt.backtest.report.equity_curve import EquityPoint
from perpbt.utils.errors import NumericFault

INITIAL = 10_000.0


def pt(ts, equity, funding_pnl=0.0):
    return EquityPoint(ts=ts, cash=equity, unrealized_pnl=0.0, realized_pnl=equity - INITIAL - funding_pnl,
                       funding_pnl=funding_pnl, commission=0.0, equity=equity, gross_notional=0.0)


def closing(net, ts=10, entry_ts=0):
    return Trade(ts=ts, instrument="BTC", side=Side.SELL, quantity=1.0, price=100.0,
                 fee=0.0, realized_pnl=net, leg=LegKind.CLOSE, entry_ts=entry_ts)


def fp(amount, rate=0.001):
    return FundingPayment(ts=1, instrument="BTC", position_qty=1.0, rate=rate, mark_price=100.0, amount=amount)


@pytest.fixture
def gen() -> ReportGenerator:
    return ReportGenerator(INITIAL, "1h")


# ================================================================
# returns / drawdown
# ================================================================
def test_drawdown_zero_for_non_decreasing_curve(gen):
    r = gen.generate([pt(1, 10_000.0), pt(2, 10_100.0), pt(3, 10_200.0)], [], [], CommissionStats())
    assert r.max_drawdown == 0.0


def test_drawdown_fraction(gen):
    r = gen.generate([pt(1, 11_000.0), pt(2, 9_900.0), pt(3, 10_500.0)], [], [], CommissionStats())
    assert r.max_drawdown == pytest.approx(0.1)


def test_sharpe_matches_definition(gen):
    curve = [pt(1, 10_100.0), pt(2, 10_000.0), pt(3, 10_200.0)]
    eq = np.array([INITIAL, 10_100.0, 10_000.0, 10_200.0])
    ret = np.diff(eq) / eq[:-1]
    expected = ret.mean() / ret.std(ddof=1) * math.sqrt(8760)

    r = gen.generate(curve, [], [], CommissionStats())

    assert r.sharpe == pytest.approx(expected)
    assert r.sortino != 0.0


def test_sharpe_zero_without_dispersion(gen):
    flat = gen.generate([pt(1, INITIAL), pt(2, INITIAL), pt(3, INITIAL)], [], [], CommissionStats())
    single = gen.generate([pt(1, 10_100.0)], [], [], CommissionStats())

    assert flat.sharpe == 0.0
    assert single.sharpe == 0.0


def test_total_return(gen):
    r = gen.generate([pt(1, 10_500.0)], [], [], CommissionStats())
    assert r.total_return == pytest.approx(0.05)
    assert r.final_equity == 10_500.0


def test_empty_curve(gen):
    r = gen.generate([], [], [], CommissionStats(), truncated=True)

    assert r.n_bars == 0
    assert r.total_return == 0.0
    assert r.start_ts is None
    assert r.truncated


# ================================================================
# trades
# ================================================================
def test_win_rate_profit_factor_duration(gen):
    trades = [closing(5.0, ts=10, entry_ts=0), closing(-2.0, ts=30, entry_ts=10), closing(3.0, ts=40, entry_ts=10)]
    r = gen.generate([pt(1, INITIAL)], trades, [], CommissionStats())

    assert r.n_trades == 3
    assert r.win_rate == pytest.approx(2 / 3)
    assert r.profit_factor == pytest.approx(4.0)
    assert r.avg_trade_duration_ms == pytest.approx(20.0)


def test_profit_factor_undefined_without_losses(gen):
    r = gen.generate([pt(1, INITIAL)], [closing(5.0)], [], CommissionStats())
    assert r.profit_factor is None
    assert r.win_rate == 1.0


def test_open_legs_not_counted_as_trades(gen):
    opened = Trade(ts=1, instrument="BTC", side=Side.BUY, quantity=1.0, price=100.0, fee=0.1,
                   realized_pnl=0.0, leg=LegKind.OPEN, entry_ts=1)
    r = gen.generate([pt(1, INITIAL)], [opened], [], CommissionStats())

    assert r.n_trades == 0
    assert r.n_fills == 1
    assert r.win_rate == 0.0


# ================================================================
# funding
# ================================================================
def test_funding_summary(gen):
    pays = [fp(2.0, -0.001), fp(-1.0, 0.0005), fp(1.0, -0.0005)]
    curve = [pt(1, INITIAL + 4.0, funding_pnl=2.0)]

    r = gen.generate(curve, [], pays, CommissionStats())
    f = r.funding

    assert f.funding_received == pytest.approx(3.0)
    assert f.funding_paid == pytest.approx(1.0)
    assert (f.payments_received, f.payments_paid) == (2, 1)
    assert f.efficiency == pytest.approx(0.5)
    assert f.contribution_pct == pytest.approx(50.0)
    assert f.avg_payment == pytest.approx(2.0 / 3)
    assert f.funding_only_return == pytest.approx(2.0 / INITIAL)


def test_rate_distribution_and_direction(gen):
    rates = [0.001, 0.002, -0.001, 0.0, 0.003, 0.001, 0.002]
    r = gen.generate([pt(1, INITIAL)], [], [], CommissionStats(), funding_rates=rates)
    d, s = r.funding.distribution, r.funding.direction
    ref = pd.Series(rates)

    assert d.count == 7
    assert d.mean == pytest.approx(ref.mean())
    assert d.median == pytest.approx(0.001)
    assert d.std == pytest.approx(ref.std(ddof=1))
    assert d.skewness == pytest.approx(ref.skew())
    assert d.kurtosis == pytest.approx(ref.kurt())
    assert d.p90 == pytest.approx(np.percentile(rates, 90))
    assert (d.min, d.max) == (-0.001, 0.003)

    assert (s.positive_count, s.negative_count, s.zero_count) == (5, 1, 1)
    assert s.positive_share == pytest.approx(5 / 7)
    assert s.longest_positive_streak == 3
    assert s.longest_negative_streak == 1


def test_small_sample_distribution_is_finite(gen):
    r = gen.generate([pt(1, INITIAL)], [], [], CommissionStats(), funding_rates=[0.001])
    assert r.funding.distribution.std == 0.0
    assert r.funding.distribution.skewness == 0.0


def test_funding_by_period(gen):
    day = 24 * 3_600_000
    t0 = 1_704_067_200_000  # Monday 2024-01-01 UTC

    def at(ts, amount, rate):
        return FundingPayment(ts=ts, instrument="BTC", position_qty=1.0, rate=rate,
                              mark_price=100.0, amount=amount)

    pays = [
        at(t0, -1.0, 0.001),
        at(t0 + day // 3, -2.0, 0.002),
        at(t0 + day, 3.0, -0.003),
        at(t0 + 8 * day, 1.0, -0.001),
        at(t0 + 31 * day, 0.5, -0.0005),
    ]
    by = gen.generate([pt(1, INITIAL)], [], pays, CommissionStats()).funding.by_period

    assert [m.period for m in by.daily] == ["2024-01-01", "2024-01-02", "2024-01-09", "2024-02-01"]
    assert [m.n_payments for m in by.weekly] == [3, 1, 1]
    assert by.weekly[0].period == "2024-01-01/2024-01-07"
    assert [m.period for m in by.monthly] == ["2024-01", "2024-02"]
    assert [m.total_pnl for m in by.monthly] == pytest.approx([1.0, 0.5])

    first = by.daily[0]
    assert first.start_ts == t0
    assert first.avg_rate == pytest.approx(0.0015)
    assert first.volatility == pytest.approx(np.std([0.001, 0.002], ddof=1))
    assert first.sharpe == pytest.approx(-1.5 / np.std([-1.0, -2.0], ddof=1))

    # single-payment buckets have no dispersion
    assert by.daily[1].volatility == 0.0
    assert by.daily[1].sharpe == 0.0


def test_no_payments_no_periods(gen):
    by = gen.generate([pt(1, INITIAL)], [], [], CommissionStats()).funding.by_period
    assert by.daily == () and by.weekly == () and by.monthly == ()


# ================================================================
# purity / faults
# ================================================================
def test_report_is_idempotent(gen):
    curve = [pt(1, 10_100.0), pt(2, 9_950.0), pt(3, 10_300.0)]
    trades = [closing(5.0), closing(-2.0)]
    pays = [fp(1.0), fp(-0.5)]

    a = gen.generate(curve, trades, pays, CommissionStats(total_commission=1.0), funding_rates=[0.001, -0.002])
    b = gen.generate(curve, trades, pays, CommissionStats(total_commission=1.0), funding_rates=[0.001, -0.002])

    assert a == b
    assert a.summary() == b.summary()


def test_non_positive_equity_is_numeric_fault(gen):
    with pytest.raises(NumericFault):
        gen.generate([pt(1, 0.0), pt(2, 100.0)], [], [], CommissionStats())


def test_summary_is_flat(gen):
    s = gen.generate([pt(1, INITIAL)], [], [], CommissionStats()).summary()

    assert "funding.distribution.mean" in s
    assert "funding.funding_only_return" in s
    assert not any(k.startswith("funding.by_period") for k in s)
    assert "commission.total_commission" in s
    assert "trades" not in s
