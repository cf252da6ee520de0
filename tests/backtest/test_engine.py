#!filepath: tests/backtest/test_engine.py
from __future__ import annotations

import pytest

from perpbt.backtest.core.events import OrderRequest, SignalEvent
from perpbt.backtest.core.types import FundingSample, LegKind, OrderKind, Side, TimeInForce
from perpbt.backtest.engine import BacktestEngine, run_backtest
from perpbt.backtest.result import BacktestResult
from perpbt.backtest.strategy.custom import CustomStrategy
from perpbt.config.backtest_config import CommissionConfig
from perpbt.observability.diagnostics import Diagnostics
from perpbt.backtest.report.sinks import CollectingMonitor

PRICES = [100.0, 101.0, 102.0, 103.0, 104.0, 103.0, 102.0, 101.0, 100.0]


def enter_at(index: int, direction: int = 1):
    def handler(e):
        if e.index == index:
            return SignalEvent(e.ts, e.instrument, direction)
        return None

    return CustomStrategy(handler)


def orders_at(plan):
    """plan: {bar_index: OrderRequest}"""
    return CustomStrategy(lambda e: plan.get(e.index))


# ================================================================
# basic replay
# ================================================================
def test_ma_cross_round_trip(series_factory, config_factory):
    result = run_backtest(config_factory(), series_factory(PRICES))

    assert isinstance(result, BacktestResult)
    assert result.n_bars == 9
    assert [t.leg for t in result.trades] == [LegKind.OPEN, LegKind.CLOSE]
    assert result.trades[0].ts == result.equity_curve[2].ts
    assert result.trades[1].ts == result.equity_curve[6].ts
    assert result.trades[0].quantity == pytest.approx(10_000.0 / 102.0)
    assert result.report.final_equity == pytest.approx(10_000.0)
    assert result.report.n_trades == 1
    assert not result.truncated


def test_equity_identity_every_bar(series_factory, config_factory):
    cfg = config_factory(commission=CommissionConfig(maker_rate=0.0002, taker_rate=0.0005))
    series = series_factory(PRICES, funding={3: 0.001, 5: -0.0005, 7: 0.002})

    result = run_backtest(cfg, series)

    for p in result.equity_curve:
        expected = 10_000.0 + p.realized_pnl + p.funding_pnl - p.commission + p.unrealized_pnl
        assert p.equity == pytest.approx(expected, abs=1e-6)


def test_commission_is_monotone(series_factory, config_factory):
    series = series_factory(PRICES)
    cheap = run_backtest(config_factory(commission=CommissionConfig(maker_rate=0.0, taker_rate=0.0005)), series)
    dear = run_backtest(config_factory(commission=CommissionConfig(maker_rate=0.0, taker_rate=0.001)), series)

    assert dear.report.total_commission > cheap.report.total_commission
    assert dear.report.final_equity < cheap.report.final_equity
    assert cheap.report.commission.taker_orders == 2


def test_run_is_deterministic(series_factory, config_factory):
    series = series_factory(PRICES, funding={4: 0.001})

    a = run_backtest(config_factory(), series)
    b = run_backtest(config_factory(), series)

    assert a.report == b.report
    assert a.equity_curve == b.equity_curve


# ================================================================
# funding
# ================================================================
def test_long_pays_positive_funding(series_factory, config_factory):
    series = series_factory([100.0] * 4, funding={2: 0.001})
    result = run_backtest(config_factory(), series, strategies={"BTC": enter_at(0, 1)})

    assert len(result.funding_payments) == 1
    assert result.funding_payments[0].amount == pytest.approx(-10.0)
    assert result.report.funding_pnl == pytest.approx(-10.0)
    assert result.report.final_equity == pytest.approx(9_990.0)
    assert result.report.funding.funding_paid == pytest.approx(10.0)


def test_short_receives_positive_funding(series_factory, config_factory):
    series = series_factory([100.0] * 4, funding={2: 0.001})
    result = run_backtest(config_factory(), series, strategies={"BTC": enter_at(0, -1)})

    assert result.funding_payments[0].amount == pytest.approx(10.0)
    assert result.report.final_equity == pytest.approx(10_010.0)


def test_flat_position_has_no_funding(series_factory, config_factory):
    series = series_factory([100.0] * 6, funding={i: 0.01 for i in range(6)})
    result = run_backtest(config_factory(), series)

    assert result.trades == ()
    assert result.funding_payments == ()
    assert result.report.funding_pnl == 0.0
    assert result.report.max_drawdown == 0.0
    assert result.report.funding.distribution.count == 6


def test_funding_between_bars_lands_on_next_bar(series_factory, config_factory, t0, hour):
    series = series_factory([100.0] * 4, samples=[FundingSample(t0 + 3 * hour // 2, 0.001)])

    result = run_backtest(config_factory(), series, strategies={"BTC": enter_at(0, 1)})

    assert len(result.funding_payments) == 1
    assert result.funding_payments[0].ts == t0 + 2 * hour


def test_exact_alignment_ignores_off_grid_samples(series_factory, config_factory, t0, hour):
    series = series_factory(
        [100.0] * 4,
        samples=[FundingSample(t0 + 3 * hour // 2, 0.001), FundingSample(t0 + 3 * hour, 0.001)],
    )

    result = run_backtest(
        config_factory(funding_alignment="exact"), series, strategies={"BTC": enter_at(0, 1)}
    )

    assert [p.ts for p in result.funding_payments] == [t0 + 3 * hour]


def test_funding_disabled(series_factory, config_factory):
    series = series_factory([100.0] * 4, funding={2: 0.001})
    cfg = config_factory(commission=CommissionConfig(maker_rate=0.0, taker_rate=0.0, funding_enabled=False))

    result = run_backtest(cfg, series, strategies={"BTC": enter_at(0, 1)})

    assert result.funding_payments == ()
    assert result.report.final_equity == pytest.approx(10_000.0)


# ================================================================
# orders / risk inside the loop
# ================================================================
def test_flip_order_splits_legs(series_factory, config_factory):
    plan = {0: OrderRequest("BTC", Side.BUY, 10.0), 2: OrderRequest("BTC", Side.SELL, 20.0)}
    result = run_backtest(config_factory(), series_factory([100.0] * 4), strategies={"BTC": orders_at(plan)})

    assert [t.leg for t in result.trades] == [LegKind.OPEN, LegKind.CLOSE, LegKind.OPEN]
    assert result.trades[-1].side is Side.SELL
    assert result.trades[-1].quantity == pytest.approx(10.0)
    assert result.equity_curve[-1].gross_notional == pytest.approx(1_000.0)


def test_stop_loss_liquidates(series_factory, config_factory, risk_factory):
    diag = Diagnostics()
    monitor = CollectingMonitor()
    cfg = config_factory(risk=risk_factory(stop_loss_pct=0.05))

    result = run_backtest(
        cfg, series_factory([100.0, 100.0, 90.0, 90.0]),
        strategies={"BTC": enter_at(0, 1)}, diagnostics=diag, monitor=monitor,
    )

    close = result.trades[-1]
    assert close.leg is LegKind.CLOSE
    assert close.reason == "stop_loss"
    assert close.realized_pnl == pytest.approx(-1_000.0)
    assert diag.count("risk_liquidate") == 1
    assert [a.kind for a in monitor.alerts] == ["risk_liquidate"]


def test_invalid_order_is_dropped(series_factory, config_factory):
    diag = Diagnostics()
    plan = {1: OrderRequest("BTC", Side.BUY, 0.0)}

    result = run_backtest(config_factory(), series_factory([100.0] * 3),
                          strategies={"BTC": orders_at(plan)}, diagnostics=diag)

    assert result.ok
    assert result.trades == ()
    assert diag.count("invalid_order") == 1


def test_malformed_order_never_reaches_ledger(series_factory, config_factory):
    diag = Diagnostics()
    plan = {
        1: OrderRequest("BTC", "BUY", 1.0),
        2: OrderRequest("BTC", Side.BUY, 1.0, kind="LIMIT", price=100.0),
        3: OrderRequest("BTC", Side.BUY, "5"),
    }

    result = run_backtest(config_factory(), series_factory([100.0] * 5),
                          strategies={"BTC": orders_at(plan)}, diagnostics=diag)

    assert result.ok
    assert result.n_bars == 5
    assert result.trades == ()
    assert diag.count("invalid_order") == 3


def test_unmarketable_limit_is_dropped(series_factory, config_factory):
    diag = Diagnostics()
    plan = {1: OrderRequest("BTC", Side.BUY, 1.0, kind=OrderKind.LIMIT, price=50.0)}

    result = run_backtest(config_factory(), series_factory([100.0] * 3),
                          strategies={"BTC": orders_at(plan)}, diagnostics=diag)

    assert result.trades == ()
    assert diag.count("limit_unfilled") == 1


def test_post_only_that_would_take_is_dropped(series_factory, config_factory):
    diag = Diagnostics()
    plan = {1: OrderRequest("BTC", Side.BUY, 1.0, kind=OrderKind.LIMIT, price=101.0,
                            time_in_force=TimeInForce.POST_ONLY)}

    result = run_backtest(config_factory(), series_factory([100.0] * 3),
                          strategies={"BTC": orders_at(plan)}, diagnostics=diag)

    assert result.trades == ()
    assert diag.count("limit_unfilled") == 1


def test_oversized_order_is_resized(series_factory, config_factory, risk_factory):
    diag = Diagnostics()
    plan = {0: OrderRequest("BTC", Side.BUY, 1_000.0)}  # 100_000 notional vs 3x of 10_000
    cfg = config_factory(risk=risk_factory(max_position_size_pct=3.0))

    result = run_backtest(cfg, series_factory([100.0] * 2),
                          strategies={"BTC": orders_at(plan)}, diagnostics=diag)

    assert result.trades[0].quantity == pytest.approx(300.0)
    assert diag.count("risk_resize") == 1


def test_direct_order_respects_position_size(series_factory, config_factory, risk_factory):
    diag = Diagnostics()
    plan = {0: OrderRequest("BTC", Side.BUY, 250.0)}
    cfg = config_factory(risk=risk_factory(max_position_size_pct=0.1, max_leverage=3.0))

    result = run_backtest(cfg, series_factory([100.0] * 2),
                          strategies={"BTC": orders_at(plan)}, diagnostics=diag)

    assert result.trades[0].quantity * result.trades[0].price == pytest.approx(1_000.0)
    assert [e.message for e in diag.events_of("risk_resize")] == ["max_position_size"]


# ================================================================
# multi-instrument
# ================================================================
def test_multi_instrument_shared_grid(series_factory, config_factory):
    btc = series_factory(PRICES, instrument="BTC")
    eth = series_factory([p * 10 for p in PRICES], instrument="ETH")

    result = run_backtest(config_factory(), {"ETH": eth, "BTC": btc})

    assert result.instruments == ("BTC", "ETH")
    assert {t.instrument for t in result.trades} == {"BTC", "ETH"}
    assert len(result.trades) == 4


def test_engine_builds_one_strategy_per_instrument(series_factory, config_factory):
    btc = series_factory(PRICES, instrument="BTC")
    eth = series_factory(PRICES, instrument="ETH")

    engine = BacktestEngine(config_factory(), {"BTC": btc, "ETH": eth})

    assert engine.strategies["BTC"] is not engine.strategies["ETH"]
