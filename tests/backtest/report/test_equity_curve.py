#!filepath: tests/backtest/report/test_equity_curve.py
import pytest

from perpbt.backtest.core.events import OrderRequest
from perpbt.backtest.core.types import FundingSample, Side
from perpbt.backtest.portfolio.ledger import PositionLedger
from perpbt.backtest.report.equity_curve import EquityCurveBuilder, EquityPoint
from perpbt.utils.errors import NumericFault


def test_record_and_verify():
    ledger = PositionLedger(1_000.0)
    curve = EquityCurveBuilder(1_000.0)

    curve.record(1, ledger)
    ledger.apply_fill(OrderRequest("BTC", Side.BUY, 2.0), 100.0, 0.1, ts=2)
    ledger.mark("BTC", 101.0)
    ledger.apply_funding("BTC", FundingSample(2, 0.0005), 101.0)
    p = curve.record(2, ledger)

    curve.verify()
    assert len(curve) == 2
    assert p.unrealized_pnl == pytest.approx(2.0)
    assert p.commission == pytest.approx(0.1)
    assert p.funding_pnl == pytest.approx(-0.101)
    assert p.gross_notional == pytest.approx(202.0)
    assert curve.residual(p) == pytest.approx(0.0, abs=1e-12)


def test_verify_detects_broken_identity():
    curve = EquityCurveBuilder(1_000.0)
    curve._points.append(
        EquityPoint(ts=1, cash=1_000.0, unrealized_pnl=0.0, realized_pnl=0.0,
                    funding_pnl=0.0, commission=0.0, equity=1_005.0, gross_notional=0.0)
    )

    with pytest.raises(NumericFault, match="identity"):
        curve.verify()


def test_to_frame_columns():
    ledger = PositionLedger(1_000.0)
    curve = EquityCurveBuilder(1_000.0)
    curve.record(1, ledger)
    curve.record(2, ledger)

    df = curve.to_frame()
    assert list(df["equity"]) == [1_000.0, 1_000.0]
    assert set(df.columns) >= {"ts", "cash", "unrealized_pnl", "funding_pnl", "commission", "equity"}
