# perpbt/backtest/report/sinks.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict
from typing import Dict, List, Sequence

import pandas as pd

from perpbt.backtest.core.events import AlertEvent, FundingPayment, Trade
from perpbt.backtest.report.equity_curve import EquityPoint


class ReportSink(ABC):
    """
    ReportSink (FROZEN)

    Receives the finished report once per run. File export lives behind
    this contract, outside the core.
    """

    @abstractmethod
    def write(self, report, curve: Sequence[EquityPoint]) -> None:
        ...


class MonitoringSink(ABC):
    """
    Optional live hooks. The engine calls them if present and never
    depends on what they do.
    """

    def on_bar(self, point: EquityPoint) -> None:
        ...

    def on_alert(self, event: AlertEvent) -> None:
        ...


class FrameReportSink(ReportSink):
    """
    Collect report + curve as pandas frames:
      equity / trades / funding / summary
    """

    def __init__(self) -> None:
        self.frames: Dict[str, pd.DataFrame] = {}

    def write(self, report, curve: Sequence[EquityPoint]) -> None:
        self.frames["equity"] = pd.DataFrame([asdict(p) for p in curve])
        self.frames["trades"] = trades_frame(report.trades)
        self.frames["funding"] = funding_frame(report.funding_payments)
        self.frames["summary"] = pd.DataFrame([report.summary()])


class CollectingMonitor(MonitoringSink):
    def __init__(self) -> None:
        self.points: List[EquityPoint] = []
        self.alerts: List[AlertEvent] = []

    def on_bar(self, point: EquityPoint) -> None:
        self.points.append(point)

    def on_alert(self, event: AlertEvent) -> None:
        self.alerts.append(event)


def trades_frame(trades: Sequence[Trade]) -> pd.DataFrame:
    rows = []
    for t in trades:
        row = asdict(t)
        row["side"] = t.side.value
        row["leg"] = t.leg.value
        row["net_pnl"] = t.net_pnl
        rows.append(row)
    return pd.DataFrame(rows)


def funding_frame(payments: Sequence[FundingPayment]) -> pd.DataFrame:
    return pd.DataFrame([asdict(p) for p in payments])
