# perpbt/backtest/report/equity_curve.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import List

import numpy as np
import pandas as pd

from perpbt.backtest.portfolio.ledger import PositionLedger
from perpbt.utils.errors import NumericFault


@dataclass(frozen=True)
class EquityPoint:
    ts: int
    cash: float
    unrealized_pnl: float
    realized_pnl: float      # cumulative
    funding_pnl: float       # cumulative
    commission: float        # cumulative
    equity: float
    gross_notional: float


class EquityCurveBuilder:
    """
    One EquityPoint per processed bar.

    Identity:
      equity == initial + realized + funding − commission + unrealized
    """

    def __init__(self, initial_capital: float, tolerance: float = 1e-6) -> None:
        self.initial_capital = float(initial_capital)
        self.tolerance = tolerance
        self._points: List[EquityPoint] = []

    def record(self, ts: int, ledger: PositionLedger) -> EquityPoint:
        p = EquityPoint(
            ts=ts,
            cash=ledger.cash,
            unrealized_pnl=ledger.unrealized_pnl(),
            realized_pnl=ledger.realized_pnl,
            funding_pnl=ledger.funding_pnl,
            commission=ledger.commission,
            equity=ledger.equity(),
            gross_notional=ledger.gross_notional(),
        )
        self._points.append(p)
        return p

    # ------------------------------------------------------------------
    @property
    def points(self) -> List[EquityPoint]:
        return list(self._points)

    def __len__(self) -> int:
        return len(self._points)

    @property
    def last(self) -> EquityPoint | None:
        return self._points[-1] if self._points else None

    def equities(self) -> np.ndarray:
        return np.asarray([p.equity for p in self._points], dtype=np.float64)

    def timestamps(self) -> np.ndarray:
        return np.asarray([p.ts for p in self._points], dtype=np.int64)

    def residual(self, p: EquityPoint) -> float:
        expected = self.initial_capital + p.realized_pnl + p.funding_pnl - p.commission + p.unrealized_pnl
        return p.equity - expected

    def verify(self) -> None:
        """Raise NumericFault on the first point that breaks the equity identity."""
        for p in self._points:
            scale = max(1.0, abs(self.initial_capital), abs(p.equity), p.gross_notional)
            if abs(self.residual(p)) > self.tolerance * scale:
                raise NumericFault(
                    f"[EquityCurveBuilder] equity identity broken at ts={p.ts}: residual={self.residual(p)}"
                )

    def to_frame(self) -> pd.DataFrame:
        cols = list(EquityPoint.__dataclass_fields__)
        return pd.DataFrame([asdict(p) for p in self._points], columns=cols)
