# perpbt/backtest/commission.py
from __future__ import annotations

import math
from dataclasses import dataclass

from perpbt.backtest.core.types import Liquidity
from perpbt.config.backtest_config import CommissionConfig
from perpbt.utils.errors import NumericFault


class CommissionModel:
    """fee = |notional| × rate(liquidity)"""

    def __init__(self, cfg: CommissionConfig) -> None:
        self.cfg = cfg

    def rate(self, liquidity: Liquidity) -> float:
        return self.cfg.maker_rate if liquidity is Liquidity.MAKER else self.cfg.taker_rate

    def fee(self, notional: float, liquidity: Liquidity) -> float:
        fee = abs(notional) * self.rate(liquidity)
        if not math.isfinite(fee):
            raise NumericFault(f"non-finite commission for notional={notional}")
        return fee


@dataclass(frozen=True)
class CommissionStats:
    total_commission: float = 0.0
    maker_fees: float = 0.0
    taker_fees: float = 0.0
    maker_orders: int = 0
    taker_orders: int = 0
    total_notional: float = 0.0

    @property
    def average_rate(self) -> float:
        return self.total_commission / self.total_notional if self.total_notional > 0 else 0.0

    @property
    def maker_taker_ratio(self) -> float:
        n = self.maker_orders + self.taker_orders
        return self.maker_orders / n if n else 0.0


class CommissionTracker:
    def __init__(self) -> None:
        self._maker_fees = 0.0
        self._taker_fees = 0.0
        self._maker_orders = 0
        self._taker_orders = 0
        self._notional = 0.0

    def record(self, notional: float, fee: float, liquidity: Liquidity) -> None:
        self._notional += abs(notional)
        if liquidity is Liquidity.MAKER:
            self._maker_fees += fee
            self._maker_orders += 1
        else:
            self._taker_fees += fee
            self._taker_orders += 1

    def stats(self) -> CommissionStats:
        return CommissionStats(
            total_commission=self._maker_fees + self._taker_fees,
            maker_fees=self._maker_fees,
            taker_fees=self._taker_fees,
            maker_orders=self._maker_orders,
            taker_orders=self._taker_orders,
            total_notional=self._notional,
        )
