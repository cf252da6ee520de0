# perpbt/backtest/execution.py
from __future__ import annotations

from typing import Optional

from perpbt.backtest.commission import CommissionModel
from perpbt.backtest.core.events import Fill, OrderRequest
from perpbt.backtest.core.types import Liquidity, MarketBar, OrderKind, Side, TimeInForce


class FillSimulator:
    """
    Bar-close execution model.

    - MARKET → close, TAKER
    - LIMIT marketable at close (buy ≥ close / sell ≤ close) → close,
      MAKER unless IOC / FOK
    - LIMIT not marketable → None (dropped for this bar)
    - POST_ONLY limit priced through the close would take liquidity → None;
      resting exactly at the close → MAKER
    """

    def __init__(self, commission: CommissionModel) -> None:
        self._commission = commission

    @staticmethod
    def is_marketable(order: OrderRequest, close: float) -> bool:
        if order.kind is OrderKind.MARKET:
            return True
        if order.side is Side.BUY:
            return order.price >= close
        return order.price <= close

    @staticmethod
    def crosses(order: OrderRequest, close: float) -> bool:
        """Limit priced strictly through the close."""
        if order.kind is OrderKind.MARKET:
            return True
        if order.side is Side.BUY:
            return order.price > close
        return order.price < close

    @staticmethod
    def liquidity_of(order: OrderRequest) -> Liquidity:
        if order.kind is OrderKind.MARKET:
            return Liquidity.TAKER
        if order.time_in_force in (TimeInForce.IOC, TimeInForce.FOK):
            return Liquidity.TAKER
        return Liquidity.MAKER

    def fill(self, order: OrderRequest, bar: MarketBar) -> Optional[Fill]:
        if not self.is_marketable(order, bar.close):
            return None
        if order.time_in_force is TimeInForce.POST_ONLY and self.crosses(order, bar.close):
            return None

        liquidity = self.liquidity_of(order)
        price = bar.close
        fee = self._commission.fee(order.quantity * price, liquidity)

        return Fill(
            ts=bar.timestamp,
            instrument=order.instrument,
            side=order.side,
            quantity=order.quantity,
            price=price,
            fee=fee,
            liquidity=liquidity,
        )
