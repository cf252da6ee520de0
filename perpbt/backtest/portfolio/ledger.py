# perpbt/backtest/portfolio/ledger.py
from __future__ import annotations

import math
from typing import Dict, List, Optional

from perpbt.backtest.core.events import FundingPayment, OrderRequest, Trade
from perpbt.backtest.core.types import FundingAlignment, FundingSample, LegKind, Liquidity
from perpbt.backtest.portfolio.funding import FundingAccrualEngine
from perpbt.backtest.portfolio.position import Position
from perpbt.utils.errors import NumericFault

# residual quantity below this (relative to the position) counts as a full close
_QTY_EPS = 1e-12


def _finite(name: str, value: float) -> float:
    if not math.isfinite(value):
        raise NumericFault(f"[PositionLedger] non-finite {name}: {value}")
    return value


class PositionLedger:
    """
    PositionLedger (FINAL)

    Cash accounting：
      cash   = initial + Σ realized − Σ commission + Σ funding
      equity = cash + Σ unrealized

    Every PnL unit comes from exactly one of price movement, commission, funding.
    """

    def __init__(
        self,
        initial_capital: float,
        funding: Optional[FundingAccrualEngine] = None,
    ) -> None:
        self.initial_capital = float(initial_capital)
        self.cash = float(initial_capital)

        self.realized_pnl = 0.0
        self.commission = 0.0
        self.funding_pnl = 0.0

        self.trades: List[Trade] = []
        self.funding_log: List[FundingPayment] = []

        self._positions: Dict[str, Position] = {}
        self._funding = funding or FundingAccrualEngine(FundingAlignment.NEXT_BAR)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def position(self, instrument: str) -> Position:
        pos = self._positions.get(instrument)
        return pos.snapshot() if pos is not None else Position(instrument)

    @property
    def positions(self) -> Dict[str, Position]:
        return {k: v.snapshot() for k, v in self._positions.items()}

    @property
    def open_instruments(self) -> List[str]:
        return sorted(self._positions)

    @property
    def funding_engine(self) -> FundingAccrualEngine:
        return self._funding

    def unrealized_pnl(self) -> float:
        return _finite("unrealized", sum(p.unrealized_pnl for p in self._positions.values()))

    def gross_notional(self) -> float:
        return _finite("gross_notional", sum(p.notional for p in self._positions.values()))

    def equity(self) -> float:
        return _finite("equity", self.cash + self.unrealized_pnl())

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------
    def mark(self, instrument: str, price: float) -> None:
        pos = self._positions.get(instrument)
        if pos is not None:
            pos.last_price = _finite("mark", price)

    def apply_fill(
        self,
        order: OrderRequest,
        price: float,
        commission: float,
        ts: int,
        liquidity: Liquidity = Liquidity.TAKER,
    ) -> List[Trade]:
        """
        Apply one fill. A fill that crosses zero is split into a closing leg
        and an opening leg; commission is split pro rata by quantity.
        """
        _finite("fill price", price)
        _finite("commission", commission)

        inst = order.instrument
        qty = order.quantity
        sign = order.side.sign
        pos = self._positions.get(inst)
        cur = pos.quantity if pos is not None else 0.0

        legs: List[Trade] = []

        # ---------- open / increase ----------
        if cur == 0.0 or (cur > 0) == (sign > 0):
            if pos is None:
                pos = Position(inst, opened_at=ts)
                self._positions[inst] = pos
                leg = LegKind.OPEN
            else:
                leg = LegKind.INCREASE

            new_abs = abs(cur) + qty
            pos.entry_price = _finite("entry", (abs(cur) * pos.entry_price + qty * price) / new_abs)
            pos.quantity = cur + sign * qty
            pos.last_price = price
            legs.append(self._leg(order, ts, qty, price, commission, 0.0, leg, pos.opened_at))
            self._book(0.0, commission)
            return legs

        # ---------- reduce / close / flip ----------
        close_qty = min(qty, abs(cur))
        if abs(qty - abs(cur)) <= _QTY_EPS * abs(cur):
            close_qty = abs(cur)
        open_qty = qty - close_qty if qty > close_qty else 0.0

        close_fee = commission * close_qty / qty
        open_fee = commission - close_fee

        realized = _finite("realized", (price - pos.entry_price) * close_qty * pos.side)
        full_close = close_qty >= abs(cur)

        legs.append(
            self._leg(
                order, ts, close_qty, price, close_fee, realized,
                LegKind.CLOSE if full_close else LegKind.REDUCE,
                pos.opened_at,
            )
        )
        pos.realized_pnl += realized
        self._book(realized, close_fee)

        if not full_close:
            pos.quantity = cur + sign * close_qty
            pos.last_price = price
            return legs

        del self._positions[inst]

        if open_qty > 0.0:
            flipped = Position(inst, quantity=sign * open_qty, entry_price=price, last_price=price, opened_at=ts)
            self._positions[inst] = flipped
            legs.append(self._leg(order, ts, open_qty, price, open_fee, 0.0, LegKind.OPEN, ts))
            self._book(0.0, open_fee)

        return legs

    def apply_funding(self, instrument: str, sample: FundingSample, mark_price: float, ts: Optional[int] = None) -> Optional[FundingPayment]:
        """Settle one funding sample. Flat or already-settled → None."""
        if not self._funding.enabled or self._funding.already_applied(instrument, sample):
            return None

        pos = self._positions.get(instrument)
        if pos is None:
            # 标记为已处理：之后开仓也不会追溯结算
            self._funding.apply_funding(Position(instrument), sample, mark_price)
            return None

        payment = self._funding.apply_funding(pos, sample, mark_price)
        amount = _finite("funding", 0.0 - payment)

        pos.funding_pnl += amount
        self.funding_pnl += amount
        self.cash += amount

        fp = FundingPayment(
            ts=sample.timestamp if ts is None else ts,
            instrument=instrument,
            position_qty=pos.quantity,
            rate=sample.rate,
            mark_price=mark_price,
            amount=amount,
        )
        self.funding_log.append(fp)
        return fp

    # ------------------------------------------------------------------
    # internal
    # ------------------------------------------------------------------
    def _book(self, realized: float, fee: float) -> None:
        self.realized_pnl += realized
        self.commission += fee
        self.cash = _finite("cash", self.cash + realized - fee)

    def _leg(self, order, ts, qty, price, fee, realized, leg, entry_ts) -> Trade:
        t = Trade(
            ts=ts,
            instrument=order.instrument,
            side=order.side,
            quantity=qty,
            price=price,
            fee=fee,
            realized_pnl=realized,
            leg=leg,
            entry_ts=entry_ts if entry_ts is not None else ts,
            reason=order.reason,
        )
        self.trades.append(t)
        return t
