# perpbt/backtest/risk/manager.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, Mapping, Optional, Sequence, Tuple

from perpbt.backtest.core.events import OrderRequest, SignalEvent
from perpbt.backtest.core.types import OrderKind, Side
from perpbt.backtest.portfolio.position import Position
from perpbt.config.backtest_config import RiskConfig
from perpbt.utils.datetime_utils import DateTimeUtils

_EPS = 1e-12


class RiskAction(str, Enum):
    APPROVE = "APPROVE"
    RESIZE = "RESIZE"
    REJECT = "REJECT"
    LIQUIDATE = "LIQUIDATE"


@dataclass(frozen=True)
class RiskDecision:
    """
    Outcome of one risk check. A rejection is a value, not an exception.

    order is None only for REJECT.
    """

    action: RiskAction
    order: Optional[OrderRequest]
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.action is not RiskAction.REJECT and self.order is not None


@dataclass
class RiskState:
    peak_equity: float = 0.0
    day: Optional[date] = None
    day_start_equity: float = 0.0
    daily_loss: float = 0.0
    drawdown: float = 0.0
    kill_switch_day: Optional[date] = None
    kill_switch_reason: str = ""
    # instrument -> ((opened_at, side), best favourable mark since entry)
    best_marks: Dict[str, Tuple[Tuple[Optional[int], int], float]] = field(default_factory=dict)


class RiskManager:
    """
    RiskManager (per run)

    evaluate() precedence:
      1. protective exits on the open position (stop / take-profit / trailing) → LIQUIDATE
      2. no candidate → None
      3. exposure-reducing orders → APPROVE
      4. kill-switch → REJECT new exposure
      5. max leverage, max position size, max concentration → RESIZE / REJECT
         (the opening part is cut to the tightest limit)
      6. max positions → REJECT
    """

    def __init__(self, cfg: RiskConfig) -> None:
        self.cfg = cfg
        self.state = RiskState()

    # ------------------------------------------------------------------
    # per-bar state
    # ------------------------------------------------------------------
    def on_bar(self, ts: int, equity: float, positions: Mapping[str, Position]) -> Optional[str]:
        """
        Roll the trading day, update peak / daily loss / drawdown and trailing marks.
        Returns the kill-switch reason when it trips on this bar.
        """
        st = self.state
        day = DateTimeUtils.day_key(ts)

        if st.day != day:
            st.day = day
            st.day_start_equity = equity
        st.peak_equity = max(st.peak_equity, equity)

        st.daily_loss = (st.day_start_equity - equity) / st.day_start_equity if st.day_start_equity > 0 else 0.0
        st.drawdown = (st.peak_equity - equity) / st.peak_equity if st.peak_equity > 0 else 0.0

        self._update_best_marks(positions)

        if self.kill_switch_active(ts):
            return None

        tripped = None
        if self.cfg.max_daily_loss_pct is not None and st.daily_loss > self.cfg.max_daily_loss_pct:
            tripped = f"daily_loss={st.daily_loss:.4%} > {self.cfg.max_daily_loss_pct:.4%}"
        elif self.cfg.max_drawdown_pct is not None and st.drawdown > self.cfg.max_drawdown_pct:
            tripped = f"drawdown={st.drawdown:.4%} > {self.cfg.max_drawdown_pct:.4%}"

        if tripped:
            st.kill_switch_day = day
            st.kill_switch_reason = tripped
        return tripped

    def kill_switch_active(self, ts: int) -> bool:
        return self.state.kill_switch_day is not None and self.state.kill_switch_day == DateTimeUtils.day_key(ts)

    def _update_best_marks(self, positions: Mapping[str, Position]) -> None:
        best = self.state.best_marks
        for inst in list(best):
            if inst not in positions or positions[inst].is_flat:
                del best[inst]

        for inst, pos in positions.items():
            if pos.is_flat:
                continue
            key = (pos.opened_at, pos.side)
            mark = pos.last_price
            prev = best.get(inst)
            if prev is None or prev[0] != key:
                start = max(pos.entry_price, mark) if pos.side > 0 else min(pos.entry_price, mark)
                best[inst] = (key, start)
            elif pos.side > 0:
                best[inst] = (key, max(prev[1], mark))
            else:
                best[inst] = (key, min(prev[1], mark))

    # ------------------------------------------------------------------
    # sizing
    # ------------------------------------------------------------------
    def size_signal(
        self,
        signal: SignalEvent,
        position: Position,
        equity: float,
        price: float,
    ) -> Optional[OrderRequest]:
        """target notional = equity × max_position_size_pct × strength"""
        if price <= 0.0:
            return None
        if signal.direction != 0 and equity <= 0.0:
            return None

        notional = equity * self.cfg.max_position_size_pct * signal.strength
        target = signal.direction * notional / price
        delta = target - position.quantity

        if abs(delta) <= _EPS * max(abs(target), abs(position.quantity), 1.0):
            return None

        return OrderRequest(
            instrument=signal.instrument,
            side=Side.from_sign(delta),
            quantity=abs(delta),
            kind=OrderKind.MARKET,
            reduce_only=signal.direction == 0,
            reason=signal.reason,
        )

    # ------------------------------------------------------------------
    # checks
    # ------------------------------------------------------------------
    def protective_exit(self, position: Position, price: float) -> Optional[str]:
        if position.is_flat or position.entry_price <= 0.0:
            return None

        pct = position.side * (price - position.entry_price) / position.entry_price

        if self.cfg.stop_loss_pct is not None and pct <= -self.cfg.stop_loss_pct:
            return "stop_loss"
        if self.cfg.take_profit_pct is not None and pct >= self.cfg.take_profit_pct:
            return "take_profit"

        if self.cfg.use_trailing_stop and self.cfg.trailing_stop_distance_pct is not None:
            entry = self.state.best_marks.get(position.instrument)
            if entry is not None:
                best = entry[1]
                d = self.cfg.trailing_stop_distance_pct
                if position.side > 0 and price <= best * (1.0 - d):
                    return "trailing_stop"
                if position.side < 0 and price >= best * (1.0 + d):
                    return "trailing_stop"
        return None

    def evaluate(
        self,
        candidate: Optional[OrderRequest],
        position: Position,
        equity: float,
        gross_notional: float,
        open_instruments: Sequence[str],
        price: float,
        ts: Optional[int] = None,
    ) -> Optional[RiskDecision]:
        # 1) protective exits override any signal
        exit_reason = self.protective_exit(position, price)
        if exit_reason is not None:
            order = OrderRequest(
                instrument=position.instrument,
                side=Side.from_sign(-position.quantity),
                quantity=abs(position.quantity),
                kind=OrderKind.MARKET,
                reduce_only=True,
                reason=exit_reason,
            )
            return RiskDecision(RiskAction.LIQUIDATE, order, exit_reason)

        # 2)
        if candidate is None:
            return None

        cur = position.quantity
        opposite = cur != 0.0 and (cur > 0) != (candidate.side is Side.BUY)
        closing_qty = min(candidate.quantity, abs(cur)) if opposite else 0.0
        opening_qty = max(candidate.quantity - closing_qty, 0.0)

        # 3) reducing / closing only
        if candidate.reduce_only:
            if closing_qty <= 0.0:
                return RiskDecision(RiskAction.REJECT, None, "reduce_only_without_position")
            if opening_qty > _EPS * candidate.quantity:
                return RiskDecision(RiskAction.RESIZE, candidate.with_quantity(closing_qty), "reduce_only")
            return RiskDecision(RiskAction.APPROVE, candidate, "reduce")
        if opening_qty <= _EPS * candidate.quantity:
            return RiskDecision(RiskAction.APPROVE, candidate, "reduce")

        # 4) kill-switch blocks new exposure for the rest of the UTC day
        if ts is not None and self.kill_switch_active(ts):
            return self._block(candidate, closing_qty, "kill_switch")

        # 5) exposure limits: leverage, position size, concentration
        if equity <= 0.0:
            return self._block(candidate, closing_qty, "non_positive_equity")

        other = gross_notional - abs(cur) * price
        remaining = (abs(cur) - closing_qty) * price
        open_notional = opening_qty * price

        # (reason, notional still allowed for the opening part); first binding limit wins ties
        rooms = [
            ("max_leverage", self.cfg.max_leverage * equity - (other + remaining)),
            ("max_position_size", self.cfg.max_position_size_pct * equity - remaining),
        ]
        conc = self.cfg.max_concentration_pct
        if conc is not None and conc < 1.0 and other > 0.0:
            # (remaining + x) / (other + remaining + x) <= conc
            rooms.append(("max_concentration", conc * other / (1.0 - conc) - remaining))

        name, room = min(rooms, key=lambda r: r[1])

        action, order, reason = RiskAction.APPROVE, candidate, "ok"
        if open_notional > room * (1.0 + 1e-9) + 1e-9:
            if room <= 0.0:
                return self._block(candidate, closing_qty, name)
            action = RiskAction.RESIZE
            order = candidate.with_quantity(closing_qty + room / price)
            reason = name

        # 6) max positions (only when opening a new instrument)
        if position.is_flat and position.instrument not in open_instruments:
            if len(open_instruments) >= self.cfg.max_positions:
                return RiskDecision(RiskAction.REJECT, None, "max_positions")

        return RiskDecision(action, order, reason)

    @staticmethod
    def _block(candidate: OrderRequest, closing_qty: float, reason: str) -> RiskDecision:
        # keep the closing part of a flip, drop the new exposure
        if closing_qty > 0.0:
            return RiskDecision(RiskAction.RESIZE, candidate.with_quantity(closing_qty), reason)
        return RiskDecision(RiskAction.REJECT, None, reason)
