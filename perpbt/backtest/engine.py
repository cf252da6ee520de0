# perpbt/backtest/engine.py
from __future__ import annotations

import threading
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from perpbt.backtest.commission import CommissionModel, CommissionTracker
from perpbt.backtest.core.data import MarketSeries
from perpbt.backtest.core.events import AlertEvent, MarketEvent, OrderRequest, SignalEvent
from perpbt.backtest.execution import FillSimulator
from perpbt.backtest.metrics.report import ReportGenerator
from perpbt.backtest.portfolio.funding import FundingAccrualEngine
from perpbt.backtest.portfolio.ledger import PositionLedger
from perpbt.backtest.report.equity_curve import EquityCurveBuilder
from perpbt.backtest.report.sinks import MonitoringSink, ReportSink
from perpbt.backtest.result import BacktestFailure, BacktestResult
from perpbt.backtest.risk.manager import RiskAction, RiskManager
from perpbt.backtest.strategy.base import Strategy
from perpbt.backtest.strategy.factory import StrategyFactory
from perpbt.config.backtest_config import BacktestConfig
from perpbt.observability.diagnostics import Diagnostics, NoOpDiagnostics
from perpbt.utils.errors import BacktestError, ConfigurationError, InputDataError, InvalidOrder

SeriesInput = Union[MarketSeries, Mapping[str, MarketSeries]]
StrategyInput = Union[None, Strategy, Mapping[str, Strategy], Callable[[str], Strategy]]


class CancellationToken:
    """Thread-safe stop flag, checked by the engine between bars."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _as_series_map(series: SeriesInput) -> Dict[str, MarketSeries]:
    if isinstance(series, MarketSeries):
        return {series.instrument: series}
    out = dict(series)
    if not out:
        raise InputDataError("no market series given")
    for key, s in out.items():
        if key != s.instrument:
            raise InputDataError(f"series key {key!r} != instrument {s.instrument!r}")
    return out


class BacktestEngine:
    """
    BacktestEngine (FROZEN)

    统一事件循环，每根 bar 依次：
        mark → risk state → (per instrument, sorted) Strategy → Risk → Fill
        → Funding → Equity point

    Everything for bar t is committed before bar t+1 is read.
    Single-threaded; one engine per run.
    """

    def __init__(
        self,
        config: BacktestConfig,
        series: SeriesInput,
        *,
        strategies: StrategyInput = None,
        diagnostics: Optional[Diagnostics] = None,
        monitor: Optional[MonitoringSink] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.cfg = config
        self.series = _as_series_map(series)
        self.instruments = sorted(self.series)
        self._check_grid()

        self.diagnostics = diagnostics or NoOpDiagnostics()
        self.monitor = monitor
        self.cancel_token = cancel_token

        self.strategies = self._build_strategies(strategies)

        self.commission = CommissionModel(config.commission)
        self.commission_tracker = CommissionTracker()
        self.simulator = FillSimulator(self.commission)
        self.risk = RiskManager(config.risk)
        self.ledger = PositionLedger(
            config.initial_capital,
            FundingAccrualEngine(config.funding_alignment, config.commission.funding_enabled),
        )
        self.curve = EquityCurveBuilder(config.initial_capital)

        self.last_ts: Optional[int] = None
        self.n_signals = 0
        self.truncated = False

    # ------------------------------------------------------------------
    # setup
    # ------------------------------------------------------------------
    def _check_grid(self) -> None:
        first = self.series[self.instruments[0]]
        for inst in self.instruments[1:]:
            s = self.series[inst]
            if s.interval is not first.interval:
                raise InputDataError(f"{inst}: interval {s.interval.value} != {first.interval.value}")
            if len(s) != len(first) or (s.timestamps != first.timestamps).any():
                raise InputDataError(f"{inst}: bar timestamps not aligned with {first.instrument}")

    def _build_strategies(self, strategies: StrategyInput) -> Dict[str, Strategy]:
        if strategies is None:
            return {inst: StrategyFactory.create(dict(self.cfg.strategy)) for inst in self.instruments}
        if isinstance(strategies, Strategy):
            if len(self.instruments) > 1:
                raise ConfigurationError("one Strategy instance cannot be shared between instruments")
            return {self.instruments[0]: strategies}
        if isinstance(strategies, Mapping):
            missing = [i for i in self.instruments if i not in strategies]
            if missing:
                raise ConfigurationError(f"no strategy for instruments: {missing}")
            return {i: strategies[i] for i in self.instruments}
        return {inst: strategies(inst) for inst in self.instruments}

    @property
    def n_bars(self) -> int:
        return len(self.series[self.instruments[0]])

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------
    def run(self) -> BacktestResult:
        timestamps = self.series[self.instruments[0]].timestamps

        with self.diagnostics.timer("replay"):
            for i in range(self.n_bars):
                if self.cancel_token is not None and self.cancel_token.cancelled:
                    self.truncated = True
                    self.diagnostics.record("cancelled", f"stopped before bar {i}", ts=self.last_ts)
                    break
                self._step(i, int(timestamps[i]))
                self.last_ts = int(timestamps[i])

        self.curve.verify()

        with self.diagnostics.timer("report"):
            report = self._report()

        self.diagnostics.metrics.record("final_equity", report.final_equity)
        self.diagnostics.metrics.record("n_trades", report.n_trades)

        return BacktestResult(
            name=self.cfg.name,
            instruments=tuple(self.instruments),
            interval=self.series[self.instruments[0]].interval.value,
            strategy=dict(self.cfg.strategy),
            start_ts=report.start_ts,
            end_ts=report.end_ts,
            n_bars=len(self.curve),
            n_signals=self.n_signals,
            report=report,
            equity_curve=tuple(self.curve.points),
            trades=tuple(self.ledger.trades),
            funding_payments=tuple(self.ledger.funding_log),
            truncated=self.truncated,
            diagnostics=self.diagnostics,
        )

    def _step(self, i: int, ts: int) -> None:
        ledger = self.ledger

        for inst in self.instruments:
            ledger.mark(inst, self.series[inst].bar(i).close)

        tripped = self.risk.on_bar(ts, ledger.equity(), ledger.positions)
        if tripped:
            self._alert(ts, None, "kill_switch", tripped)

        for inst in self.instruments:
            self._trade(inst, i, ts)

        for inst in self.instruments:
            s = self.series[inst]
            close = s.bar(i).close
            for sample in ledger.funding_engine.due_samples(s, i):
                ledger.apply_funding(inst, sample, close, ts)

        point = self.curve.record(ts, ledger)
        if self.monitor is not None:
            self.monitor.on_bar(point)

    def _trade(self, inst: str, i: int, ts: int) -> None:
        s = self.series[inst]
        bar = s.bar(i)
        ledger = self.ledger

        event = MarketEvent(
            ts=ts,
            instrument=inst,
            index=i,
            bar=bar,
            closes=s.closes(i),
            funding=s.funding_at(ts),
        )
        intent = self.strategies[inst].on_market(event)

        position = ledger.position(inst)
        equity = ledger.equity()

        candidate: Optional[OrderRequest] = None
        if isinstance(intent, SignalEvent):
            self.n_signals += 1
            candidate = self.risk.size_signal(intent, position, equity, bar.close)
        elif isinstance(intent, OrderRequest):
            self.n_signals += 1
            candidate = intent

        if candidate is not None:
            try:
                candidate.validate(self.series.keys())
                if candidate.instrument != inst:
                    raise InvalidOrder(f"order for {candidate.instrument} emitted by {inst} strategy")
            except InvalidOrder as exc:
                self.diagnostics.record("invalid_order", str(exc), ts=ts, instrument=inst)
                candidate = None

        decision = self.risk.evaluate(
            candidate,
            position,
            equity,
            ledger.gross_notional(),
            ledger.open_instruments,
            bar.close,
            ts,
        )
        if decision is None:
            return

        if decision.action is RiskAction.REJECT:
            self.diagnostics.record("risk_reject", decision.reason, ts=ts, instrument=inst)
            return
        if decision.action is RiskAction.RESIZE:
            self.diagnostics.record("risk_resize", decision.reason, ts=ts, instrument=inst)
        elif decision.action is RiskAction.LIQUIDATE:
            self._alert(ts, inst, "risk_liquidate", decision.reason)

        order = decision.order
        fill = self.simulator.fill(order, bar)
        if fill is None:
            self.diagnostics.record(
                "limit_unfilled", f"{order.side.value} limit {order.price} vs close {bar.close}",
                ts=ts, instrument=inst,
            )
            return

        ledger.apply_fill(order, fill.price, fill.fee, ts, fill.liquidity)
        self.commission_tracker.record(fill.notional, fill.fee, fill.liquidity)

    def _alert(self, ts: int, inst: Optional[str], kind: str, message: str) -> None:
        self.diagnostics.record(kind, message, ts=ts, instrument=inst)
        if self.monitor is not None:
            self.monitor.on_alert(AlertEvent(ts=ts, instrument=inst, kind=kind, message=message))

    def _report(self):
        end = self.last_ts
        rates: List[float] = []
        for inst in self.instruments:
            rates.extend(
                x.rate for x in self.series[inst].funding_samples
                if end is not None and x.timestamp <= end
            )
        gen = ReportGenerator(self.cfg.initial_capital, self.series[self.instruments[0]].interval)
        return gen.generate(
            self.curve.points,
            self.ledger.trades,
            self.ledger.funding_log,
            self.commission_tracker.stats(),
            truncated=self.truncated,
            funding_rates=rates,
        )


# ----------------------------------------------------------------------
# top level
# ----------------------------------------------------------------------
def run_backtest(
    config: Union[BacktestConfig, Mapping],
    series: SeriesInput,
    *,
    strategies: StrategyInput = None,
    diagnostics: Optional[Diagnostics] = None,
    monitor: Optional[MonitoringSink] = None,
    cancel_token: Optional[CancellationToken] = None,
    report_sinks: Iterable[ReportSink] = (),
) -> Union[BacktestResult, BacktestFailure]:
    """
    Run one backtest.

    Typed failures come back as BacktestFailure instead of being raised:
      - InputDataError / ConfigurationError: last_timestamp is None
      - NumericFault mid-run: curve and last timestamp up to the fault
    """
    diagnostics = diagnostics or NoOpDiagnostics()
    name = config.get("name", "default") if isinstance(config, Mapping) else config.name

    try:
        if isinstance(config, Mapping):
            try:
                config = BacktestConfig(**config)
            except ValidationError as exc:
                raise ConfigurationError(str(exc)) from exc
        engine = BacktestEngine(
            config,
            series,
            strategies=strategies,
            diagnostics=diagnostics,
            monitor=monitor,
            cancel_token=cancel_token,
        )
    except BacktestError as exc:
        diagnostics.record(
            "run_failed", f"{name}: run not started | {type(exc).__name__}: {exc}",
            level="error",
        )
        return BacktestFailure(name=name, error=exc, diagnostics=diagnostics)

    diagnostics.record(
        "run_start",
        f"start name={name} instruments={engine.instruments} "
        f"bars={engine.n_bars} strategy={config.strategy.get('type')}"
    )

    try:
        result = engine.run()
    except BacktestError as exc:
        diagnostics.record(
            "run_failed",
            f"{name}: halted after ts={engine.last_ts} | {type(exc).__name__}: {exc}",
            ts=engine.last_ts,
            level="error",
        )
        return BacktestFailure(
            name=name,
            error=exc,
            last_timestamp=engine.last_ts,
            equity_curve=tuple(engine.curve.points),
            diagnostics=diagnostics,
        )

    for sink in report_sinks:
        sink.write(result.report, result.equity_curve)

    diagnostics.record(
        "run_done",
        f"done name={name} final_equity={result.report.final_equity:.2f} "
        f"return={result.report.total_return:.4%} trades={result.report.n_trades} "
        f"truncated={result.truncated}"
    )
    return result
