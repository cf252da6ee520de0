# perpbt/backtest/sweep.py
from __future__ import annotations

import itertools
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd
from pydantic import ValidationError

from perpbt import logs
from perpbt.backtest.engine import SeriesInput, run_backtest
from perpbt.backtest.result import BacktestFailure, BacktestResult
from perpbt.config.backtest_config import BacktestConfig
from perpbt.pipeline.parallel.executor import ParallelExecutor
from perpbt.utils.errors import ConfigurationError

RunOutcome = Union[BacktestResult, BacktestFailure]

_SECTIONS = ("strategy", "risk", "commission")


def _set_param(data: Dict[str, Any], key: str, value: Any) -> None:
    """
    "risk.stop_loss_pct"   → data["risk"]["stop_loss_pct"]
    "initial_capital"      → data["initial_capital"]
    "short_window"         → data["strategy"]["short_window"]
    """
    section, _, leaf = key.partition(".")
    if leaf:
        if section not in _SECTIONS:
            raise ConfigurationError(f"unknown sweep section: {section!r}")
        data[section] = {**data[section], leaf: value}
    elif key in BacktestConfig.model_fields and key not in _SECTIONS:
        data[key] = value
    else:
        data["strategy"] = {**data["strategy"], key: value}


def parameter_grid(base: BacktestConfig, grid: Mapping[str, Sequence[Any]]) -> List[BacktestConfig]:
    """
    Cartesian product of grid values applied on top of `base`.
    Order follows the grid's key order, last key varying fastest.
    """
    keys = list(grid)
    if not keys:
        return [base]

    configs: List[BacktestConfig] = []
    for combo in itertools.product(*(list(grid[k]) for k in keys)):
        data = base.model_dump()
        for k, v in zip(keys, combo):
            _set_param(data, k, v)
        data["name"] = f"{base.name}[" + ",".join(f"{k}={v}" for k, v in zip(keys, combo)) + "]"
        try:
            configs.append(BacktestConfig(**data))
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc
    return configs


@logs.catch(msg="parameter sweep failed")
def run_sweep(
    series: SeriesInput,
    configs: Sequence[BacktestConfig],
    max_workers: Optional[int] = None,
) -> List[RunOutcome]:
    """
    Independent runs on a thread pool; each run owns its ledger, risk
    state and strategy instances. Results come back in input order.
    """

    def _one(cfg: BacktestConfig) -> RunOutcome:
        return run_backtest(cfg, series)

    return ParallelExecutor.run(items=list(configs), handler=_one, max_workers=max_workers, label="sweep")


def sweep_frame(outcomes: Sequence[RunOutcome]) -> pd.DataFrame:
    rows = []
    for o in outcomes:
        if isinstance(o, BacktestResult):
            r = o.report
            rows.append(
                dict(
                    name=o.name,
                    ok=True,
                    total_return=r.total_return,
                    sharpe=r.sharpe,
                    max_drawdown=r.max_drawdown,
                    n_trades=r.n_trades,
                    funding_pnl=r.funding_pnl,
                    commission=r.total_commission,
                    error=None,
                )
            )
        else:
            rows.append(dict(name=o.name, ok=False, error=f"{o.kind}: {o.error}"))
    return pd.DataFrame(rows)


def best_result(outcomes: Sequence[RunOutcome], metric: str = "sharpe") -> Optional[BacktestResult]:
    ok = [o for o in outcomes if isinstance(o, BacktestResult)]
    if not ok:
        return None
    return max(ok, key=lambda o: getattr(o.report, metric))
