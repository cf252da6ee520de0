# perpbt/utils/errors.py
from __future__ import annotations


class BacktestError(RuntimeError):
    """
    Base of every typed failure raised by perpbt.

    RiskRejection is NOT here: a rejected signal is a decision outcome,
    see perpbt.backtest.risk.manager.RiskDecision.
    """


class InputDataError(BacktestError):
    """
    Gaps, non-monotonic timestamps, broken OHLC, unsupported interval.
    Fatal at run start: the run never begins.
    """


class UnsupportedInterval(InputDataError):
    def __init__(self, interval: object) -> None:
        super().__init__(f"unsupported interval: {interval!r}")
        self.interval = interval


class DataUnavailable(InputDataError):
    """Provider cannot serve the full requested range."""


class InvalidOrder(BacktestError):
    """
    Non-positive quantity, unknown instrument, malformed price.
    Recovered per bar: the order is dropped and recorded in diagnostics.
    """


class NumericFault(BacktestError):
    """
    NaN / inf / division by zero inside accounting or statistics.
    Fatal mid-run: the run halts with the curve accumulated so far.
    """


class ConfigurationError(BacktestError):
    """
    Out-of-range risk / commission / strategy parameters.
    Raised at construction time; should NOT print a traceback to users.
    """
