#!filepath: perpbt/observability/diagnostics.py
from __future__ import annotations

import time
from collections import Counter, OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from perpbt import logs


@dataclass(frozen=True)
class DiagnosticEvent:
    ts: Optional[int]
    instrument: Optional[str]
    kind: str          # invalid_order / risk_reject / risk_liquidate / limit_unfilled / ...
    message: str


class Timer:
    """
    高精度计时器
    - start(name)
    - end(name) → 返回耗时秒数
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._start: Dict[str, float] = {}

    def start(self, name: str):
        if not self.enabled:
            return
        self._start[name] = time.perf_counter()

    def end(self, name: str) -> float:
        if not self.enabled or name not in self._start:
            return 0.0
        return time.perf_counter() - self._start.pop(name)


@dataclass
class MetricRecorder:
    enabled: bool = True
    echo: bool = False
    metrics: Dict[str, Any] = field(default_factory=dict)

    def record(self, name: str, value: Any):
        if not self.enabled:
            return
        self.metrics[name] = value
        if self.echo:
            logs.info(f"[Metric] {name} = {value}")


@dataclass
class Diagnostics:
    """
    Per-run diagnostics context.

    The replay core never logs on its own. Every recoverable event
    (dropped order, risk rejection, protective exit) lands here, and
    echo=True forwards it to the global loguru sink.

    One instance per run; not shared between sweep workers.
    """

    enabled: bool = True
    echo: bool = False

    def __post_init__(self):
        self.events: List[DiagnosticEvent] = []
        self.counters: Counter = Counter()
        self.metrics = MetricRecorder(enabled=self.enabled, echo=self.echo)
        self._timer = Timer(enabled=self.enabled)

        # leaf timers only: OrderedDict[name, elapsed_seconds]
        self.timeline: Dict[str, float] = OrderedDict()

    def record(
        self,
        kind: str,
        message: str,
        *,
        ts: Optional[int] = None,
        instrument: Optional[str] = None,
        level: str = "info",
    ) -> None:
        if not self.enabled:
            return
        self.events.append(DiagnosticEvent(ts=ts, instrument=instrument, kind=kind, message=message))
        self.counters[kind] += 1
        if self.echo:
            where = f" {instrument}" if instrument else ""
            getattr(logs, level)(f"[Diagnostics] {kind}{where} ts={ts} | {message}")

    def count(self, kind: str) -> int:
        return self.counters.get(kind, 0)

    def events_of(self, kind: str) -> List[DiagnosticEvent]:
        return [e for e in self.events if e.kind == kind]

    def timer(self, name: str):
        inst = self

        @contextmanager
        def _ctx():
            if not inst.enabled:
                yield
                return
            inst._timer.start(name)
            try:
                yield
            finally:
                inst.timeline[name] = inst.timeline.get(name, 0.0) + inst._timer.end(name)

        return _ctx()


class NoOpDiagnostics(Diagnostics):
    """Diagnostics disabled 时使用。"""

    def __init__(self):
        super().__init__(enabled=False, echo=False)
