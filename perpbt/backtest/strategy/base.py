# perpbt/backtest/strategy/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Union

from perpbt.backtest.core.events import MarketEvent, OrderRequest, SignalEvent

Intent = Union[SignalEvent, OrderRequest]


class Strategy(ABC):
    """
    Strategy (FINAL / FROZEN)

    纯解释器：
      MarketEvent -> SignalEvent | OrderRequest | None

    - one instance per instrument per run (rolling state is private)
    - insufficient history → None, never an exception
    """

    name: str = "strategy"

    @abstractmethod
    def on_market(self, event: MarketEvent) -> Optional[Intent]:
        ...
