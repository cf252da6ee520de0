# perpbt/backtest/strategy/custom.py
from __future__ import annotations

from typing import Callable, Optional

from perpbt.backtest.core.events import MarketEvent
from perpbt.backtest.strategy.base import Intent, Strategy
from perpbt.utils.errors import ConfigurationError


class CustomStrategy(Strategy):
    """Adapter for a user callable: handler(event) -> SignalEvent | OrderRequest | None."""

    name = "custom"

    def __init__(self, handler: Callable[[MarketEvent], Optional[Intent]]) -> None:
        if not callable(handler):
            raise ConfigurationError("custom strategy requires a callable 'handler'")
        self._handler = handler

    def on_market(self, event: MarketEvent) -> Optional[Intent]:
        return self._handler(event)
