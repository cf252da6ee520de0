# perpbt/backtest/strategy/factory.py
from __future__ import annotations

from typing import Any, Dict, Type

from perpbt.backtest.strategy.base import Strategy
from perpbt.backtest.strategy.crossover import MovingAverageCrossStrategy
from perpbt.backtest.strategy.custom import CustomStrategy
from perpbt.backtest.strategy.funding_arbitrage import FundingArbitrageStrategy
from perpbt.utils.errors import ConfigurationError


class StrategyFactory:
    """
    StrategyFactory (FINAL / FROZEN)

    注册式 Strategy 构造器

    All strategies must be explicitly registered in StrategyFactory._REGISTRY.
    Registration is centralized and static; adding a strategy requires a
    deliberate code change here.
    """

    _REGISTRY: Dict[str, Type[Strategy]] = {
        "ma_cross": MovingAverageCrossStrategy,
        "funding_arbitrage": FundingArbitrageStrategy,
        "custom": CustomStrategy,
    }

    # --------------------------------------------------
    @classmethod
    def create(cls, cfg: Dict[str, Any]) -> Strategy:
        """
        cfg:
          backtest.strategy（完整 dict）

        冻结规则：
          - cfg["type"] 必须存在（KeyError）
          - 未注册 type → ConfigurationError
          - 参数不合法 → ConfigurationError
        """
        if "type" not in cfg:
            raise KeyError("[StrategyFactory] missing 'type' in strategy config")

        typ = cfg["type"]

        if typ not in cls._REGISTRY:
            raise ConfigurationError(f"[StrategyFactory] unknown strategy type: {typ}")

        strategy_cls = cls._REGISTRY[typ]

        # type 字段不传给 Strategy 本体
        params = {k: v for k, v in cfg.items() if k != "type"}

        try:
            return strategy_cls(**params)
        except TypeError as exc:
            raise ConfigurationError(f"[StrategyFactory] bad params for {typ}: {exc}") from exc

    @classmethod
    def types(cls) -> list[str]:
        return sorted(cls._REGISTRY)
