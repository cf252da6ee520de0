from .log_config import LogConfig
from .backtest_config import BacktestConfig, CommissionConfig, RiskConfig
from .app_config import AppConfig

__all__ = ["LogConfig", "BacktestConfig", "CommissionConfig", "RiskConfig", "AppConfig"]
