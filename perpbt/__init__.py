#!filepath: perpbt/__init__.py

from .utils.logger import Logging, logs, init_logging
from .utils.datetime_utils import DateTimeUtils
from .utils.errors import (
    BacktestError,
    InputDataError,
    UnsupportedInterval,
    DataUnavailable,
    InvalidOrder,
    NumericFault,
    ConfigurationError,
)
from .config.app_config import AppConfig

datetime_utils = DateTimeUtils

__version__ = "0.1.0"

__all__ = [
    "logs", "Logging", "init_logging",
    "AppConfig",
    "datetime_utils",
    "BacktestError", "InputDataError", "UnsupportedInterval", "DataUnavailable",
    "InvalidOrder", "NumericFault", "ConfigurationError",
]
