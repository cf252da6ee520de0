#!filepath: perpbt/config/app_config.py
import os

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .backtest_config import BacktestConfig
from .log_config import LogConfig
from perpbt.utils.errors import ConfigurationError


def project_root() -> str:
    """
    perpbt/config/app_config.py → perpbt/config → perpbt → project_root
    """
    return os.path.abspath(os.path.join(os.path.dirname(__file__), "../../"))


def default_config_path() -> str:
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "base.yml")


class AppConfig(BaseModel):
    log: LogConfig = Field(default_factory=LogConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)

    @classmethod
    def load(cls, path: str | None = None) -> "AppConfig":
        """
        加载 YAML 配置 + .env
        - 默认使用 perpbt/config/base.yml
        - 环境变量 PERPBT_LOG_LEVEL / PERPBT_LOG_DIR 覆盖 log 段
        """
        # 1) 先加载 .env（在项目根目录下），不覆盖已有环境变量
        load_dotenv(os.path.join(project_root(), ".env"))

        # 2) 决定配置文件路径
        if path is None:
            path = default_config_path()

        if not os.path.exists(path):
            raise FileNotFoundError(f"Config file not found: {path}")

        # 3) 读取 YAML
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        if not isinstance(raw, dict):
            raise ConfigurationError(f"config root must be a mapping: {path}")

        log = dict(raw.get("log") or {})
        if os.getenv("PERPBT_LOG_LEVEL"):
            log["level"] = os.getenv("PERPBT_LOG_LEVEL")
        if os.getenv("PERPBT_LOG_DIR"):
            log["dir"] = os.getenv("PERPBT_LOG_DIR")
        raw["log"] = log

        return cls(**raw)
