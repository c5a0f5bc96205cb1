"""
配置模块

提供数据库、日志、分类树引擎的配置类以及 YAML 配置加载器
"""

from .settings import (
    AppSettings,
    DatabaseSettings,
    LoggingSettings,
    TreeSettings,
)
from .loader import ConfigLoader, load_yaml_config

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "LoggingSettings",
    "TreeSettings",
    "ConfigLoader",
    "load_yaml_config",
]
