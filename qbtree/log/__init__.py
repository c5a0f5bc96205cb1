"""日志模块

使用示例:
    from qbtree.log import get_logger, setup_logger

    logger = setup_logger("qbtree", level="DEBUG", log_file="logs/tree.log")
    logger = get_logger()  # 自动推断模块名
"""

from .logger import (
    setup_logger,
    setup_logger_from_settings,
    create_formatter,
    get_logger,
    DEFAULT_LOG_FORMAT,
    logger,
    tree_logger,
)

__all__ = [
    "setup_logger",
    "setup_logger_from_settings",
    "create_formatter",
    "get_logger",
    "DEFAULT_LOG_FORMAT",
    "logger",
    "tree_logger",
]
