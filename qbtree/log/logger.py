"""
日志工具模块
提供简化的日志配置功能
"""

import inspect
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Optional, Union


DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_log_level(level: Union[str, int]) -> int:
    """解析日志级别为整数

    Args:
        level: 日志级别字符串（如 "INFO"）或整数

    Returns:
        int: 日志级别整数值，无法识别时返回 INFO
    """
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


def create_formatter(log_format: str = None) -> logging.Formatter:
    """创建日志格式化器"""
    return logging.Formatter(log_format or DEFAULT_LOG_FORMAT)


def setup_logger(
    name: str = "qbtree",
    level: Union[str, int] = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    console: bool = True,
    propagate: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    encoding: str = "utf-8",
) -> logging.Logger:
    """设置日志记录器

    重复调用会替换已有处理器，不会产生重复输出。

    Args:
        name: 日志记录器名称
        level: 日志级别
        log_file: 日志文件路径，None 表示不写文件
        log_format: 日志格式
        console: 是否输出到控制台
        propagate: 是否传播到父日志器
        max_bytes: 单个日志文件最大字节数
        backup_count: 备份文件数量
        encoding: 文件编码

    Returns:
        配置好的日志记录器

    使用示例:
        from qbtree.log import setup_logger

        logger = setup_logger("qbtree", level="DEBUG", log_file="logs/tree.log")
    """
    logger = logging.getLogger(name)
    logger.setLevel(_parse_log_level(level))
    logger.propagate = propagate

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = create_formatter(log_format)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding=encoding,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def setup_logger_from_settings(config: Any, name: str = "qbtree") -> logging.Logger:
    """根据 LoggingSettings 配置日志记录器

    Args:
        config: 日志配置对象（LoggingSettings）
        name: 日志记录器名称

    Returns:
        配置好的日志记录器
    """
    return setup_logger(
        name=name,
        level=getattr(config, "level", "INFO"),
        log_file=getattr(config, "file_path", None) or None,
        log_format=getattr(config, "log_format", None),
        console=getattr(config, "enable_console", True),
        max_bytes=getattr(config, "parsed_file_max_bytes", 10 * 1024 * 1024),
        backup_count=getattr(config, "file_backup_count", 5),
        encoding=getattr(config, "file_encoding", "utf-8"),
    )


def get_logger(name: str = None) -> logging.Logger:
    """获取日志记录器，支持自动推断模块名

    无参数调用时，自动从调用栈获取模块的 __name__ 作为日志器名称。
    有参数调用时，简写名称（不含点号）自动添加 'qbtree.' 前缀。

    Args:
        name: 日志记录器名称。
              - None: 自动使用调用模块的 __name__
              - 字符串: 使用指定名称（如 "tree" -> "qbtree.tree"）

    Returns:
        日志记录器实例

    使用示例:
        from qbtree.log import get_logger

        logger = get_logger()              # qbtree/tree/engine.py -> "qbtree.tree.engine"
        logger = get_logger("tree")        # -> "qbtree.tree"
        logger = get_logger("sqlalchemy.engine")  # 含点号，不添加前缀
    """
    if name is None:
        frame = inspect.currentframe()
        if frame is not None and frame.f_back is not None:
            name = frame.f_back.f_globals.get("__name__", "qbtree")
        else:
            name = "qbtree"
    elif not name.startswith("qbtree.") and name != "qbtree" and "." not in name:
        name = f"qbtree.{name}"

    return logging.getLogger(name)


# 通用日志记录器
logger = logging.getLogger("qbtree")
tree_logger = get_logger("tree")
