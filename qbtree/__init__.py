"""qbtree - 题库分类树管理引擎

使用示例:
    from qbtree import AppSettings, create_tree_services

    services = create_tree_services(AppSettings(), create_tables=True)
    math = services.engine.create_node(None, "数学", "MATH", "SUBJECT")
    algebra = services.engine.create_node(math.id, "代数", "MATH-ALG", "CHAPTER")
    services.queries.get_ancestors(algebra.id)
"""

from .version import __version__, __author__, __description__
from .config import AppSettings, DatabaseSettings, LoggingSettings, TreeSettings, load_yaml_config
from .exceptions import Err, ErrorCode, TreeException, register_exception_handlers
from .log import get_logger, setup_logger
from .response import Resp
from .tree import (
    NodeType,
    TreeNode,
    TreeEngine,
    QueryService,
    SqlAlchemyNodeStore,
    IntegrityReport,
    TreeServices,
    create_tree_services,
)

__all__ = [
    "__version__",
    "__author__",
    "__description__",
    "AppSettings",
    "DatabaseSettings",
    "LoggingSettings",
    "TreeSettings",
    "load_yaml_config",
    "Err",
    "ErrorCode",
    "TreeException",
    "register_exception_handlers",
    "get_logger",
    "setup_logger",
    "Resp",
    "NodeType",
    "TreeNode",
    "TreeEngine",
    "QueryService",
    "SqlAlchemyNodeStore",
    "IntegrityReport",
    "TreeServices",
    "create_tree_services",
]
