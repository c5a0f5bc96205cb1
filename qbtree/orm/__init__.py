"""ORM 模块

提供分类树节点表模型和数据库会话管理
"""

from .models import Base, TreeNodeRecord, utcnow
from .db_session import (
    LOCK_TIMEOUT_OPTION,
    DatabaseManager,
    db_manager,
    init_database,
    get_engine,
    db_session_scope,
)

__all__ = [
    "Base",
    "TreeNodeRecord",
    "utcnow",
    "LOCK_TIMEOUT_OPTION",
    "DatabaseManager",
    "db_manager",
    "init_database",
    "get_engine",
    "db_session_scope",
]
