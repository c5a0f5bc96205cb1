"""
服务装配

根据 AppSettings 初始化数据库并组装存储、引擎、查询服务。

使用示例:
    from qbtree.config import AppSettings, load_yaml_config
    from qbtree.tree import create_tree_services

    settings = load_yaml_config("config/settings.yaml", AppSettings)
    services = create_tree_services(settings, create_tables=True)

    node = services.engine.create_node(None, "数学", "MATH", "SUBJECT")
    roots = services.queries.get_children(None)
"""

from dataclasses import dataclass
from typing import Optional

from qbtree.config import AppSettings
from qbtree.log import get_logger
from qbtree.orm import DatabaseManager
from .engine import TreeEngine
from .query import QueryService
from .store import SqlAlchemyNodeStore

logger = get_logger()


@dataclass
class TreeServices:
    """一组共享同一存储的服务实例"""
    manager: DatabaseManager
    store: SqlAlchemyNodeStore
    engine: TreeEngine
    queries: QueryService


def create_tree_services(
    settings: Optional[AppSettings] = None,
    manager: Optional[DatabaseManager] = None,
    create_tables: bool = False,
) -> TreeServices:
    """创建分类树服务

    Args:
        settings: 应用配置，None 使用默认配置（SQLite 内存库）
        manager: 已初始化的数据库管理器，None 时按 settings.database 新建
        create_tables: 是否创建数据表
    """
    settings = settings or AppSettings()
    if manager is None:
        manager = DatabaseManager()
    if not manager.is_initialized:
        manager.init(config=settings.database)
    if create_tables:
        manager.create_all()

    store = SqlAlchemyNodeStore(
        manager.session_factory,
        isolation_level=manager.isolation_level,
    )
    services = TreeServices(
        manager=manager,
        store=store,
        engine=TreeEngine(store, settings.tree),
        queries=QueryService(store, settings.tree),
    )
    logger.info(
        f"分类树服务初始化完成: max_depth={settings.tree.max_depth}, "
        f"soft_delete={settings.tree.soft_delete}"
    )
    return services


__all__ = ["TreeServices", "create_tree_services"]
