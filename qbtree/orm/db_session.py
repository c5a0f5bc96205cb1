"""
数据库会话管理模块

提供数据库引擎创建、会话管理等功能。

公开 API:
- DatabaseManager: 数据库管理器
- db_manager: 默认管理器实例
- init_database(): 初始化默认管理器
- db_session_scope(): 会话上下文管理器（自动提交 / 回滚）
"""

import logging
import math
import os
import time
import uuid
from contextlib import contextmanager
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from qbtree.log import get_logger
from .models import Base

_logger = get_logger("qbtree.orm.session")

# 连接执行选项：本次事务等待锁的最长时间（秒），由存储层按调用方的截止时间设置
LOCK_TIMEOUT_OPTION = "qbtree_lock_timeout"

_SHARED_CACHE_POLL_INTERVAL = 0.005


def _memory_database_url() -> str:
    """每个管理器独立的共享缓存内存库，同一引擎的多个连接看到同一份数据"""
    return f"sqlite:///file:qbtree-{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _use_immediate_transactions(engine: Engine, lock_timeout: float, shared_cache: bool = False):
    """SQLite：事务开始即获取写锁

    pysqlite 默认延迟到第一条写语句才加锁，并发写入时读到的数据可能已经过期。
    改为 BEGIN IMMEDIATE 后，竞争失败表现为 "database is locked"（OperationalError），
    由存储层转换为 ConcurrencyConflictError 并重试。

    等锁时间取连接执行选项 LOCK_TIMEOUT_OPTION，未设置时使用 lock_timeout。
    共享缓存内存库的锁冲突不经过 busy handler，在这里按相同的时间轮询。
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        timeout = conn.get_execution_options().get(LOCK_TIMEOUT_OPTION, lock_timeout)
        conn.exec_driver_sql(f"PRAGMA busy_timeout = {max(1, math.ceil(timeout * 1000))}")
        if not shared_cache:
            conn.exec_driver_sql("BEGIN IMMEDIATE")
            return

        expires_at = time.monotonic() + timeout
        while True:
            try:
                conn.exec_driver_sql("BEGIN IMMEDIATE")
                return
            except OperationalError:
                if time.monotonic() >= expires_at:
                    raise
                time.sleep(_SHARED_CACHE_POLL_INTERVAL)


class DatabaseManager:
    """数据库管理器

    封装引擎与 sessionmaker。

    使用示例:
        from qbtree.orm import DatabaseManager

        manager = DatabaseManager()
        manager.init(database_url="sqlite:///./qbank.db")
        manager.create_all()

        with manager.session_scope() as session:
            ...
    """

    def __init__(self):
        self._engine: Optional[Engine] = None
        self._session_maker: Optional[sessionmaker] = None
        self._isolation_level: Optional[str] = None
        self._memory_anchor = None

    @property
    def engine(self) -> Engine:
        """获取数据库引擎

        Raises:
            RuntimeError: 数据库未初始化时
        """
        if self._engine is None:
            raise RuntimeError("数据库未初始化，请先调用 init_database()")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_maker is None:
            raise RuntimeError("数据库未初始化，请先调用 init_database()")
        return self._session_maker

    @property
    def isolation_level(self) -> Optional[str]:
        """写事务隔离级别（来自 DatabaseSettings）"""
        return self._isolation_level

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    def init(
        self,
        database_url: str = None,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
        pool_recycle: int = 3600,
        pool_pre_ping: bool = True,
        isolation_level: Optional[str] = None,
        logger: logging.Logger = None,
        config: Any = None,
    ):
        """初始化数据库连接

        Args:
            database_url: 数据库连接URL（如果提供 config 则忽略）
            echo: 是否输出SQL语句
            pool_size: 连接池大小
            max_overflow: 最大溢出连接数
            pool_timeout: 连接超时时间
            pool_recycle: 连接回收时间
            pool_pre_ping: 连接前是否ping
            isolation_level: 写事务隔离级别，交给 SqlAlchemyNodeStore 使用
            logger: 日志记录器
            config: 数据库配置对象（DatabaseSettings），提供后自动提取配置

        Returns:
            tuple: (engine, session_factory)

        使用示例:
            engine, session_factory = init_database(config=settings.database)
        """
        if config is not None:
            database_url = getattr(config, "url", database_url)
            echo = getattr(config, "echo", echo)
            pool_size = getattr(config, "pool_size", pool_size)
            max_overflow = getattr(config, "max_overflow", max_overflow)
            pool_timeout = getattr(config, "pool_timeout", pool_timeout)
            pool_recycle = getattr(config, "pool_recycle", pool_recycle)
            pool_pre_ping = getattr(config, "pool_pre_ping", pool_pre_ping)
            isolation_level = getattr(config, "isolation_level", isolation_level)

        if not database_url:
            raise ValueError("database_url 是必需的，请通过参数或 config 提供")

        if logger is None:
            logger = _logger

        logger.info(f"数据库配置URL: {database_url}")

        if database_url.startswith("sqlite:///"):
            db_path = database_url[len("sqlite:///"):]
            is_memory_db = db_path == ":memory:" or db_path == ""

            if is_memory_db:
                # 内存数据库：共享缓存 + 普通连接池，每个会话使用自己的连接和事务
                self._engine = create_engine(
                    _memory_database_url(),
                    echo=echo,
                    connect_args={"check_same_thread": False},
                    poolclass=QueuePool,
                    pool_size=pool_size,
                    max_overflow=max_overflow,
                    pool_timeout=pool_timeout,
                )
                _use_immediate_transactions(self._engine, pool_timeout, shared_cache=True)
                # 最后一个连接关闭时内存库即被销毁，保留一个连接直到 dispose()
                self._memory_anchor = self._engine.raw_connection()
                logger.info("SQLite内存数据库引擎创建成功（共享缓存，BEGIN IMMEDIATE）")
            else:
                logger.info(f"SQLite文件数据库路径: {os.path.abspath(db_path)}")
                self._engine = create_engine(
                    database_url,
                    echo=echo,
                    connect_args={"check_same_thread": False, "timeout": pool_timeout},
                    pool_pre_ping=pool_pre_ping,
                )
                _use_immediate_transactions(self._engine, pool_timeout)
                logger.info("SQLite文件数据库引擎创建成功（BEGIN IMMEDIATE）")
        else:
            self._engine = create_engine(
                database_url,
                echo=echo,
                pool_pre_ping=pool_pre_ping,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_recycle=pool_recycle,
            )
            logger.info("数据库引擎创建成功")

        self._isolation_level = isolation_level
        self._session_maker = sessionmaker(
            autocommit=False,
            autoflush=True,
            bind=self._engine,
        )

        logger.info("数据库session创建成功")
        return self._engine, self._session_maker

    def create_all(self):
        """创建分类树所需的表"""
        Base.metadata.create_all(self.engine)

    def drop_all(self):
        Base.metadata.drop_all(self.engine)

    def dispose(self):
        """释放连接池"""
        if self._memory_anchor is not None:
            self._memory_anchor.close()
            self._memory_anchor = None
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_maker = None

    @contextmanager
    def session_scope(self, auto_commit: bool = True) -> Generator[Session, None, None]:
        """会话上下文管理器，自动提交或回滚"""
        session = self.session_factory()
        try:
            yield session
            if auto_commit:
                session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# ==================== 默认实例 ====================

db_manager = DatabaseManager()


def init_database(
    database_url: str = None,
    echo: bool = False,
    isolation_level: Optional[str] = None,
    logger: logging.Logger = None,
    config: Any = None,
    create_tables: bool = False,
):
    """初始化默认数据库管理器

    这是 db_manager.init() 的便捷包装函数。

    Returns:
        tuple: (engine, session_factory)
    """
    result = db_manager.init(
        database_url=database_url,
        echo=echo,
        isolation_level=isolation_level,
        logger=logger,
        config=config,
    )
    if create_tables:
        db_manager.create_all()
    return result


def get_engine() -> Engine:
    """获取默认数据库引擎"""
    return db_manager.engine


@contextmanager
def db_session_scope(auto_commit: bool = True) -> Generator[Session, None, None]:
    """默认管理器的 session 上下文管理器

    使用示例:
        with db_session_scope() as session:
            session.add(record)
        # 自动提交并关闭
    """
    with db_manager.session_scope(auto_commit=auto_commit) as session:
        yield session


__all__ = [
    "LOCK_TIMEOUT_OPTION",
    "DatabaseManager",
    "db_manager",
    "init_database",
    "get_engine",
    "db_session_scope",
]
