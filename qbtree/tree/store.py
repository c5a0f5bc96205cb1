"""
节点存储层

NodeStore 是分类树引擎访问持久化存储的唯一入口：
- transaction() 打开一个工作单元（StoreTransaction），正常退出提交，异常回滚
- 所有读写都在工作单元内完成，引擎本身不持有任何进程内锁

SqlAlchemyNodeStore 是基于 SQLAlchemy 的实现：
- 写事务可以指定隔离级别（PostgreSQL 推荐 SERIALIZABLE）
- lock() 使用 SELECT ... FOR UPDATE（SQLite 会忽略）
- IntegrityError（code 唯一约束）转换为 DuplicateCodeError
- OperationalError（死锁、序列化失败、数据库被锁）转换为 ConcurrencyConflictError
- 每条语句执行前检查截止时间，超时抛出 OperationTimeoutError 并回滚
- 开启事务时把剩余时间交给数据库作为等锁上限，阻塞的语句同样受截止时间约束
"""

import math
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Sequence, Union

from sqlalchemy import String, delete, func, literal, or_, select, text, true, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from qbtree.exceptions import (
    ConcurrencyConflictError,
    DuplicateCodeError,
    OperationTimeoutError,
    ValidationError,
)
from qbtree.log import get_logger
from qbtree.orm.db_session import LOCK_TIMEOUT_OPTION
from qbtree.orm.models import TreeNodeRecord

logger = get_logger()


class Deadline:
    """操作截止时间

    timeout 为 None 表示不限制。同一个 Deadline 可以跨多次重试共享，
    使超时约束整个操作而不是单次尝试。
    """

    def __init__(self, timeout: Optional[float] = None):
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout 必须大于 0: {timeout}")
        self.timeout = timeout
        self._expires_at = None if timeout is None else time.monotonic() + timeout

    @classmethod
    def of(cls, value: Union[None, float, "Deadline"]) -> "Deadline":
        if isinstance(value, Deadline):
            return value
        return cls(value)

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def check(self, operation: str = ""):
        """已超时则抛出 OperationTimeoutError"""
        if self.expired():
            raise OperationTimeoutError(
                f"操作超时（{self.timeout}s），已回滚",
                details=[f"超时发生在: {operation}"] if operation else [],
                timeout=self.timeout,
            )


def operation_deadline(timeout: Optional[float], default: Optional[float] = None) -> Deadline:
    """由调用方传入的 timeout 创建截止时间，None 时使用 default

    Raises:
        ValidationError: timeout 不是正数
    """
    if timeout is None:
        timeout = default
    if timeout is not None and timeout <= 0:
        raise ValidationError(f"timeout 必须大于 0: {timeout}")
    return Deadline(timeout)


class StoreTransaction(ABC):
    """存储工作单元

    读取方法默认只返回未删除节点，include_deleted=True 时包括软删除节点。
    """

    @abstractmethod
    def get(self, node_id: int, include_deleted: bool = False) -> Optional[TreeNodeRecord]:
        ...

    @abstractmethod
    def get_many(self, node_ids: Sequence[int], include_deleted: bool = False) -> List[TreeNodeRecord]:
        ...

    @abstractmethod
    def get_by_code(self, code: str, include_deleted: bool = False) -> Optional[TreeNodeRecord]:
        ...

    @abstractmethod
    def lock(self, node_ids: Sequence[int], include_deleted: bool = False) -> List[TreeNodeRecord]:
        """锁定并重新读取行（按 ID 升序加锁）"""

    @abstractmethod
    def children(self, parent_id: Optional[int], include_deleted: bool = False) -> List[TreeNodeRecord]:
        """子节点，按 (order, id) 排序；parent_id=None 返回根节点"""

    @abstractmethod
    def count_children(self, parent_id: Optional[int]) -> int:
        ...

    @abstractmethod
    def max_order(self, parent_id: Optional[int]) -> int:
        """兄弟组中最大的 order，空组返回 -1"""

    @abstractmethod
    def scan_prefix(
        self,
        prefix: str,
        include_deleted: bool = False,
        max_depth: Optional[int] = None,
    ) -> List[TreeNodeRecord]:
        """路径前缀范围扫描，按 (depth, order, id) 排序"""

    @abstractmethod
    def shift_orders(
        self,
        parent_id: Optional[int],
        start: int,
        delta: int,
        end: Optional[int] = None,
        exclude_id: Optional[int] = None,
    ) -> int:
        """兄弟组中 start <= order (<= end) 的未删除节点 order 加 delta"""

    @abstractmethod
    def rewrite_prefix(self, old_prefix: str, new_prefix: str, depth_delta: int) -> int:
        """一次批量更新替换所有以 old_prefix 开头的路径前缀"""

    @abstractmethod
    def add(self, record: TreeNodeRecord) -> TreeNodeRecord:
        ...

    @abstractmethod
    def delete_ids(self, node_ids: Sequence[int]) -> int:
        ...

    @abstractmethod
    def mark_deleted(self, node_ids: Sequence[int], deleted_at: datetime) -> int:
        ...

    @abstractmethod
    def all_nodes(self, include_deleted: bool = True) -> List[TreeNodeRecord]:
        ...

    @abstractmethod
    def search(self, term: str, limit: int) -> List[TreeNodeRecord]:
        """名称或编码包含 term（大小写不敏感）"""

    @abstractmethod
    def find_by_path(self, path: str, node_id: int) -> Optional[TreeNodeRecord]:
        """按父链路径和节点ID查找未删除节点"""

    @abstractmethod
    def flush(self):
        ...


class NodeStore(ABC):
    """节点存储接口"""

    @abstractmethod
    def transaction(
        self,
        read_only: bool = False,
        timeout: Union[None, float, Deadline] = None,
    ) -> Iterator[StoreTransaction]:
        """打开工作单元（上下文管理器）"""


def _parent_clause(parent_id: Optional[int]):
    if parent_id is None:
        return TreeNodeRecord.parent_id.is_(None)
    return TreeNodeRecord.parent_id == parent_id


def _active_clause(include_deleted: bool):
    if include_deleted:
        return true()
    return TreeNodeRecord.is_deleted.is_(False)


class SqlAlchemyStoreTransaction(StoreTransaction):
    """基于 Session 的工作单元"""

    def __init__(self, session: Session, deadline: Deadline):
        self.session = session
        self.deadline = deadline

    def _scalars(self, stmt, operation: str) -> List[TreeNodeRecord]:
        self.deadline.check(operation)
        return list(self.session.scalars(stmt).all())

    def _execute(self, stmt, operation: str) -> int:
        self.deadline.check(operation)
        result = self.session.execute(stmt.execution_options(synchronize_session="fetch"))
        return result.rowcount or 0

    def get(self, node_id: int, include_deleted: bool = False) -> Optional[TreeNodeRecord]:
        rows = self._scalars(
            select(TreeNodeRecord).where(
                TreeNodeRecord.id == node_id,
                _active_clause(include_deleted),
            ),
            "get",
        )
        return rows[0] if rows else None

    def get_many(self, node_ids: Sequence[int], include_deleted: bool = False) -> List[TreeNodeRecord]:
        if not node_ids:
            return []
        return self._scalars(
            select(TreeNodeRecord)
            .where(TreeNodeRecord.id.in_(list(node_ids)), _active_clause(include_deleted))
            .order_by(TreeNodeRecord.depth, TreeNodeRecord.id),
            "get_many",
        )

    def get_by_code(self, code: str, include_deleted: bool = False) -> Optional[TreeNodeRecord]:
        rows = self._scalars(
            select(TreeNodeRecord).where(
                TreeNodeRecord.code == code,
                _active_clause(include_deleted),
            ),
            "get_by_code",
        )
        return rows[0] if rows else None

    def lock(self, node_ids: Sequence[int], include_deleted: bool = False) -> List[TreeNodeRecord]:
        ids = sorted({node_id for node_id in node_ids if node_id is not None})
        if not ids:
            return []
        return self._scalars(
            select(TreeNodeRecord)
            .where(TreeNodeRecord.id.in_(ids), _active_clause(include_deleted))
            .order_by(TreeNodeRecord.id)
            .with_for_update()
            .execution_options(populate_existing=True),
            "lock",
        )

    def children(self, parent_id: Optional[int], include_deleted: bool = False) -> List[TreeNodeRecord]:
        return self._scalars(
            select(TreeNodeRecord)
            .where(_parent_clause(parent_id), _active_clause(include_deleted))
            .order_by(TreeNodeRecord.sort_order, TreeNodeRecord.id),
            "children",
        )

    def count_children(self, parent_id: Optional[int]) -> int:
        self.deadline.check("count_children")
        return self.session.scalar(
            select(func.count(TreeNodeRecord.id)).where(
                _parent_clause(parent_id),
                TreeNodeRecord.is_deleted.is_(False),
            )
        ) or 0

    def max_order(self, parent_id: Optional[int]) -> int:
        self.deadline.check("max_order")
        value = self.session.scalar(
            select(func.max(TreeNodeRecord.sort_order)).where(
                _parent_clause(parent_id),
                TreeNodeRecord.is_deleted.is_(False),
            )
        )
        return -1 if value is None else value

    def scan_prefix(
        self,
        prefix: str,
        include_deleted: bool = False,
        max_depth: Optional[int] = None,
    ) -> List[TreeNodeRecord]:
        stmt = select(TreeNodeRecord).where(
            TreeNodeRecord.path.startswith(prefix, autoescape=True),
            _active_clause(include_deleted),
        )
        if max_depth is not None:
            stmt = stmt.where(TreeNodeRecord.depth <= max_depth)
        stmt = stmt.order_by(TreeNodeRecord.depth, TreeNodeRecord.sort_order, TreeNodeRecord.id)
        return self._scalars(stmt, "scan_prefix")

    def shift_orders(
        self,
        parent_id: Optional[int],
        start: int,
        delta: int,
        end: Optional[int] = None,
        exclude_id: Optional[int] = None,
    ) -> int:
        conditions = [
            _parent_clause(parent_id),
            TreeNodeRecord.is_deleted.is_(False),
            TreeNodeRecord.sort_order >= start,
        ]
        if end is not None:
            conditions.append(TreeNodeRecord.sort_order <= end)
        if exclude_id is not None:
            conditions.append(TreeNodeRecord.id != exclude_id)
        stmt = (
            update(TreeNodeRecord)
            .where(*conditions)
            .values(sort_order=TreeNodeRecord.sort_order + delta)
        )
        return self._execute(stmt, "shift_orders")

    def rewrite_prefix(self, old_prefix: str, new_prefix: str, depth_delta: int) -> int:
        stmt = (
            update(TreeNodeRecord)
            .where(TreeNodeRecord.path.startswith(old_prefix, autoescape=True))
            .values(
                path=literal(new_prefix, String).concat(
                    func.substr(TreeNodeRecord.path, len(old_prefix) + 1)
                ),
                depth=TreeNodeRecord.depth + depth_delta,
            )
        )
        return self._execute(stmt, "rewrite_prefix")

    def add(self, record: TreeNodeRecord) -> TreeNodeRecord:
        self.deadline.check("add")
        self.session.add(record)
        self.session.flush()
        return record

    def delete_ids(self, node_ids: Sequence[int]) -> int:
        if not node_ids:
            return 0
        return self._execute(
            delete(TreeNodeRecord).where(TreeNodeRecord.id.in_(list(node_ids))),
            "delete_ids",
        )

    def mark_deleted(self, node_ids: Sequence[int], deleted_at: datetime) -> int:
        if not node_ids:
            return 0
        return self._execute(
            update(TreeNodeRecord)
            .where(TreeNodeRecord.id.in_(list(node_ids)))
            .values(is_deleted=True, deleted_at=deleted_at, updated_at=deleted_at),
            "mark_deleted",
        )

    def all_nodes(self, include_deleted: bool = True) -> List[TreeNodeRecord]:
        return self._scalars(
            select(TreeNodeRecord)
            .where(_active_clause(include_deleted))
            .order_by(TreeNodeRecord.depth, TreeNodeRecord.sort_order, TreeNodeRecord.id),
            "all_nodes",
        )

    def search(self, term: str, limit: int) -> List[TreeNodeRecord]:
        """PostgreSQL 使用 ILIKE；其他数据库使用 lower() LIKE lower()，
        SQLite 的 lower() 只转换 ASCII 字母，非 ASCII 字符按原样匹配"""
        return self._scalars(
            select(TreeNodeRecord)
            .where(
                TreeNodeRecord.is_deleted.is_(False),
                or_(
                    TreeNodeRecord.name.icontains(term, autoescape=True),
                    TreeNodeRecord.code.icontains(term, autoescape=True),
                ),
            )
            .order_by(TreeNodeRecord.depth, TreeNodeRecord.sort_order, TreeNodeRecord.id)
            .limit(limit),
            "search",
        )

    def find_by_path(self, path: str, node_id: int) -> Optional[TreeNodeRecord]:
        rows = self._scalars(
            select(TreeNodeRecord).where(
                TreeNodeRecord.id == node_id,
                TreeNodeRecord.path == path,
                TreeNodeRecord.is_deleted.is_(False),
            ),
            "find_by_path",
        )
        return rows[0] if rows else None

    def flush(self):
        self.deadline.check("flush")
        self.session.flush()


class SqlAlchemyNodeStore(NodeStore):
    """SQLAlchemy 节点存储

    使用示例:
        from sqlalchemy.orm import sessionmaker
        from qbtree.tree import SqlAlchemyNodeStore

        store = SqlAlchemyNodeStore(sessionmaker(bind=engine), isolation_level="SERIALIZABLE")
        with store.transaction() as tx:
            roots = tx.children(None)
    """

    def __init__(self, session_factory: sessionmaker, isolation_level: Optional[str] = None):
        self.session_factory = session_factory
        self.isolation_level = isolation_level

    def _begin(self, session: Session, deadline: Deadline, read_only: bool):
        """开启事务，把截止时间的剩余时间交给数据库作为等锁上限

        SQLite 由 begin 监听器设置 busy_timeout；PostgreSQL 使用 SET LOCAL，
        只对当前事务生效。
        """
        options = {}
        if self.isolation_level and not read_only:
            options["isolation_level"] = self.isolation_level
        remaining = deadline.remaining()
        if remaining is not None:
            options[LOCK_TIMEOUT_OPTION] = remaining
        if not options:
            return

        connection = session.connection(execution_options=options)
        if remaining is not None and connection.dialect.name == "postgresql":
            millis = max(1, math.ceil(deadline.remaining() * 1000))
            session.execute(text(f"SET LOCAL lock_timeout = {millis}"))
            session.execute(text(f"SET LOCAL statement_timeout = {millis}"))

    @contextmanager
    def transaction(
        self,
        read_only: bool = False,
        timeout: Union[None, float, Deadline] = None,
    ) -> Iterator[SqlAlchemyStoreTransaction]:
        deadline = Deadline.of(timeout)
        session: Session = self.session_factory()
        try:
            deadline.check("begin")
            self._begin(session, deadline, read_only)
            yield SqlAlchemyStoreTransaction(session, deadline)
            if read_only:
                session.rollback()
            else:
                deadline.check("commit")
                session.commit()
        except IntegrityError as e:
            session.rollback()
            if not _is_code_conflict(e):
                raise
            raise DuplicateCodeError("节点编码已存在", details=[str(e.orig)]) from e
        except OperationalError as e:
            session.rollback()
            if deadline.expired():
                raise OperationTimeoutError(
                    f"操作超时（{deadline.timeout}s），已回滚",
                    details=[f"等待锁超时: {e.orig}"],
                    timeout=deadline.timeout,
                ) from e
            logger.warning(f"存储事务被中止: {type(e.orig).__name__}: {e.orig}")
            raise ConcurrencyConflictError(
                "并发冲突，事务已回滚",
                details=[str(e.orig)],
            ) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _is_code_conflict(error: IntegrityError) -> bool:
    return "code" in str(error.orig).lower()


__all__ = [
    "Deadline",
    "operation_deadline",
    "StoreTransaction",
    "NodeStore",
    "SqlAlchemyStoreTransaction",
    "SqlAlchemyNodeStore",
]
