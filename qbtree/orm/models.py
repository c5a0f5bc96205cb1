"""
分类树 ORM 模型

表 qb_tree_node 同时保存两种树结构表示：
- parent_id：邻接表
- path / depth：物化路径（冗余缓存，必须与 parent_id 链保持一致）
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """当前 UTC 时间（不带时区信息，兼容 SQLite）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """声明式基类"""
    pass


class TreeNodeRecord(Base):
    """分类树节点记录

    path 示例：
        根节点 1           path="/"        depth=0
        节点 4（父=1）     path="/1/"      depth=1
        节点 10（父=4）    path="/1/4/"    depth=2

    parent_id 不设外键约束，完整性检查需要能够发现孤儿节点。
    code 唯一约束覆盖所有行（包括软删除的行）。
    """
    __tablename__ = "qb_tree_node"
    __table_args__ = (
        Index("ix_qb_tree_node_parent_order", "parent_id", "sort_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True, comment="主键")
    parent_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True, comment="父节点ID")
    path: Mapped[str] = mapped_column(String(1000), nullable=False, default="/", index=True, comment="物化路径")
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="层级深度（根节点为0）")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="兄弟节点排序")
    node_type: Mapped[str] = mapped_column(String(32), nullable=False, comment="节点类型")
    name: Mapped[str] = mapped_column(String(200), nullable=False, comment="名称")
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, comment="编码")
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True, comment="描述")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, comment="创建时间")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, comment="更新时间"
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, comment="软删除标记")
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=False), nullable=True, default=None, comment="删除时间"
    )

    def __repr__(self) -> str:
        return f"<TreeNodeRecord(id={self.id}, code={self.code!r}, path={self.path!r}, order={self.sort_order})>"
