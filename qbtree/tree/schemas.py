"""分类树数据传输对象

输入：CreateSpec / UpdateSpec / MoveSpec / ReorderSpec / CopySpec
输出：TreeNode / CopyResult / BulkResult / ImportResult / Breadcrumb / TreeStatistics
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from .node_types import NodeType

T = TypeVar("T", bound="DTO")


def _normalize_node_type(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


# 输入中的节点类型大小写不敏感
NodeTypeInput = Annotated[NodeType, BeforeValidator(_normalize_node_type)]


class DTO(BaseModel):
    """数据传输对象基类"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


class TreeNode(DTO):
    """分类树节点（只读视图）"""
    id: int
    parent_id: Optional[int] = None
    path: str = "/"
    depth: int = 0
    order: int = 0
    node_type: NodeType
    name: str
    code: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_deleted: bool = False

    @classmethod
    def from_record(cls: Type[T], record) -> T:
        """从 TreeNodeRecord 创建（sort_order 映射为 order）"""
        return cls(
            id=record.id,
            parent_id=record.parent_id,
            path=record.path,
            depth=record.depth,
            order=record.sort_order,
            node_type=record.node_type,
            name=record.name,
            code=record.code,
            description=record.description,
            created_at=record.created_at,
            updated_at=record.updated_at,
            is_deleted=bool(record.is_deleted),
        )

    @classmethod
    def from_records(cls: Type[T], records) -> List[T]:
        return [cls.from_record(record) for record in records]


class CreateSpec(DTO):
    """创建节点参数

    parent_code 可以引用同一批次中先创建的节点（bulk_create）。
    """
    parent_id: Optional[int] = Field(default=None, description="父节点ID，None 表示根节点")
    parent_code: Optional[str] = Field(default=None, description="父节点编码（与 parent_id 二选一）")
    name: str = Field(description="名称")
    code: str = Field(description="编码，整棵树内唯一")
    node_type: NodeTypeInput = Field(description="节点类型")
    order: Optional[int] = Field(default=None, description="插入位置，None 追加到末尾")
    description: Optional[str] = Field(default=None, description="描述")


class UpdateSpec(DTO):
    """更新节点元数据参数（只更新显式传入的字段）"""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, description="名称")
    code: Optional[str] = Field(default=None, description="编码")
    description: Optional[str] = Field(default=None, description="描述")
    node_type: Optional[NodeTypeInput] = Field(default=None, description="节点类型")


class MoveSpec(DTO):
    """移动节点参数"""
    id: int = Field(description="要移动的节点ID")
    new_parent_id: Optional[int] = Field(default=None, description="新父节点ID，None 表示移为根节点")
    new_order: Optional[int] = Field(default=None, description="在新兄弟组中的位置，None 追加到末尾")


class ReorderSpec(DTO):
    """兄弟节点重排参数"""
    parent_id: Optional[int] = Field(default=None, description="父节点ID，None 表示根节点组")
    ordered_ids: List[int] = Field(description="按新顺序排列的全部兄弟节点ID")


class CopySpec(DTO):
    """复制节点参数"""
    id: int = Field(description="要复制的节点ID")
    new_parent_id: Optional[int] = Field(default=None, description="副本的父节点ID，None 表示复制为根节点")
    include_descendants: bool = Field(default=True, description="是否复制整棵子树")
    new_name: Optional[str] = Field(default=None, description="副本根节点名称，None 沿用源节点名称")
    code_suffix: str = Field(default="_COPY", description="副本编码后缀")
    new_order: Optional[int] = Field(default=None, description="副本在新兄弟组中的位置，None 追加到末尾")


class ChildStrategy(str, Enum):
    """删除节点时子节点的处理方式"""
    PREVENT = "prevent"                  # 存在子节点时拒绝删除
    CASCADE = "cascade"                  # 级联删除整棵子树
    MOVE_TO_PARENT = "move_to_parent"    # 子节点上移到被删节点的位置
    MOVE_TO_ROOT = "move_to_root"        # 子节点移为根节点，追加到根节点组末尾


class CopyResult(DTO):
    """复制结果"""
    root: TreeNode
    id_map: Dict[int, int] = Field(default_factory=dict, description="源节点ID -> 新节点ID")

    @property
    def copied_count(self) -> int:
        return len(self.id_map)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["copied_count"] = self.copied_count
        return data


class BulkItemResult(DTO):
    """批量操作单项结果"""
    index: int
    success: bool
    node: Optional[TreeNode] = None
    affected: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None


class BulkResult(DTO):
    """批量操作结果（逐项独立，不做跨项回滚）"""
    items: List[BulkItemResult] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for item in self.items if not item.success)

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["success_count"] = self.success_count
        data["failure_count"] = self.failure_count
        return data


class ImportResult(DTO):
    """导入结果"""
    created: List[TreeNode] = Field(default_factory=list)
    skipped_codes: List[str] = Field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["created_count"] = self.created_count
        return data


class Breadcrumb(DTO):
    """面包屑导航项"""
    id: int
    name: str
    code: str
    depth: int


class TreeStatistics(DTO):
    """分类树统计（只统计未删除节点）"""
    total_nodes: int = 0
    root_nodes: int = 0
    leaf_nodes: int = 0
    max_depth: int = 0
    avg_depth: float = 0.0
    avg_children_per_node: float = 0.0
    nodes_by_type: Dict[str, int] = Field(default_factory=dict)
    nodes_per_depth: Dict[int, int] = Field(default_factory=dict)


__all__ = [
    "DTO",
    "NodeTypeInput",
    "TreeNode",
    "CreateSpec",
    "UpdateSpec",
    "MoveSpec",
    "ReorderSpec",
    "CopySpec",
    "ChildStrategy",
    "CopyResult",
    "BulkItemResult",
    "BulkResult",
    "ImportResult",
    "Breadcrumb",
    "TreeStatistics",
    "format_validation_errors",
]


def format_validation_errors(error) -> List[str]:
    """将 pydantic 校验异常转换为 "字段: 消息" 列表"""
    return [
        f"{'.'.join(str(part) for part in err['loc']) or '请求体'}: {err['msg']}"
        for err in error.errors()
    ]
