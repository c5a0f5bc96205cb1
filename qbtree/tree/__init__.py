"""分类树模块

物化路径实现的题库分类树：
- path_codec: 路径编解码
- store: 存储层（工作单元、行锁、批量路径重写）
- engine: 结构修改操作（创建、移动、重排、删除、恢复、批量、导入导出）
- query: 只读查询
- integrity: 完整性检查

使用示例:
    from qbtree.tree import create_tree_services

    services = create_tree_services(create_tables=True)
    math = services.engine.create_node(None, "数学", "MATH", "SUBJECT")
"""

from .path_codec import (
    SEPARATOR,
    ROOT_PATH,
    encode,
    decode,
    is_prefix_of,
    child_path,
    depth_of,
)
from .node_types import (
    NodeType,
    NodeTypeCapability,
    NODE_TYPE_CAPABILITIES,
    parse_node_type,
    get_capability,
    depth_limit_for,
)
from .schemas import (
    TreeNode,
    CreateSpec,
    UpdateSpec,
    MoveSpec,
    ReorderSpec,
    CopySpec,
    ChildStrategy,
    CopyResult,
    BulkItemResult,
    BulkResult,
    ImportResult,
    Breadcrumb,
    TreeStatistics,
)
from .store import (
    Deadline,
    operation_deadline,
    NodeStore,
    StoreTransaction,
    SqlAlchemyNodeStore,
    SqlAlchemyStoreTransaction,
)
from .retry import call_with_retry, retry_on_conflict
from .integrity import IntegrityReport, IntegrityValidator
from .engine import TreeEngine
from .query import QueryService
from .transfer import EXPORT_FORMAT_VERSION, parse_import_data, build_export_payload
from .tree_utils import (
    build_tree_list,
    iter_tree,
    flatten_tree,
    find_node_in_tree,
    calculate_tree_depth,
)
from .services import TreeServices, create_tree_services

__all__ = [
    # 路径
    "SEPARATOR",
    "ROOT_PATH",
    "encode",
    "decode",
    "is_prefix_of",
    "child_path",
    "depth_of",
    # 节点类型
    "NodeType",
    "NodeTypeCapability",
    "NODE_TYPE_CAPABILITIES",
    "parse_node_type",
    "get_capability",
    "depth_limit_for",
    # DTO
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
    # 存储
    "Deadline",
    "operation_deadline",
    "NodeStore",
    "StoreTransaction",
    "SqlAlchemyNodeStore",
    "SqlAlchemyStoreTransaction",
    # 服务
    "call_with_retry",
    "retry_on_conflict",
    "IntegrityReport",
    "IntegrityValidator",
    "TreeEngine",
    "QueryService",
    "TreeServices",
    "create_tree_services",
    # 导入导出与工具
    "EXPORT_FORMAT_VERSION",
    "parse_import_data",
    "build_export_payload",
    "build_tree_list",
    "iter_tree",
    "flatten_tree",
    "find_node_in_tree",
    "calculate_tree_depth",
]
