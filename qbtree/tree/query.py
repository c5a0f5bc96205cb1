"""
分类树查询服务

所有查询都在只读事务中执行，默认只返回未删除节点。
祖先查询通过解码 path 后批量读取，子孙查询通过 path 前缀范围扫描，
都不需要递归访问数据库。

使用示例:
    from qbtree.tree import QueryService

    queries = QueryService(store)
    ancestors = queries.get_ancestors(node_id)          # 根 -> 父
    subtree = queries.get_descendants(node_id, max_depth=2)
    tree = queries.get_tree(root_id=None, max_depth=3)  # 嵌套字典
"""

from collections import Counter
from typing import Any, Callable, Dict, List, Optional, TypeVar

from qbtree.config import TreeSettings
from qbtree.exceptions import NodeNotFoundError, ValidationError
from qbtree.log import get_logger
from qbtree.orm.models import TreeNodeRecord
from .node_types import NodeType
from .path_codec import child_path, decode, encode
from .schemas import Breadcrumb, TreeNode, TreeStatistics
from .store import NodeStore, StoreTransaction, operation_deadline
from .tree_utils import build_tree_list

logger = get_logger()

T = TypeVar("T")


class QueryService:
    """分类树查询服务"""

    def __init__(self, store: NodeStore, settings: Optional[TreeSettings] = None):
        self.store = store
        self.settings = settings or TreeSettings()

    def _read(self, work: Callable[[StoreTransaction], T], timeout: Optional[float] = None) -> T:
        deadline = operation_deadline(timeout, self.settings.default_timeout)
        with self.store.transaction(read_only=True, timeout=deadline) as tx:
            return work(tx)

    @staticmethod
    def _require(tx: StoreTransaction, node_id: int) -> TreeNodeRecord:
        record = tx.get(node_id)
        if record is None:
            raise NodeNotFoundError(f"节点不存在: {node_id}", node_id=node_id)
        return record

    # ==================== 单节点 ====================

    def get_node(self, node_id: int, *, timeout: Optional[float] = None) -> TreeNode:
        """获取节点

        Raises:
            NodeNotFoundError: 节点不存在或已删除
        """
        return self._read(lambda tx: TreeNode.from_record(self._require(tx, node_id)), timeout)

    def get_by_code(self, code: str, *, timeout: Optional[float] = None) -> Optional[TreeNode]:
        def work(tx):
            record = tx.get_by_code(code)
            return TreeNode.from_record(record) if record is not None else None

        return self._read(work, timeout)

    def get_parent(self, node_id: int, *, timeout: Optional[float] = None) -> Optional[TreeNode]:
        """获取父节点，根节点返回 None"""

        def work(tx):
            record = self._require(tx, node_id)
            if record.parent_id is None:
                return None
            parent = tx.get(record.parent_id)
            return TreeNode.from_record(parent) if parent is not None else None

        return self._read(work, timeout)

    def get_depth(self, node_id: int, *, timeout: Optional[float] = None) -> int:
        return self._read(lambda tx: self._require(tx, node_id).depth, timeout)

    def find_by_path(self, path: str, *, timeout: Optional[float] = None) -> Optional[TreeNode]:
        """按节点自身的完整 ID 链查找

        "/1/4/10/" 表示祖先为 1、4 的节点 10。"/" 不对应任何节点。

        Raises:
            MalformedPathError: 路径格式不正确
        """
        ids = decode(path)
        if not ids:
            return None

        def work(tx):
            record = tx.find_by_path(encode(ids[:-1]), ids[-1])
            return TreeNode.from_record(record) if record is not None else None

        return self._read(work, timeout)

    # ==================== 关系查询 ====================

    def get_children(self, parent_id: Optional[int] = None, *, timeout: Optional[float] = None) -> List[TreeNode]:
        """获取子节点（按 order 排序），parent_id=None 返回根节点"""

        def work(tx):
            if parent_id is not None:
                self._require(tx, parent_id)
            return TreeNode.from_records(tx.children(parent_id))

        return self._read(work, timeout)

    def get_siblings(self, node_id: int, *, timeout: Optional[float] = None) -> List[TreeNode]:
        """获取兄弟节点（不含自身）"""

        def work(tx):
            record = self._require(tx, node_id)
            return TreeNode.from_records(
                sibling for sibling in tx.children(record.parent_id) if sibling.id != record.id
            )

        return self._read(work, timeout)

    def get_ancestors(self, node_id: int, *, timeout: Optional[float] = None) -> List[TreeNode]:
        """获取祖先节点，顺序为根 -> 父"""

        def work(tx):
            record = self._require(tx, node_id)
            ancestor_ids = decode(record.path)
            by_id = {r.id: r for r in tx.get_many(ancestor_ids)}
            return [TreeNode.from_record(by_id[i]) for i in ancestor_ids if i in by_id]

        return self._read(work, timeout)

    def get_descendants(
        self,
        node_id: int,
        max_depth: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
    ) -> List[TreeNode]:
        """获取子孙节点，按 (depth, order) 排序

        Args:
            max_depth: 相对深度限制，1 表示只返回子节点，None 不限制
        """
        if max_depth is not None and max_depth < 0:
            raise ValidationError(f"max_depth 不能为负数: {max_depth}")

        def work(tx):
            record = self._require(tx, node_id)
            absolute = None if max_depth is None else record.depth + max_depth
            return TreeNode.from_records(tx.scan_prefix(child_path(record.path, record.id), max_depth=absolute))

        return self._read(work, timeout)

    def get_breadcrumbs(self, node_id: int, *, timeout: Optional[float] = None) -> List[Breadcrumb]:
        """面包屑：根 -> 当前节点"""

        def work(tx):
            record = self._require(tx, node_id)
            ancestor_ids = decode(record.path)
            by_id = {r.id: r for r in tx.get_many(ancestor_ids)}
            chain = [by_id[i] for i in ancestor_ids if i in by_id] + [record]
            return [Breadcrumb(id=r.id, name=r.name, code=r.code, depth=r.depth) for r in chain]

        return self._read(work, timeout)

    # ==================== 搜索与整树 ====================

    def search(
        self,
        term: str,
        max_results: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
    ) -> List[TreeNode]:
        """按名称或编码模糊搜索（大小写不敏感），空关键字返回空列表"""
        if term is None or not term.strip():
            return []
        limit = self.settings.max_search_results if max_results is None else max_results
        if limit <= 0:
            raise ValidationError(f"max_results 必须大于 0: {limit}")
        return self._read(lambda tx: TreeNode.from_records(tx.search(term.strip(), limit)), timeout)

    def get_tree(
        self,
        root_id: Optional[int] = None,
        max_depth: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """获取嵌套树结构

        Args:
            root_id: 子树根节点ID，None 返回整棵树
            max_depth: 相对于顶层的层数限制，0 只返回顶层
        """
        if max_depth is not None and max_depth < 0:
            raise ValidationError(f"max_depth 不能为负数: {max_depth}")

        def work(tx):
            if root_id is None:
                records = [
                    r for r in tx.all_nodes(include_deleted=False)
                    if max_depth is None or r.depth <= max_depth
                ]
            else:
                root = self._require(tx, root_id)
                absolute = None if max_depth is None else root.depth + max_depth
                records = [root] + tx.scan_prefix(child_path(root.path, root.id), max_depth=absolute)
            return build_tree_list([TreeNode.from_record(r).to_dict() for r in records])

        return self._read(work, timeout)

    def get_statistics(self, *, timeout: Optional[float] = None) -> TreeStatistics:
        """统计未删除节点"""
        records = self._read(
            lambda tx: [
                (r.id, r.parent_id, r.depth, r.node_type)
                for r in tx.all_nodes(include_deleted=False)
            ],
            timeout,
        )
        if not records:
            return TreeStatistics(nodes_by_type={t.value: 0 for t in NodeType})

        total = len(records)
        parents = Counter(parent_id for _id, parent_id, _depth, _type in records if parent_id is not None)
        roots = sum(1 for _id, parent_id, _depth, _type in records if parent_id is None)
        leaves = sum(1 for node_id, _parent, _depth, _type in records if node_id not in parents)
        depths = Counter(depth for _id, _parent, depth, _type in records)
        by_type = {t.value: 0 for t in NodeType}
        for _id, _parent, _depth, node_type in records:
            by_type[node_type] = by_type.get(node_type, 0) + 1

        return TreeStatistics(
            total_nodes=total,
            root_nodes=roots,
            leaf_nodes=leaves,
            max_depth=max(depths),
            avg_depth=round(sum(d * c for d, c in depths.items()) / total, 4),
            avg_children_per_node=round(sum(parents.values()) / len(parents), 4) if parents else 0.0,
            nodes_by_type=by_type,
            nodes_per_depth=dict(sorted(depths.items())),
        )


__all__ = ["QueryService"]
