"""
分类树完整性检查

对全表做一次只读扫描，把数据问题收集到 IntegrityReport 中而不是抛出异常：

- orphans: 未删除节点的父节点不存在或已删除
- cycles: parent_id 链构成环
- path_mismatches: path 不等于父节点 path + 父节点ID（包括格式错误的 path）
- depth_mismatches: depth 不等于 path 中的 ID 个数
- duplicate_orders / order_gaps: 未删除兄弟组的 order 不是 0..n-1
- depth_violations: 超过全局或节点类型的深度限制
- capability_violations: 节点类型未知，或不允许子节点的类型挂了子节点

存储层异常（连接失败、超时等）照常向上抛出。
"""

from collections import defaultdict
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from qbtree.config import TreeSettings
from qbtree.exceptions import MalformedPathError, ValidationError
from qbtree.log import get_logger
from qbtree.orm.models import TreeNodeRecord
from .node_types import depth_limit_for, get_capability
from .path_codec import ROOT_PATH, child_path, decode
from .store import NodeStore, operation_deadline

logger = get_logger()


class PathMismatch(BaseModel):
    node_id: int
    expected: Optional[str] = None
    actual: str


class DepthMismatch(BaseModel):
    node_id: int
    expected: int
    actual: int


class DuplicateOrder(BaseModel):
    parent_id: Optional[int] = None
    order: int
    node_ids: List[int]


class OrderGap(BaseModel):
    parent_id: Optional[int] = None
    orders: List[int]


class DepthViolation(BaseModel):
    node_id: int
    depth: int
    limit: int


class CapabilityViolation(BaseModel):
    node_id: int
    node_type: str
    reason: str


class IntegrityReport(BaseModel):
    """完整性检查报告"""
    checked_nodes: int = 0
    orphans: List[int] = Field(default_factory=list)
    cycles: List[List[int]] = Field(default_factory=list)
    path_mismatches: List[PathMismatch] = Field(default_factory=list)
    depth_mismatches: List[DepthMismatch] = Field(default_factory=list)
    duplicate_orders: List[DuplicateOrder] = Field(default_factory=list)
    order_gaps: List[OrderGap] = Field(default_factory=list)
    depth_violations: List[DepthViolation] = Field(default_factory=list)
    capability_violations: List[CapabilityViolation] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.issues

    @property
    def issues(self) -> List[str]:
        """所有问题的可读描述"""
        lines = [f"孤儿节点: {node_id}" for node_id in self.orphans]
        lines += [f"父链成环: {' -> '.join(map(str, cycle))}" for cycle in self.cycles]
        lines += [
            f"路径不一致: 节点 {m.node_id} 期望 {m.expected} 实际 {m.actual}"
            for m in self.path_mismatches
        ]
        lines += [
            f"深度不一致: 节点 {m.node_id} 期望 {m.expected} 实际 {m.actual}"
            for m in self.depth_mismatches
        ]
        lines += [
            f"排序重复: 父节点 {d.parent_id} order={d.order} 节点 {d.node_ids}"
            for d in self.duplicate_orders
        ]
        lines += [f"排序不连续: 父节点 {g.parent_id} orders={g.orders}" for g in self.order_gaps]
        lines += [
            f"超过深度限制: 节点 {v.node_id} depth={v.depth} limit={v.limit}"
            for v in self.depth_violations
        ]
        lines += [
            f"类型能力冲突: 节点 {v.node_id} ({v.node_type}) {v.reason}"
            for v in self.capability_violations
        ]
        return lines

    def to_dict(self):
        data = self.model_dump()
        data["is_valid"] = self.is_valid
        return data


class IntegrityValidator:
    """完整性检查器"""

    def __init__(self, store: NodeStore, settings: Optional[TreeSettings] = None):
        self.store = store
        self.settings = settings or TreeSettings()

    def validate(self, timeout: Optional[float] = None) -> IntegrityReport:
        deadline = operation_deadline(timeout, self.settings.default_timeout)
        with self.store.transaction(read_only=True, timeout=deadline) as tx:
            records = tx.all_nodes(include_deleted=True)
            report = self.check(records)

        if report.is_valid:
            logger.debug(f"完整性检查通过: {report.checked_nodes} 个节点")
        else:
            logger.warning(f"完整性检查发现 {len(report.issues)} 个问题: {report.issues[:10]}")
        return report

    def check(self, records: List[TreeNodeRecord]) -> IntegrityReport:
        """对一组记录执行全部检查"""
        report = IntegrityReport(checked_nodes=len(records))
        by_id = {record.id: record for record in records}

        self._check_parents(records, by_id, report)
        self._check_cycles(records, by_id, report)
        self._check_paths(records, by_id, report)
        self._check_orders(records, report)
        self._check_types(records, report)
        return report

    @staticmethod
    def _check_parents(records, by_id: Dict[int, TreeNodeRecord], report: IntegrityReport):
        for record in records:
            if record.is_deleted or record.parent_id is None:
                continue
            parent = by_id.get(record.parent_id)
            if parent is None or parent.is_deleted:
                report.orphans.append(record.id)

    def _check_cycles(self, records, by_id: Dict[int, TreeNodeRecord], report: IntegrityReport):
        cap = self.settings.integrity_cycle_depth_cap
        settled: Set[int] = set()
        reported: Set[frozenset] = set()

        for record in records:
            chain: List[int] = []
            position: Dict[int, int] = {}
            current = record
            while current is not None and current.id not in settled:
                if current.id in position:
                    cycle = chain[position[current.id]:]
                    key = frozenset(cycle)
                    if key not in reported:
                        reported.add(key)
                        report.cycles.append(cycle)
                    break
                if len(chain) >= cap:
                    # 父链过长，按环处理
                    key = frozenset(chain)
                    if key not in reported:
                        reported.add(key)
                        report.cycles.append(chain[:])
                    break
                position[current.id] = len(chain)
                chain.append(current.id)
                current = by_id.get(current.parent_id) if current.parent_id is not None else None
            settled.update(chain)

    @staticmethod
    def _check_paths(records, by_id: Dict[int, TreeNodeRecord], report: IntegrityReport):
        for record in records:
            try:
                actual_depth = len(decode(record.path))
            except MalformedPathError:
                actual_depth = None

            if record.parent_id is None:
                expected_path = ROOT_PATH
            else:
                parent = by_id.get(record.parent_id)
                expected_path = child_path(parent.path, parent.id) if parent is not None else None

            if actual_depth is None or (expected_path is not None and record.path != expected_path):
                report.path_mismatches.append(
                    PathMismatch(node_id=record.id, expected=expected_path, actual=record.path)
                )
            if actual_depth is not None and record.depth != actual_depth:
                report.depth_mismatches.append(
                    DepthMismatch(node_id=record.id, expected=actual_depth, actual=record.depth)
                )

    @staticmethod
    def _check_orders(records, report: IntegrityReport):
        groups: Dict[Optional[int], List[TreeNodeRecord]] = defaultdict(list)
        for record in records:
            if not record.is_deleted:
                groups[record.parent_id].append(record)

        for parent_id, group in groups.items():
            by_order: Dict[int, List[int]] = defaultdict(list)
            for record in group:
                by_order[record.sort_order].append(record.id)
            for order, node_ids in sorted(by_order.items()):
                if len(node_ids) > 1:
                    report.duplicate_orders.append(
                        DuplicateOrder(parent_id=parent_id, order=order, node_ids=sorted(node_ids))
                    )
            orders = sorted(by_order)
            if orders != list(range(len(orders))):
                report.order_gaps.append(OrderGap(parent_id=parent_id, orders=sorted(r.sort_order for r in group)))

    def _check_types(self, records, report: IntegrityReport):
        parents_with_children = {
            record.parent_id for record in records
            if not record.is_deleted and record.parent_id is not None
        }
        for record in records:
            if record.is_deleted:
                continue
            try:
                capability = get_capability(record.node_type)
            except ValidationError:
                report.capability_violations.append(
                    CapabilityViolation(node_id=record.id, node_type=str(record.node_type), reason="未知的节点类型")
                )
                continue
            if not capability.allows_children and record.id in parents_with_children:
                report.capability_violations.append(
                    CapabilityViolation(node_id=record.id, node_type=record.node_type, reason="该类型不允许子节点")
                )
            limit = depth_limit_for(record.node_type, self.settings.max_depth)
            if record.depth > limit:
                report.depth_violations.append(
                    DepthViolation(node_id=record.id, depth=record.depth, limit=limit)
                )


__all__ = [
    "IntegrityReport",
    "IntegrityValidator",
    "PathMismatch",
    "DepthMismatch",
    "DuplicateOrder",
    "OrderGap",
    "DepthViolation",
    "CapabilityViolation",
]
