"""
分类树引擎

负责所有会修改树结构的操作，保证每次成功操作后以下不变量成立：
1. 节点 path 等于父节点 path 加父节点 id
2. 无环：节点不会成为自己的祖先
3. 同一父节点下未删除节点的 order 为 0..n-1 连续且唯一
4. depth 等于 path 中 id 的个数
5. 未删除的非根节点，其父节点存在且未删除

每个操作：
- 写入前完成全部校验
- 在一个存储事务内完成（移动时节点、子树路径、新旧兄弟组的 order 一起提交）
- ConcurrencyConflictError 按 TreeSettings.conflict_* 自动重试，每次重试重新读取并校验

使用示例:
    from qbtree.tree import TreeEngine, SqlAlchemyNodeStore

    engine = TreeEngine(SqlAlchemyNodeStore(session_factory))
    math = engine.create_node(None, "数学", "MATH", "SUBJECT")
    algebra = engine.create_node(math.id, "代数", "MATH-ALG", "CHAPTER")
    engine.move_node(algebra.id, new_parent_id=None, new_order=0)
"""

from collections import Counter, defaultdict, deque
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from pydantic import ValidationError as PydanticValidationError

from qbtree.config import TreeSettings
from qbtree.exceptions import (
    ConcurrencyConflictError,
    CycleError,
    DuplicateCodeError,
    ErrorCode,
    HasChildrenError,
    NodeNotFoundError,
    ParentNotFoundError,
    TreeException,
    ValidationError,
)
from qbtree.log import get_logger
from qbtree.orm.models import TreeNodeRecord, utcnow
from .integrity import IntegrityReport, IntegrityValidator
from .node_types import NodeType, depth_limit_for, get_capability, parse_node_type
from .path_codec import ROOT_PATH, child_path, decode, encode, is_prefix_of
from .retry import call_with_retry
from .schemas import (
    BulkItemResult,
    BulkResult,
    ChildStrategy,
    CopyResult,
    CopySpec,
    CreateSpec,
    ImportResult,
    MoveSpec,
    ReorderSpec,
    TreeNode,
    UpdateSpec,
    format_validation_errors,
)
from .store import Deadline, NodeStore, StoreTransaction, operation_deadline
from .transfer import ImportNode, build_export_payload, parse_import_data

logger = get_logger()

T = TypeVar("T")

NAME_MAX_LENGTH = 200
CODE_MAX_LENGTH = 50
DESCRIPTION_MAX_LENGTH = 500


def _clean_text(value: Any, label: str, max_length: int) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{label}不能为空")
    text = str(value).strip()
    if len(text) > max_length:
        raise ValidationError(f"{label}长度不能超过 {max_length} 个字符", details=[f"当前长度: {len(text)}"])
    return text


def _clean_description(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if len(text) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(f"描述长度不能超过 {DESCRIPTION_MAX_LENGTH} 个字符")
    return text or None


def _check_order_argument(order: Optional[int], label: str):
    if order is not None and (isinstance(order, bool) or not isinstance(order, int) or order < 0):
        raise ValidationError(f"{label}必须是非负整数: {order!r}")


def _child_strategy(cascade: bool, children: Union[str, ChildStrategy, None]) -> ChildStrategy:
    if children is None:
        return ChildStrategy.CASCADE if cascade else ChildStrategy.PREVENT
    try:
        strategy = ChildStrategy(str(getattr(children, "value", children)).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in ChildStrategy)
        raise ValidationError(f"未知的子节点处理方式: {children!r}", details=[f"允许的值: {allowed}"]) from None
    if cascade and strategy is not ChildStrategy.CASCADE:
        raise ValidationError(f"cascade=True 与子节点处理方式 {strategy.value} 冲突")
    return strategy


def _failure_item(index: int, error: TreeException) -> BulkItemResult:
    code = error.code.value if isinstance(error.code, ErrorCode) else str(error.code)
    return BulkItemResult(index=index, success=False, error=error.message, error_code=code)


def _invalid_item(index: int, error: PydanticValidationError) -> BulkItemResult:
    return BulkItemResult(
        index=index,
        success=False,
        error="参数格式错误: " + "; ".join(format_validation_errors(error)),
        error_code=ErrorCode.VALIDATION_ERROR.value,
    )


class TreeEngine:
    """分类树引擎

    引擎实例不持有进程内状态，可以在多个线程之间共享。
    """

    def __init__(self, store: NodeStore, settings: Optional[TreeSettings] = None):
        self.store = store
        self.settings = settings or TreeSettings()
        self.validator = IntegrityValidator(store, self.settings)

    # ==================== 基础设施 ====================

    def _deadline(self, timeout: Optional[float]) -> Deadline:
        return operation_deadline(timeout, self.settings.default_timeout)

    def _run(self, operation: str, work: Callable[[StoreTransaction], T], timeout: Optional[float] = None) -> T:
        """在写事务中执行 work，并发冲突时整体重试

        同一个截止时间覆盖所有重试。
        """
        deadline = self._deadline(timeout)

        def attempt() -> T:
            with self.store.transaction(timeout=deadline) as tx:
                return work(tx)

        return call_with_retry(
            attempt,
            max_retries=self.settings.conflict_max_retries,
            retry_delay=self.settings.conflict_retry_delay,
            backoff_multiplier=self.settings.conflict_backoff,
            max_delay=self.settings.conflict_max_delay,
            operation=operation,
        )

    def _read(self, work: Callable[[StoreTransaction], T], timeout: Optional[float] = None) -> T:
        with self.store.transaction(read_only=True, timeout=self._deadline(timeout)) as tx:
            return work(tx)

    # ==================== 读取与加锁 ====================

    @staticmethod
    def _require_node(tx: StoreTransaction, node_id: int) -> TreeNodeRecord:
        record = tx.get(node_id)
        if record is None:
            raise NodeNotFoundError(f"节点不存在: {node_id}", node_id=node_id)
        return record

    def _lock_with_parent(
        self,
        tx: StoreTransaction,
        node_id: int,
        *extra_ids: Optional[int],
    ) -> Tuple[TreeNodeRecord, Dict[int, TreeNodeRecord]]:
        """锁定节点、当前父节点以及额外节点（按 ID 升序加锁）"""
        parent_id = self._require_node(tx, node_id).parent_id
        locked = {record.id: record for record in tx.lock([node_id, parent_id, *extra_ids])}
        node = locked.get(node_id)
        if node is None:
            raise NodeNotFoundError(f"节点不存在: {node_id}", node_id=node_id)
        if node.parent_id != parent_id:
            raise ConcurrencyConflictError("节点在读取后被并发移动", node_id=node_id)
        return node, locked

    @staticmethod
    def _resolve_parent(
        tx: StoreTransaction,
        parent_id: Optional[int],
        parent_code: Optional[str] = None,
    ) -> Optional[TreeNodeRecord]:
        """解析并锁定父节点；parent_id 与 parent_code 都为空表示根节点"""
        if parent_code is not None:
            by_code = tx.get_by_code(parent_code)
            if by_code is None:
                raise ParentNotFoundError(f"父节点不存在: code={parent_code}", parent_code=parent_code)
            if parent_id is not None and parent_id != by_code.id:
                raise ValidationError(
                    "parent_id 与 parent_code 指向不同的节点",
                    details=[f"parent_id={parent_id}", f"parent_code={parent_code} -> id={by_code.id}"],
                )
            parent_id = by_code.id
        if parent_id is None:
            return None
        rows = tx.lock([parent_id])
        if not rows:
            raise ParentNotFoundError(f"父节点不存在: {parent_id}", parent_id=parent_id)
        return rows[0]

    # ==================== 校验 ====================

    def _check_placement(
        self,
        parent: Optional[TreeNodeRecord],
        placements: Iterable[Tuple[Union[str, NodeType], int]],
    ):
        """校验父节点类型能力以及每个 (节点类型, 目标深度) 的深度限制"""
        if parent is not None:
            parent_capability = get_capability(parent.node_type)
            if not parent_capability.allows_children:
                raise ValidationError(
                    f"{parent_capability.label}类型的节点不允许包含子节点",
                    details=[f"父节点: id={parent.id}, type={parent.node_type}"],
                )
        for node_type, depth in placements:
            limit = depth_limit_for(node_type, self.settings.max_depth)
            if depth > limit:
                raise ValidationError(
                    f"超过最大深度限制: {depth} > {limit}",
                    details=[f"节点类型: {parse_node_type(node_type).value}", f"全局最大深度: {self.settings.max_depth}"],
                )

    @staticmethod
    def _path_under(parent: Optional[TreeNodeRecord]) -> str:
        if parent is None:
            return ROOT_PATH
        return encode(decode(parent.path) + [parent.id])

    @staticmethod
    def _ensure_code_free(tx: StoreTransaction, code: str, owner_id: Optional[int] = None):
        existing = tx.get_by_code(code, include_deleted=True)
        if existing is not None and existing.id != owner_id:
            details = ["该编码被已删除的节点占用"] if existing.is_deleted else []
            raise DuplicateCodeError(f"节点编码已存在: {code}", details=details, node_code=code)

    @staticmethod
    def _densify(tx: StoreTransaction, parent_id: Optional[int]) -> int:
        """将兄弟组的 order 重新编号为 0..n-1，返回变更行数"""
        changed = 0
        for index, sibling in enumerate(tx.children(parent_id)):
            if sibling.sort_order != index:
                sibling.sort_order = index
                changed += 1
        return changed

    # ==================== 创建 ====================

    def _insert_node(
        self,
        tx: StoreTransaction,
        parent: Optional[TreeNodeRecord],
        name: str,
        code: str,
        node_type: NodeType,
        desired_order: Optional[int],
        description: Optional[str],
    ) -> TreeNodeRecord:
        path = self._path_under(parent)
        depth = len(decode(path))
        self._check_placement(parent, [(node_type, depth)])
        self._ensure_code_free(tx, code)

        parent_id = parent.id if parent is not None else None
        count = tx.count_children(parent_id)
        if desired_order is None:
            order = count
        elif desired_order > count:
            raise ValidationError(f"排序位置越界: {desired_order}", details=[f"允许范围: 0..{count}"])
        else:
            order = desired_order

        if order < count:
            tx.shift_orders(parent_id, order, 1)

        return tx.add(TreeNodeRecord(
            parent_id=parent_id,
            path=path,
            depth=depth,
            sort_order=order,
            node_type=node_type.value,
            name=name,
            code=code,
            description=description,
        ))

    def create_node(
        self,
        parent_id: Union[int, CreateSpec, None] = None,
        name: Optional[str] = None,
        code: Optional[str] = None,
        node_type: Union[str, NodeType, None] = None,
        desired_order: Optional[int] = None,
        description: Optional[str] = None,
        *,
        parent_code: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> TreeNode:
        """创建节点

        Args:
            parent_id: 父节点ID，None 表示根节点；也可以直接传入 CreateSpec
            name: 名称
            code: 编码（整棵树内唯一，包括已软删除的节点）
            node_type: 节点类型
            desired_order: 插入位置，None 追加到末尾，否则插入并后移其后的兄弟
            description: 描述
            parent_code: 按编码指定父节点
            timeout: 超时（秒）

        Raises:
            ParentNotFoundError: 父节点不存在
            DuplicateCodeError: 编码重复
            ValidationError: 参数不合法、位置越界、父节点类型不允许子节点、超过深度限制
        """
        if isinstance(parent_id, CreateSpec):
            spec = parent_id
            return self.create_node(
                spec.parent_id,
                spec.name,
                spec.code,
                spec.node_type,
                spec.order,
                spec.description,
                parent_code=spec.parent_code,
                timeout=timeout,
            )

        name = _clean_text(name, "名称", NAME_MAX_LENGTH)
        code = _clean_text(code, "编码", CODE_MAX_LENGTH)
        node_type = parse_node_type(node_type)
        description = _clean_description(description)
        _check_order_argument(desired_order, "排序位置")

        def work(tx: StoreTransaction) -> TreeNode:
            parent = self._resolve_parent(tx, parent_id, parent_code)
            record = self._insert_node(tx, parent, name, code, node_type, desired_order, description)
            return TreeNode.from_record(record)

        node = self._run("create_node", work, timeout)
        logger.info(f"节点创建成功: id={node.id}, code={node.code}, parent_id={node.parent_id}, order={node.order}")
        return node

    # ==================== 更新 ====================

    def update_node(
        self,
        node_id: int,
        fields: Union[UpdateSpec, Dict[str, Any], None] = None,
        *,
        timeout: Optional[float] = None,
    ) -> TreeNode:
        """更新节点元数据（name / code / description / node_type）

        path、order、parent_id 只能通过 move_node / reorder_siblings 修改。

        Raises:
            NodeNotFoundError: 节点不存在
            DuplicateCodeError: 新编码与其他节点重复
            ValidationError: 字段不允许更新，或新类型与现有子节点、深度冲突
        """
        if isinstance(fields, UpdateSpec):
            changes = fields.model_dump(exclude_unset=True)
        else:
            try:
                changes = UpdateSpec.model_validate(fields or {}).model_dump(exclude_unset=True)
            except PydanticValidationError as e:
                raise ValidationError("更新字段不合法", details=format_validation_errors(e)) from None

        cleaned: Dict[str, Any] = {}
        if "name" in changes:
            cleaned["name"] = _clean_text(changes["name"], "名称", NAME_MAX_LENGTH)
        if "code" in changes:
            cleaned["code"] = _clean_text(changes["code"], "编码", CODE_MAX_LENGTH)
        if "description" in changes:
            cleaned["description"] = _clean_description(changes["description"])
        if "node_type" in changes:
            if changes["node_type"] is None:
                raise ValidationError("节点类型不能为空")
            cleaned["node_type"] = parse_node_type(changes["node_type"]).value

        def work(tx: StoreTransaction) -> TreeNode:
            rows = tx.lock([node_id])
            if not rows:
                raise NodeNotFoundError(f"节点不存在: {node_id}", node_id=node_id)
            record = rows[0]

            updates = {key: value for key, value in cleaned.items() if getattr(record, key) != value}
            if "code" in updates:
                self._ensure_code_free(tx, updates["code"], owner_id=record.id)
            if "node_type" in updates:
                new_type = updates["node_type"]
                if not get_capability(new_type).allows_children and tx.count_children(record.id) > 0:
                    raise ValidationError(
                        f"节点存在子节点，不能改为不允许子节点的类型: {new_type}",
                        node_id=record.id,
                    )
                self._check_placement(None, [(new_type, record.depth)])

            if not updates:
                return TreeNode.from_record(record)

            for key, value in updates.items():
                setattr(record, key, value)
            tx.flush()
            return TreeNode.from_record(record)

        node = self._run("update_node", work, timeout)
        logger.info(f"节点更新成功: id={node.id}, fields={sorted(cleaned)}")
        return node

    # ==================== 移动 ====================

    def _reposition(self, tx: StoreTransaction, node: TreeNodeRecord, new_order: int) -> bool:
        """在原兄弟组内调整位置"""
        count = tx.count_children(node.parent_id)
        if new_order >= count:
            raise ValidationError(f"排序位置越界: {new_order}", details=[f"允许范围: 0..{count - 1}"])
        old_order = node.sort_order
        if new_order == old_order:
            return False
        if new_order < old_order:
            tx.shift_orders(node.parent_id, new_order, 1, end=old_order - 1, exclude_id=node.id)
        else:
            tx.shift_orders(node.parent_id, old_order + 1, -1, end=new_order, exclude_id=node.id)
        node.sort_order = new_order
        tx.flush()
        return True

    def move_node(
        self,
        node_id: Union[int, MoveSpec],
        new_parent_id: Optional[int] = None,
        new_order: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
    ) -> bool:
        """移动节点（连同整棵子树）

        Args:
            node_id: 节点ID，也可以直接传入 MoveSpec
            new_parent_id: 新父节点ID，None 表示移为根节点
            new_order: 在新兄弟组中的位置，None 追加到末尾

        Returns:
            树是否发生了变化；父节点不变且未指定 new_order 时直接返回 False

        Raises:
            NodeNotFoundError: 节点不存在
            ParentNotFoundError: 新父节点不存在
            CycleError: 新父节点是节点自身或其子孙
            ValidationError: 位置越界、父节点类型不允许子节点、子树最深节点超过深度限制
        """
        if isinstance(node_id, MoveSpec):
            spec = node_id
            return self.move_node(spec.id, spec.new_parent_id, spec.new_order, timeout=timeout)

        _check_order_argument(new_order, "排序位置")

        def work(tx: StoreTransaction) -> bool:
            node, locked = self._lock_with_parent(tx, node_id, new_parent_id)
            old_parent_id = node.parent_id

            if new_parent_id == old_parent_id:
                if new_order is None:
                    return False
                return self._reposition(tx, node, new_order)

            old_prefix = child_path(node.path, node.id)
            parent = None
            if new_parent_id is not None:
                parent = locked.get(new_parent_id)
                if parent is None:
                    raise ParentNotFoundError(f"父节点不存在: {new_parent_id}", parent_id=new_parent_id)
                if is_prefix_of(old_prefix, child_path(parent.path, parent.id)):
                    raise CycleError(
                        f"不能将节点 {node.id} 移动到自身或其子孙节点 {parent.id} 下",
                        node_id=node.id,
                        new_parent_id=parent.id,
                    )

            new_path = self._path_under(parent)
            new_depth = len(decode(new_path))
            depth_delta = new_depth - node.depth
            descendants = tx.scan_prefix(old_prefix)
            self._check_placement(
                parent,
                [(node.node_type, new_depth)] + [(d.node_type, d.depth + depth_delta) for d in descendants],
            )

            count = tx.count_children(new_parent_id)
            if new_order is None:
                order = count
            elif new_order > count:
                raise ValidationError(f"排序位置越界: {new_order}", details=[f"允许范围: 0..{count}"])
            else:
                order = new_order

            old_order = node.sort_order
            tx.shift_orders(old_parent_id, old_order + 1, -1, exclude_id=node.id)
            tx.shift_orders(new_parent_id, order, 1, exclude_id=node.id)
            tx.rewrite_prefix(old_prefix, child_path(new_path, node.id), depth_delta)

            node.parent_id = new_parent_id
            node.path = new_path
            node.depth = new_depth
            node.sort_order = order
            tx.flush()
            return True

        moved = self._run("move_node", work, timeout)
        if moved:
            logger.info(f"节点移动成功: id={node_id}, new_parent_id={new_parent_id}, new_order={new_order}")
        return moved

    # ==================== 复制 ====================

    def copy_node(
        self,
        node_id: Union[int, CopySpec],
        new_parent_id: Optional[int] = None,
        include_descendants: bool = True,
        new_name: Optional[str] = None,
        code_suffix: str = "_COPY",
        new_order: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
    ) -> CopyResult:
        """复制节点（可连同整棵子树）到新父节点下

        副本编码为源编码加 code_suffix，子孙副本保持源子树中的相对顺序。
        新父节点可以位于源子树内部，复制范围以操作开始时的源子树为准。

        Args:
            node_id: 源节点ID，也可以直接传入 CopySpec
            new_parent_id: 副本的父节点ID，None 表示复制为根节点
            include_descendants: 是否复制子孙节点
            new_name: 副本根节点名称，None 沿用源节点名称
            code_suffix: 副本编码后缀
            new_order: 副本在新兄弟组中的位置，None 追加到末尾

        Returns:
            CopyResult，id_map 为源节点ID到副本ID的映射

        Raises:
            NodeNotFoundError: 源节点不存在
            ParentNotFoundError: 新父节点不存在
            DuplicateCodeError: 副本编码已被占用
            ValidationError: 位置越界、父节点类型不允许子节点、副本超过深度限制
        """
        if isinstance(node_id, CopySpec):
            spec = node_id
            return self.copy_node(
                spec.id,
                spec.new_parent_id,
                spec.include_descendants,
                spec.new_name,
                spec.code_suffix,
                spec.new_order,
                timeout=timeout,
            )

        _check_order_argument(new_order, "排序位置")
        name = _clean_text(new_name, "名称", NAME_MAX_LENGTH) if new_name is not None else None
        suffix = _clean_text(code_suffix, "编码后缀", CODE_MAX_LENGTH)

        def work(tx: StoreTransaction) -> CopyResult:
            locked = {record.id: record for record in tx.lock([node_id, new_parent_id])}
            source = locked.get(node_id)
            if source is None:
                raise NodeNotFoundError(f"节点不存在: {node_id}", node_id=node_id)
            parent = None
            if new_parent_id is not None:
                parent = locked.get(new_parent_id)
                if parent is None:
                    raise ParentNotFoundError(f"父节点不存在: {new_parent_id}", parent_id=new_parent_id)

            descendants = tx.scan_prefix(child_path(source.path, source.id)) if include_descendants else []
            depth_delta = len(decode(self._path_under(parent))) - source.depth
            self._check_placement(parent, [(d.node_type, d.depth + depth_delta) for d in descendants])

            root = self._insert_node(
                tx,
                parent,
                name or source.name,
                _clean_text(source.code + suffix, "编码", CODE_MAX_LENGTH),
                parse_node_type(source.node_type),
                new_order,
                source.description,
            )
            copies = {source.id: root}
            next_order: Dict[int, int] = defaultdict(int)
            for record in descendants:
                copy_parent = copies[record.parent_id]
                code = _clean_text(record.code + suffix, "编码", CODE_MAX_LENGTH)
                self._ensure_code_free(tx, code)
                copies[record.id] = tx.add(TreeNodeRecord(
                    parent_id=copy_parent.id,
                    path=child_path(copy_parent.path, copy_parent.id),
                    depth=copy_parent.depth + 1,
                    sort_order=next_order[copy_parent.id],
                    node_type=record.node_type,
                    name=record.name,
                    code=code,
                    description=record.description,
                ))
                next_order[copy_parent.id] += 1

            return CopyResult(
                root=TreeNode.from_record(root),
                id_map={source_id: copy.id for source_id, copy in copies.items()},
            )

        result = self._run("copy_node", work, timeout)
        logger.info(
            f"节点复制成功: id={node_id} -> {result.root.id}, "
            f"new_parent_id={new_parent_id}, copied={result.copied_count}"
        )
        return result

    # ==================== 重排 ====================

    def reorder_siblings(
        self,
        parent_id: Union[int, ReorderSpec, None],
        ordered_ids: Optional[Sequence[int]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> bool:
        """按给定顺序重排兄弟节点（全部成功或全部不变）

        Raises:
            ParentNotFoundError: 父节点不存在
            ValidationError: ordered_ids 不是当前兄弟集合的一个排列
        """
        if isinstance(parent_id, ReorderSpec):
            spec = parent_id
            return self.reorder_siblings(spec.parent_id, spec.ordered_ids, timeout=timeout)

        ids = list(ordered_ids or [])
        duplicates = sorted(node_id for node_id, count in Counter(ids).items() if count > 1)
        if duplicates:
            raise ValidationError("重排列表中存在重复的节点ID", details=[f"重复ID: {duplicates}"])

        def work(tx: StoreTransaction) -> bool:
            if parent_id is not None:
                locked = {record.id: record for record in tx.lock([parent_id, *ids])}
                if parent_id not in locked:
                    raise ParentNotFoundError(f"父节点不存在: {parent_id}", parent_id=parent_id)
            else:
                tx.lock(ids)

            siblings = tx.children(parent_id)
            current = {sibling.id for sibling in siblings}
            requested = set(ids)
            if requested != current:
                details = []
                if current - requested:
                    details.append(f"缺少的节点: {sorted(current - requested)}")
                if requested - current:
                    details.append(f"不属于该兄弟组的节点: {sorted(requested - current)}")
                raise ValidationError("重排列表与当前兄弟节点集合不一致", details=details)

            by_id = {sibling.id: sibling for sibling in siblings}
            for index, node_id in enumerate(ids):
                if by_id[node_id].sort_order != index:
                    by_id[node_id].sort_order = index
            tx.flush()
            return True

        result = self._run("reorder_siblings", work, timeout)
        logger.info(f"兄弟节点重排成功: parent_id={parent_id}, count={len(ids)}")
        return result

    # ==================== 删除与恢复 ====================

    def _promote_children(
        self,
        tx: StoreTransaction,
        node: TreeNodeRecord,
        locked: Dict[int, TreeNodeRecord],
        strategy: ChildStrategy,
    ):
        """把被删节点的子节点（连同子树）挂到新位置

        MOVE_TO_PARENT 时子节点按原顺序占据被删节点的位置；MOVE_TO_ROOT 时追加到根节点组末尾。
        已软删除的子节点一并改挂，保证物理删除后不留下孤儿。
        """
        target_parent_id = None if strategy is ChildStrategy.MOVE_TO_ROOT else node.parent_id
        target = None
        if target_parent_id is not None:
            target = locked.get(target_parent_id)
            if target is None:
                raise ParentNotFoundError(f"父节点不存在: {target_parent_id}", parent_id=target_parent_id)

        children = tx.children(node.id, include_deleted=True)
        tx.lock([child.id for child in children], include_deleted=True)
        active = [child for child in children if not child.is_deleted]

        prefix = child_path(node.path, node.id)
        new_path = self._path_under(target)
        depth_delta = len(decode(new_path)) - (node.depth + 1)
        self._check_placement(target, [(d.node_type, d.depth + depth_delta) for d in tx.scan_prefix(prefix)])

        if target_parent_id == node.parent_id:
            if len(active) != 1:
                tx.shift_orders(node.parent_id, node.sort_order + 1, len(active) - 1, exclude_id=node.id)
            base = node.sort_order
        else:
            tx.shift_orders(node.parent_id, node.sort_order + 1, -1, exclude_id=node.id)
            base = tx.count_children(None)

        tx.rewrite_prefix(prefix, new_path, depth_delta)
        for child in children:
            child.parent_id = target_parent_id
        for index, child in enumerate(active):
            child.sort_order = base + index
        tx.flush()

    def delete_node(
        self,
        node_id: int,
        cascade: bool = False,
        hard: Optional[bool] = None,
        *,
        children: Union[str, ChildStrategy, None] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """删除节点

        Args:
            node_id: 节点ID
            cascade: 是否级联删除整棵子树，等同于 children=ChildStrategy.CASCADE
            hard: True 物理删除，False 软删除，None 使用 TreeSettings.soft_delete
            children: 子节点处理方式，None 时由 cascade 决定（PREVENT 或 CASCADE）

        Returns:
            删除的行数

        Raises:
            NodeNotFoundError: 节点不存在
            HasChildrenError: 存在未删除的子节点且处理方式为 PREVENT
            ValidationError: 未知的处理方式、cascade 与 children 冲突、子树上移后超过深度限制
        """
        physical = (not self.settings.soft_delete) if hard is None else hard
        strategy = _child_strategy(cascade, children)

        def work(tx: StoreTransaction) -> int:
            node, locked = self._lock_with_parent(tx, node_id)
            child_count = tx.count_children(node.id)
            if child_count and strategy is ChildStrategy.PREVENT:
                raise HasChildrenError(
                    f"节点存在 {child_count} 个子节点，不能删除",
                    details=["使用 cascade=True 级联删除整棵子树，或通过 children 指定子节点的处理方式"],
                    node_id=node.id,
                )

            if child_count and strategy in (ChildStrategy.MOVE_TO_PARENT, ChildStrategy.MOVE_TO_ROOT):
                self._promote_children(tx, node, locked, strategy)
                if physical:
                    tx.delete_ids([node.id])
                else:
                    tx.mark_deleted([node.id], utcnow())
                return 1

            parent_id, old_order = node.parent_id, node.sort_order
            prefix = child_path(node.path, node.id)
            if physical:
                # 物理删除时一并清理已软删除的子孙，避免留下指向不存在父节点的行
                ids = [node.id] + [d.id for d in tx.scan_prefix(prefix, include_deleted=True)]
                tx.delete_ids(ids)
            else:
                ids = [node.id] + [d.id for d in tx.scan_prefix(prefix)]
                tx.mark_deleted(ids, utcnow())

            tx.shift_orders(parent_id, old_order + 1, -1)
            return len(ids)

        deleted = self._run("delete_node", work, timeout)
        logger.info(
            f"节点删除成功: id={node_id}, children={strategy.value}, "
            f"mode={'hard' if physical else 'soft'}, rows={deleted}"
        )
        return deleted

    def restore_node(
        self,
        node_id: int,
        cascade: bool = False,
        *,
        timeout: Optional[float] = None,
    ) -> TreeNode:
        """恢复软删除的节点，追加到兄弟组末尾

        cascade=True 时一并恢复与该节点同一次删除操作中被删除的子孙节点。

        Raises:
            NodeNotFoundError: 节点不存在（或已被物理删除）
            ParentNotFoundError: 父节点不存在或仍处于删除状态
            ValidationError: 节点未被删除
        """

        def work(tx: StoreTransaction) -> TreeNode:
            rows = tx.lock([node_id], include_deleted=True)
            if not rows:
                raise NodeNotFoundError(f"节点不存在: {node_id}", node_id=node_id)
            node = rows[0]
            if not node.is_deleted:
                raise ValidationError(f"节点未被删除: {node_id}", node_id=node_id)

            parent = self._resolve_parent(tx, node.parent_id) if node.parent_id is not None else None

            restored = [node]
            if cascade:
                batch = node.deleted_at
                restored += [
                    d for d in tx.scan_prefix(child_path(node.path, node.id), include_deleted=True)
                    if d.is_deleted and d.deleted_at == batch
                ]
            self._check_placement(parent, [(record.node_type, record.depth) for record in restored])

            node.sort_order = tx.count_children(node.parent_id)
            for record in restored:
                record.is_deleted = False
                record.deleted_at = None
            tx.flush()

            for group_parent_id in {record.parent_id for record in restored[1:]}:
                self._densify(tx, group_parent_id)
            tx.flush()
            return TreeNode.from_record(node)

        node = self._run("restore_node", work, timeout)
        logger.info(f"节点恢复成功: id={node.id}, cascade={cascade}, order={node.order}")
        return node

    # ==================== 批量操作 ====================

    def bulk_create(
        self,
        specs: Sequence[Union[CreateSpec, Dict[str, Any]]],
        *,
        timeout: Optional[float] = None,
    ) -> BulkResult:
        """批量创建（逐项独立事务，单项失败不影响其他项）"""
        items: List[BulkItemResult] = []
        for index, raw in enumerate(specs):
            try:
                spec = raw if isinstance(raw, CreateSpec) else CreateSpec.model_validate(raw)
                node = self.create_node(spec, timeout=timeout)
                items.append(BulkItemResult(index=index, success=True, node=node, affected=1))
            except PydanticValidationError as e:
                items.append(_invalid_item(index, e))
            except TreeException as e:
                items.append(_failure_item(index, e))

        result = BulkResult(items=items)
        logger.info(f"批量创建完成: 成功 {result.success_count}, 失败 {result.failure_count}")
        return result

    def bulk_move(
        self,
        specs: Sequence[Union[MoveSpec, Dict[str, Any]]],
        *,
        timeout: Optional[float] = None,
    ) -> BulkResult:
        """批量移动（逐项独立事务）"""
        items: List[BulkItemResult] = []
        for index, raw in enumerate(specs):
            try:
                spec = raw if isinstance(raw, MoveSpec) else MoveSpec.model_validate(raw)
                moved = self.move_node(spec, timeout=timeout)
                items.append(BulkItemResult(index=index, success=True, affected=1 if moved else 0))
            except PydanticValidationError as e:
                items.append(_invalid_item(index, e))
            except TreeException as e:
                items.append(_failure_item(index, e))

        result = BulkResult(items=items)
        logger.info(f"批量移动完成: 成功 {result.success_count}, 失败 {result.failure_count}")
        return result

    def bulk_delete(
        self,
        node_ids: Sequence[int],
        cascade: bool = False,
        hard: Optional[bool] = None,
        *,
        children: Union[str, ChildStrategy, None] = None,
        timeout: Optional[float] = None,
    ) -> BulkResult:
        """批量删除（逐项独立事务）"""
        items: List[BulkItemResult] = []
        for index, node_id in enumerate(node_ids):
            try:
                deleted = self.delete_node(
                    node_id, cascade=cascade, hard=hard, children=children, timeout=timeout
                )
                items.append(BulkItemResult(index=index, success=True, affected=deleted))
            except TreeException as e:
                items.append(_failure_item(index, e))

        result = BulkResult(items=items)
        logger.info(f"批量删除完成: 成功 {result.success_count}, 失败 {result.failure_count}")
        return result

    # ==================== 修复与校验 ====================

    def rebuild_paths(self, *, timeout: Optional[float] = None) -> int:
        """根据 parent_id 链重建所有可达节点的 path / depth，并压实兄弟组 order

        Returns:
            发生变化的行数
        """

        def work(tx: StoreTransaction) -> Tuple[int, int]:
            records = tx.all_nodes(include_deleted=True)
            by_id = {record.id: record for record in records}
            children: Dict[int, List[TreeNodeRecord]] = defaultdict(list)
            roots: List[TreeNodeRecord] = []
            for record in records:
                if record.parent_id is None:
                    roots.append(record)
                elif record.parent_id in by_id:
                    children[record.parent_id].append(record)

            changed = set()

            def densify(group: List[TreeNodeRecord]):
                active = sorted((r for r in group if not r.is_deleted), key=lambda r: (r.sort_order, r.id))
                for index, record in enumerate(active):
                    if record.sort_order != index:
                        record.sort_order = index
                        changed.add(record.id)

            densify(roots)
            visited = set()
            queue = deque((root, ROOT_PATH, 0) for root in roots)
            while queue:
                record, path, depth = queue.popleft()
                if record.id in visited:
                    continue
                visited.add(record.id)
                if record.path != path or record.depth != depth:
                    record.path = path
                    record.depth = depth
                    changed.add(record.id)
                group = children.get(record.id, [])
                densify(group)
                sub_path = child_path(path, record.id)
                queue.extend((child, sub_path, depth + 1) for child in group)

            tx.flush()
            return len(changed), len(records) - len(visited)

        changed, unreachable = self._run("rebuild_paths", work, timeout)
        logger.info(f"路径重建完成: 变更 {changed} 行")
        if unreachable:
            logger.warning(f"存在 {unreachable} 个无法从根节点到达的节点（孤儿或环），请检查完整性报告")
        return changed

    def validate_integrity(self, *, timeout: Optional[float] = None) -> IntegrityReport:
        """全树一致性检查（只读，数据问题写入报告而不抛出）"""
        return self.validator.validate(timeout=timeout)

    # ==================== 导入导出 ====================

    def _import_level(
        self,
        tx: StoreTransaction,
        parent: Optional[TreeNodeRecord],
        nodes: List[ImportNode],
        created: List[TreeNodeRecord],
        skipped: List[str],
    ):
        for item in nodes:
            code = _clean_text(item.code, "编码", CODE_MAX_LENGTH)
            existing = tx.get_by_code(code, include_deleted=True)
            if existing is not None and existing.is_deleted:
                # 编码被已删除节点占用时跳过整棵子树
                skipped.extend(self._collect_codes(item))
                continue
            if existing is not None:
                skipped.append(code)
                target = existing
            else:
                target = self._insert_node(
                    tx,
                    parent,
                    _clean_text(item.name, "名称", NAME_MAX_LENGTH),
                    code,
                    item.node_type,
                    None,
                    _clean_description(item.description),
                )
                created.append(target)
            if item.children:
                self._import_level(tx, target, item.children, created, skipped)

    @classmethod
    def _collect_codes(cls, item: ImportNode) -> List[str]:
        codes = [item.code]
        for child in item.children:
            codes.extend(cls._collect_codes(child))
        return codes

    def import_tree(
        self,
        data: Union[Dict[str, Any], List[Dict[str, Any]]],
        parent_id: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
    ) -> ImportResult:
        """在单个事务中导入嵌套节点

        编码已存在的节点不会重复创建，其子节点挂到已有节点下。
        任一节点校验失败时整个导入回滚。
        """
        nodes = parse_import_data(data)

        def work(tx: StoreTransaction) -> ImportResult:
            parent = self._resolve_parent(tx, parent_id)
            created: List[TreeNodeRecord] = []
            skipped: List[str] = []
            self._import_level(tx, parent, nodes, created, skipped)
            return ImportResult(created=TreeNode.from_records(created), skipped_codes=skipped)

        result = self._run("import_tree", work, timeout)
        logger.info(f"分类树导入完成: 创建 {result.created_count}, 跳过 {len(result.skipped_codes)}")
        return result

    def export_tree(self, root_id: Optional[int] = None, *, timeout: Optional[float] = None) -> Dict[str, Any]:
        """导出整棵树或指定子树（只包含未删除节点）"""

        def work(tx: StoreTransaction) -> Dict[str, Any]:
            if root_id is None:
                records = tx.all_nodes(include_deleted=False)
            else:
                root = self._require_node(tx, root_id)
                records = [root] + tx.scan_prefix(child_path(root.path, root.id))
            return build_export_payload(records)

        return self._read(work, timeout)


__all__ = ["TreeEngine"]
