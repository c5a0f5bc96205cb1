"""嵌套树结构工具函数

get_tree / export_tree 输出、import_tree 输入都使用嵌套字典：
    {"id": 1, "name": "数学", ..., "children": [{...}, {...}]}

使用示例:
    from qbtree.tree import build_tree_list, flatten_tree

    flat = [
        {"id": 1, "parent_id": None, "order": 0, "name": "数学"},
        {"id": 2, "parent_id": 1, "order": 1, "name": "几何"},
        {"id": 3, "parent_id": 1, "order": 0, "name": "代数"},
    ]
    tree = build_tree_list(flat)      # 数学 -> [代数, 几何]
    rows = flatten_tree(tree)         # 先序展开
"""

from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple


def _default_sort_key(node: Dict[str, Any]) -> Tuple[Any, Any]:
    return node.get("order", 0), node.get("id", 0)


def build_tree_list(
    nodes: List[Dict[str, Any]],
    id_field: str = "id",
    parent_field: str = "parent_id",
    children_field: str = "children",
    sort_key: Optional[Callable[[Dict[str, Any]], Any]] = _default_sort_key,
) -> List[Dict[str, Any]]:
    """将扁平列表构建为嵌套树结构

    父节点不在列表中的节点视为顶层节点，因此传入任意子树的扁平列表
    都能得到以子树根为顶层的结果。

    Args:
        nodes: 扁平的节点列表
        id_field: ID 字段名
        parent_field: 父节点 ID 字段名
        children_field: 输出中子节点列表的字段名
        sort_key: 同级排序函数，默认按 (order, id)；None 保持输入顺序

    Returns:
        嵌套的树形结构列表（节点均为副本，不修改输入）
    """
    node_map: Dict[Any, Dict[str, Any]] = {}
    for node in nodes:
        node_copy = dict(node)
        node_copy[children_field] = []
        node_map[node_copy[id_field]] = node_copy

    roots: List[Dict[str, Any]] = []
    for node in node_map.values():
        parent_id = node.get(parent_field)
        if parent_id is not None and parent_id in node_map:
            node_map[parent_id][children_field].append(node)
        else:
            roots.append(node)

    if sort_key is not None:
        _sort_tree_recursive(roots, children_field, sort_key)

    return roots


def _sort_tree_recursive(
    nodes: List[Dict[str, Any]],
    children_field: str,
    sort_key: Callable[[Dict[str, Any]], Any],
):
    nodes.sort(key=sort_key)
    for node in nodes:
        children = node.get(children_field)
        if children:
            _sort_tree_recursive(children, children_field, sort_key)


def iter_tree(
    tree: List[Dict[str, Any]],
    children_field: str = "children",
    _parent: Optional[Dict[str, Any]] = None,
    _level: int = 0,
) -> Iterator[Tuple[Dict[str, Any], Optional[Dict[str, Any]], int]]:
    """先序遍历嵌套树

    Yields:
        (节点, 父节点或 None, 层级)，顶层层级为 0
    """
    for node in tree:
        yield node, _parent, _level
        children = node.get(children_field) or []
        if children:
            yield from iter_tree(children, children_field, node, _level + 1)


def flatten_tree(
    tree: List[Dict[str, Any]],
    children_field: str = "children",
    level_field: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """将嵌套树结构按先序展平为列表

    Args:
        tree: 嵌套的树形结构列表
        children_field: 子节点列表字段名（结果中移除）
        level_field: 指定时写入层级（顶层为 0）

    Returns:
        扁平的节点列表
    """
    result: List[Dict[str, Any]] = []
    for node, _parent, level in iter_tree(tree, children_field):
        node_copy = {k: v for k, v in node.items() if k != children_field}
        if level_field:
            node_copy[level_field] = level
        result.append(node_copy)
    return result


def find_node_in_tree(
    tree: List[Dict[str, Any]],
    target_value: Any,
    field: str = "id",
    children_field: str = "children",
) -> Optional[Dict[str, Any]]:
    """在树中查找字段等于目标值的第一个节点（先序）"""
    for node, _parent, _level in iter_tree(tree, children_field):
        if node.get(field) == target_value:
            return node
    return None


def calculate_tree_depth(
    tree: List[Dict[str, Any]],
    children_field: str = "children",
) -> int:
    """计算嵌套树的层数

    空树为 0，只有顶层节点为 1。
    """
    depth = 0
    for _node, _parent, level in iter_tree(tree, children_field):
        depth = max(depth, level + 1)
    return depth


__all__ = [
    "build_tree_list",
    "iter_tree",
    "flatten_tree",
    "find_node_in_tree",
    "calculate_tree_depth",
]
