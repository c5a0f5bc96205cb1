"""物化路径编解码

路径是从根到父节点的祖先 ID 序列，以 "/" 分隔并首尾带分隔符：

    根节点            []          -> "/"
    父链为 1 -> 4     [1, 4]      -> "/1/4/"

首尾分隔符保证了字符串前缀关系与祖先关系等价："/1/" 是 "/1/4/" 的前缀，
但不是 "/12/" 的前缀。节点 N 的子树前缀为 N.path + "N/"。
"""

import re
from typing import Iterable, List

from qbtree.exceptions import MalformedPathError

SEPARATOR = "/"
ROOT_PATH = "/"

_PATH_PATTERN = re.compile(r"^/(?:[0-9]+/)*$")


def encode(ancestor_ids: Iterable[int]) -> str:
    """将祖先 ID 序列编码为路径字符串

    Raises:
        ValueError: ID 不是非负整数
    """
    parts = []
    for node_id in ancestor_ids:
        if isinstance(node_id, bool) or not isinstance(node_id, int) or node_id < 0:
            raise ValueError(f"路径中的节点ID必须是非负整数: {node_id!r}")
        parts.append(str(node_id))
    if not parts:
        return ROOT_PATH
    return SEPARATOR + SEPARATOR.join(parts) + SEPARATOR


def decode(path: str) -> List[int]:
    """将路径字符串解码为祖先 ID 序列

    Raises:
        MalformedPathError: 路径格式不正确
    """
    if not isinstance(path, str) or not _PATH_PATTERN.match(path):
        raise MalformedPathError(f"节点路径格式错误: {path!r}", path=path)
    return [int(part) for part in path.strip(SEPARATOR).split(SEPARATOR) if part]


def is_prefix_of(candidate_ancestor_path: str, node_path: str) -> bool:
    """candidate_ancestor_path 是否为 node_path 的前缀（含相等）"""
    return node_path.startswith(candidate_ancestor_path)


def child_path(path: str, node_id: int) -> str:
    """节点子节点的路径，同时也是该节点的子树前缀"""
    return f"{path}{node_id}{SEPARATOR}"


def depth_of(path: str) -> int:
    """路径对应的深度（根节点为 0）"""
    return len(decode(path))


__all__ = [
    "SEPARATOR",
    "ROOT_PATH",
    "encode",
    "decode",
    "is_prefix_of",
    "child_path",
    "depth_of",
]
