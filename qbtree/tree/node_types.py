"""节点类型与能力表

节点类型是封闭枚举，类型相关的规则（是否允许子节点、允许出现的最大深度）
统一通过 NODE_TYPE_CAPABILITIES 查询。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

from qbtree.exceptions import ValidationError


class NodeType(str, Enum):
    """题库分类节点类型"""
    SUBJECT = "SUBJECT"        # 科目
    CHAPTER = "CHAPTER"        # 章
    TOPIC = "TOPIC"            # 知识点
    SUBTOPIC = "SUBTOPIC"      # 子知识点
    OBJECTIVE = "OBJECTIVE"    # 考查目标（叶子）


@dataclass(frozen=True)
class NodeTypeCapability:
    """节点类型能力

    Attributes:
        label: 显示名称
        allows_children: 是否允许挂载子节点
        max_depth: 该类型允许出现的最大深度，None 表示只受全局 max_depth 限制
    """
    label: str
    allows_children: bool = True
    max_depth: Optional[int] = None


NODE_TYPE_CAPABILITIES: Dict[NodeType, NodeTypeCapability] = {
    NodeType.SUBJECT: NodeTypeCapability(label="科目", allows_children=True, max_depth=0),
    NodeType.CHAPTER: NodeTypeCapability(label="章节", allows_children=True),
    NodeType.TOPIC: NodeTypeCapability(label="知识点", allows_children=True),
    NodeType.SUBTOPIC: NodeTypeCapability(label="子知识点", allows_children=True),
    NodeType.OBJECTIVE: NodeTypeCapability(label="考查目标", allows_children=False),
}


def parse_node_type(value: Union[str, NodeType]) -> NodeType:
    """解析节点类型（大小写不敏感）

    Raises:
        ValidationError: 未知的节点类型
    """
    if isinstance(value, NodeType):
        return value
    try:
        return NodeType(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(t.value for t in NodeType)
        raise ValidationError(
            f"未知的节点类型: {value!r}",
            details=[f"允许的类型: {allowed}"],
        ) from None


def get_capability(node_type: Union[str, NodeType]) -> NodeTypeCapability:
    return NODE_TYPE_CAPABILITIES[parse_node_type(node_type)]


def depth_limit_for(node_type: Union[str, NodeType], global_max_depth: int) -> int:
    """节点类型在全局限制下的有效最大深度"""
    capability = get_capability(node_type)
    if capability.max_depth is None:
        return global_max_depth
    return min(capability.max_depth, global_max_depth)


__all__ = [
    "NodeType",
    "NodeTypeCapability",
    "NODE_TYPE_CAPABILITIES",
    "parse_node_type",
    "get_capability",
    "depth_limit_for",
]
