"""分类树导入导出格式

导出格式（JSON 兼容）:
    {
        "version": "1.0",
        "exported_at": "2026-01-01T00:00:00",
        "nodes": [
            {"code": "MATH", "name": "数学", "node_type": "SUBJECT", "description": null,
             "order": 0, "children": [...]}
        ]
    }

导入接受同样的结构，也接受直接传入节点列表。
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from qbtree.exceptions import ValidationError
from qbtree.orm.models import TreeNodeRecord, utcnow
from .schemas import NodeTypeInput, format_validation_errors
from .tree_utils import build_tree_list

EXPORT_FORMAT_VERSION = "1.0"

_EXPORT_FIELDS = ("code", "name", "node_type", "description", "order")


class ImportNode(BaseModel):
    """导入节点"""
    code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=200)
    node_type: NodeTypeInput
    description: Optional[str] = Field(default=None, max_length=500)
    children: List["ImportNode"] = Field(default_factory=list)


class ImportPayload(BaseModel):
    version: str = EXPORT_FORMAT_VERSION
    nodes: List[ImportNode] = Field(default_factory=list)


def parse_import_data(data: Union[Dict[str, Any], List[Dict[str, Any]]]) -> List[ImportNode]:
    """校验导入数据并返回顶层节点列表

    Raises:
        ValidationError: 结构不合法或版本不支持
    """
    if isinstance(data, list):
        data = {"nodes": data}
    try:
        payload = ImportPayload.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            "导入数据格式错误",
            details=format_validation_errors(e),
        ) from None
    if payload.version != EXPORT_FORMAT_VERSION:
        raise ValidationError(f"不支持的导入格式版本: {payload.version}")
    return payload.nodes


def build_export_payload(records: List[TreeNodeRecord]) -> Dict[str, Any]:
    """将节点记录构建为导出结构

    records 中父节点不在列表内的节点作为顶层节点输出。
    """
    flat = [
        {
            "id": record.id,
            "parent_id": record.parent_id,
            "code": record.code,
            "name": record.name,
            "node_type": record.node_type,
            "description": record.description,
            "order": record.sort_order,
        }
        for record in records
    ]
    tree = build_tree_list(flat)
    return {
        "version": EXPORT_FORMAT_VERSION,
        "exported_at": utcnow().isoformat(),
        "nodes": [_strip_ids(node) for node in tree],
    }


def _strip_ids(node: Dict[str, Any]) -> Dict[str, Any]:
    result = {field: node[field] for field in _EXPORT_FIELDS}
    result["children"] = [_strip_ids(child) for child in node["children"]]
    return result


__all__ = [
    "EXPORT_FORMAT_VERSION",
    "ImportNode",
    "ImportPayload",
    "parse_import_data",
    "build_export_payload",
]
