"""分类树异常类定义

定义分类树引擎使用的异常类体系。
所有异常都携带 HTTP 状态码，可以直接由 FastAPI 异常处理器转换为统一响应。
"""

import copy
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from fastapi import status


class ErrorCode(str, Enum):
    """错误代码枚举

    继承自 str，可以直接作为字符串使用。

    使用示例:
        from qbtree.exceptions import ErrorCode, TreeException

        try:
            engine.move_node(node_id, new_parent_id=target_id)
        except TreeException as e:
            if e.code == ErrorCode.CYCLE_DETECTED:
                ...
    """

    # ==================== 通用错误 ====================
    TREE_ERROR = "TREE_ERROR"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

    # ==================== 资源相关 (404) ====================
    NODE_NOT_FOUND = "NODE_NOT_FOUND"
    PARENT_NOT_FOUND = "PARENT_NOT_FOUND"

    # ==================== 冲突相关 (409) ====================
    DUPLICATE_CODE = "DUPLICATE_CODE"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    HAS_CHILDREN = "HAS_CHILDREN"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"

    # ==================== 验证相关 (422) ====================
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # ==================== 数据损坏 (500) ====================
    MALFORMED_PATH = "MALFORMED_PATH"

    # ==================== 超时 (504) ====================
    OPERATION_TIMEOUT = "OPERATION_TIMEOUT"


# 类型别名，支持枚举和字符串
ErrorCodeType = Union[str, ErrorCode]


class TreeException(Exception):
    """分类树异常基类

    属性:
        message: 错误消息（面向用户）
        code: 错误代码（用于程序判断）
        status_code: HTTP 状态码
        details: 详细错误信息列表
        extra: 额外的上下文信息

    使用示例:
        raise TreeException(
            "分类树操作失败",
            details=["节点 12 的路径无法解析"],
            node_id=12,
        )
    """

    default_message = "分类树操作失败"
    default_code: ErrorCodeType = ErrorCode.TREE_ERROR
    default_status = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[ErrorCodeType] = None,
        status_code: Optional[int] = None,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.status_code = status_code or self.default_status
        self.details = details or []
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式"""
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "details": copy.deepcopy(self.details),
            "extra": copy.deepcopy(self.extra)
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"status_code={self.status_code})"
        )


class NodeNotFoundError(TreeException):
    """节点不存在（或已被软删除）

    使用示例:
        raise NodeNotFoundError(f"节点不存在: {node_id}", node_id=node_id)
    """
    default_message = "节点不存在"
    default_code = ErrorCode.NODE_NOT_FOUND
    default_status = status.HTTP_404_NOT_FOUND


class ParentNotFoundError(TreeException):
    """指定的父节点不存在或不可用"""
    default_message = "父节点不存在"
    default_code = ErrorCode.PARENT_NOT_FOUND
    default_status = status.HTTP_404_NOT_FOUND


class DuplicateCodeError(TreeException):
    """节点编码在整棵树内重复"""
    default_message = "节点编码已存在"
    default_code = ErrorCode.DUPLICATE_CODE
    default_status = status.HTTP_409_CONFLICT


class CycleError(TreeException):
    """移动会导致节点成为自己的祖先"""
    default_message = "不能将节点移动到自身或其子孙节点下"
    default_code = ErrorCode.CYCLE_DETECTED
    default_status = status.HTTP_409_CONFLICT


class HasChildrenError(TreeException):
    """节点存在未删除的子节点，且未启用级联删除"""
    default_message = "节点存在子节点，不能删除"
    default_code = ErrorCode.HAS_CHILDREN
    default_status = status.HTTP_409_CONFLICT


class ValidationError(TreeException):
    """参数校验失败

    包括：名称/编码为空、排序位置越界、深度超限、节点类型不允许子节点、
    重排的 ID 集合与当前兄弟集合不一致等。
    """
    default_message = "数据验证失败"
    default_code = ErrorCode.VALIDATION_ERROR
    default_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class MalformedPathError(TreeException):
    """物化路径格式错误，通常表示存储数据已损坏"""
    default_message = "节点路径格式错误"
    default_code = ErrorCode.MALFORMED_PATH
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR


class ConcurrencyConflictError(TreeException):
    """事务因并发竞争被存储层中止

    相同参数重试是安全的：每次重试都会重新校验当前状态。
    """
    default_message = "并发冲突，请稍后重试"
    default_code = ErrorCode.CONCURRENCY_CONFLICT
    default_status = status.HTTP_409_CONFLICT
    retryable = True


class OperationTimeoutError(TreeException):
    """操作超过调用方指定的时限，事务已回滚"""
    default_message = "操作超时，已回滚"
    default_code = ErrorCode.OPERATION_TIMEOUT
    default_status = status.HTTP_504_GATEWAY_TIMEOUT


class Err:
    """异常快捷创建类

    使用示例:
        from qbtree.exceptions import Err

        raise Err.not_found(f"节点不存在: {node_id}", node_id=node_id)
        raise Err.invalid("排序位置越界", details=[f"order={order}, 允许范围 0..{n}"])
        raise Err.duplicate(f"节点编码已存在: {code}", code_value=code)
    """

    @staticmethod
    def not_found(message: str = "节点不存在", **kwargs) -> NodeNotFoundError:
        """节点不存在 (404)"""
        return NodeNotFoundError(message, **kwargs)

    @staticmethod
    def parent_not_found(message: str = "父节点不存在", **kwargs) -> ParentNotFoundError:
        """父节点不存在 (404)"""
        return ParentNotFoundError(message, **kwargs)

    @staticmethod
    def duplicate(message: str = "节点编码已存在", **kwargs) -> DuplicateCodeError:
        """编码重复 (409)"""
        return DuplicateCodeError(message, **kwargs)

    @staticmethod
    def cycle(message: str = "不能将节点移动到自身或其子孙节点下", **kwargs) -> CycleError:
        """循环引用 (409)"""
        return CycleError(message, **kwargs)

    @staticmethod
    def has_children(message: str = "节点存在子节点，不能删除", **kwargs) -> HasChildrenError:
        """存在子节点 (409)"""
        return HasChildrenError(message, **kwargs)

    @staticmethod
    def invalid(message: str = "数据验证失败", **kwargs) -> ValidationError:
        """数据验证失败 (422)"""
        return ValidationError(message, **kwargs)

    @staticmethod
    def malformed_path(message: str = "节点路径格式错误", **kwargs) -> MalformedPathError:
        """路径损坏 (500)"""
        return MalformedPathError(message, **kwargs)

    @staticmethod
    def conflict(message: str = "并发冲突，请稍后重试", **kwargs) -> ConcurrencyConflictError:
        """并发冲突 (409，可重试)"""
        return ConcurrencyConflictError(message, **kwargs)

    @staticmethod
    def timeout(message: str = "操作超时，已回滚", **kwargs) -> OperationTimeoutError:
        """操作超时 (504)"""
        return OperationTimeoutError(message, **kwargs)
