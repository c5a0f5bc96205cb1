"""异常处理模块

提供分类树异常类、全局异常处理器等功能。

使用示例:
    from qbtree.exceptions import Err, register_exception_handlers

    app = FastAPI()
    register_exception_handlers(app)

    raise Err.not_found(f"节点不存在: {node_id}")
"""

from .exceptions import (
    Err,
    ErrorCode,
    ErrorCodeType,
    TreeException,
    NodeNotFoundError,
    ParentNotFoundError,
    DuplicateCodeError,
    CycleError,
    HasChildrenError,
    ValidationError,
    MalformedPathError,
    ConcurrencyConflictError,
    OperationTimeoutError,
)

from .handlers import (
    register_exception_handlers,
    tree_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    general_exception_handler,
)

__all__ = [
    "Err",
    "ErrorCode",
    "register_exception_handlers",
    "ErrorCodeType",
    "TreeException",
    "NodeNotFoundError",
    "ParentNotFoundError",
    "DuplicateCodeError",
    "CycleError",
    "HasChildrenError",
    "ValidationError",
    "MalformedPathError",
    "ConcurrencyConflictError",
    "OperationTimeoutError",
    "tree_exception_handler",
    "validation_exception_handler",
    "http_exception_handler",
    "general_exception_handler",
]
