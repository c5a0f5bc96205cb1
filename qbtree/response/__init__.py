"""统一响应模块"""

from .base_response import (
    BaseResponse,
    ErrorResponse,
    ItemResponse,
    OkResponse,
    Resp,
    ResponseStatus,
)

__all__ = [
    "BaseResponse",
    "ErrorResponse",
    "ItemResponse",
    "OkResponse",
    "Resp",
    "ResponseStatus",
]
