"""并发冲突重试

ConcurrencyConflictError 表示事务被存储层因竞争中止，整个工作单元已回滚。
用相同参数重试是安全的：每次尝试都会在新事务中重新读取并校验状态。
其他异常（包括 OperationTimeoutError）不重试，直接抛给调用方。
"""

import time
from functools import wraps
from typing import Callable, Tuple, Type, TypeVar

from qbtree.exceptions import ConcurrencyConflictError
from qbtree.log import get_logger

logger = get_logger()

T = TypeVar('T')


def call_with_retry(
    func: Callable[[], T],
    max_retries: int = 3,
    retry_delay: float = 0.05,
    backoff_multiplier: float = 2.0,
    max_delay: float = 2.0,
    retry_on: Tuple[Type[Exception], ...] = (ConcurrencyConflictError,),
    operation: str = "",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """执行 func，遇到可重试异常时按指数退避重试

    Args:
        func: 无参可调用对象，每次调用都是一次完整的尝试
        max_retries: 最大重试次数（不包括首次尝试）
        retry_delay: 初始重试间隔（秒）
        backoff_multiplier: 退避乘数
        max_delay: 单次延迟上限（秒）
        retry_on: 需要重试的异常类型
        operation: 操作名称，用于日志
        sleep: 延迟函数

    Returns:
        func 的返回值
    """
    current_delay = retry_delay
    label = operation or getattr(func, "__name__", "operation")

    for attempt in range(max_retries + 1):
        try:
            return func()
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(
                    f"{label} 重试 {max_retries} 次后仍失败. "
                    f"异常: {type(e).__name__}: {e}"
                )
                raise

            actual_delay = min(current_delay, max_delay)
            logger.warning(
                f"{label} 执行失败 (尝试 {attempt + 1}/{max_retries + 1}), "
                f"{actual_delay:.2f}s 后重试. "
                f"异常: {type(e).__name__}: {e}"
            )
            if actual_delay > 0:
                sleep(actual_delay)
            current_delay *= backoff_multiplier

    raise RuntimeError("Unexpected state in call_with_retry")


def retry_on_conflict(
    max_retries: int = 3,
    retry_delay: float = 0.05,
    backoff_multiplier: float = 2.0,
    max_delay: float = 2.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """并发冲突重试装饰器

    使用示例:
        @retry_on_conflict(max_retries=5)
        def assign_category(question_id, node_id):
            engine.move_node(node_id, new_parent_id=...)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return call_with_retry(
                lambda: func(*args, **kwargs),
                max_retries=max_retries,
                retry_delay=retry_delay,
                backoff_multiplier=backoff_multiplier,
                max_delay=max_delay,
                operation=func.__name__,
            )
        return wrapper
    return decorator


__all__ = ["call_with_retry", "retry_on_conflict"]
