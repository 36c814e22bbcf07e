"""
docaudit.retry - I/O 有限次重试与指数退避

只对连接层面的暂时性错误重试；查询语法、权限等错误立即上抛。
以 keyset 分页取数时，重试同一页不会改变结果。
"""

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

import psycopg

from .config import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 视为暂时性的错误类型
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (psycopg.OperationalError,)


def calculate_backoff_with_jitter(
    retry_count: int, base_seconds: float, max_seconds: float, jitter_factor: float
) -> float:
    """
    计算指数退避 + jitter

    公式：backoff = min(base * 2^retry, max) * (1 + random(-jitter, +jitter))

    Args:
        retry_count: 当前重试次数（从 0 开始）
        base_seconds: 基础退避秒数
        max_seconds: 最大退避秒数
        jitter_factor: 抖动因子

    Returns:
        退避秒数
    """
    backoff = min(base_seconds * (2**retry_count), max_seconds)
    jitter = random.uniform(-jitter_factor, jitter_factor)
    return max(0.0, backoff * (1 + jitter))


def call_with_retry(
    fn: Callable[[], T],
    settings: RetrySettings,
    *,
    description: str = "",
    before_retry: Optional[Callable[[], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    执行 fn，遇到暂时性错误时按退避策略重试

    Args:
        fn: 无参调用
        settings: 重试参数
        description: 日志中的操作描述
        before_retry: 每次重试前的回调（如重建连接）
        sleep: 等待函数（测试可替换）

    Returns:
        fn 的返回值

    Raises:
        最后一次尝试的异常
    """
    attempt = 0
    while True:
        try:
            return fn()
        except TRANSIENT_ERRORS as e:
            attempt += 1
            if attempt >= settings.max_attempts:
                logger.error("%s 失败，已重试 %d 次: %s", description or "I/O", attempt - 1, e)
                raise
            delay = calculate_backoff_with_jitter(
                attempt - 1, settings.base_seconds, settings.max_seconds, settings.jitter
            )
            logger.warning(
                "%s 暂时性失败 (第 %d/%d 次): %s，%.1f 秒后重试",
                description or "I/O",
                attempt,
                settings.max_attempts,
                e,
                delay,
            )
            sleep(delay)
            if before_retry is not None:
                before_retry()
