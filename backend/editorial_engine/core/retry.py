from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from editorial_engine.core.errors import ConcurrentModification

logger = logging.getLogger("editorial_engine.retry")

T = TypeVar("T")


def retry_on_conflict(fn: Callable[..., T], *args: Any, attempts: int = 3, **kwargs: Any) -> T:
    """
    乐观锁冲突时重新读取并重试（有限次数）。

    中文注释:
    - fn 每次调用都必须自己重新读取最新行（不要在外层缓存版本号）。
    - 超过次数后原样抛出 ConcurrentModification，交给调用方决定。
    """
    retrying = Retrying(
        retry=retry_if_exception_type(ConcurrentModification),
        stop=stop_after_attempt(max(1, int(attempts))),
        wait=wait_random(0, 0.05),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True,
    )
    return retrying(fn, *args, **kwargs)
