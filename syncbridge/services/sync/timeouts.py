"""
 * @file: timeouts.py
 * @description: Явные таймауты удалённых вызовов и дедлайн прогона: зависший вызов не подвешивает прогон
 * @dependencies: concurrent.futures
 * @created: 2025-08-04
"""

import concurrent.futures
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from syncbridge.services.sync.exceptions import RemoteCallTimeoutError, RunTimeoutError

T = TypeVar("T")


@dataclass(frozen=True)
class Deadline:
    """Момент (по монотонным часам), к которому прогон должен завершиться."""

    expires_at: float
    clock: Callable[[], float] = time.monotonic

    @classmethod
    def after(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(expires_at=clock() + seconds, clock=clock)

    def remaining(self) -> float:
        return self.expires_at - self.clock()

    def expired(self) -> bool:
        return self.remaining() <= 0

    def bound(self, timeout: float) -> float:
        """Таймаут вызова, не выходящий за дедлайн прогона."""
        remaining = self.remaining()
        if remaining <= 0:
            raise RunTimeoutError("Время прогона истекло")
        return min(timeout, remaining)

    def check(self, stage: str = "") -> None:
        if self.expired():
            raise RunTimeoutError(f"Время прогона истекло{': ' + stage if stage else ''}")


def call_with_timeout(func: Callable[[], T], timeout: Optional[float], description: str = "remote call") -> T:
    """
    Выполняет func в отдельном потоке и ждёт не дольше timeout секунд.

    Поток зависшего вызова нельзя прервать: он доработает в фоне, но вызывающий
    получит RemoteCallTimeoutError сразу по истечении таймаута.
    """
    if timeout is None:
        return func()
    if timeout <= 0:
        raise RemoteCallTimeoutError(f"{description}: нет времени на вызов")

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="remote-call")
    future = executor.submit(func)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        if future.done():
            # TimeoutError поднял сам func
            raise
        raise RemoteCallTimeoutError(f"{description}: нет ответа за {timeout:.1f}s") from None
    finally:
        executor.shutdown(wait=False)
