"""
 * @file: retry.py
 * @description: Повторы с экспоненциальной задержкой и jitter для всех удалённых вызовов; у клиентов площадок своих циклов повторов нет
 * @dependencies: exceptions.is_transient_error, sync_settings
 * @created: 2025-08-04
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, TypeVar

from syncbridge.core.config import sync_settings
from syncbridge.services.sync.exceptions import is_transient_error

T = TypeVar("T")

logger = logging.getLogger("sync.batch")


@dataclass
class ExponentialBackoff:
    """Exponential backoff with non-negative jitter.

    delay(attempt) = min(floor(attempt) * (1 + U(0, jitter)), max_delay),
    floor(attempt) = min(base_delay * multiplier ** attempt, max_delay)

    Задержка никогда не меньше floor и никогда не больше max_delay.

    Attributes:
        max_retries: Maximum number of retries after the first attempt
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Jitter as a fraction of the floor delay (0 disables)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.25
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, max_retries: Optional[int] = None) -> "ExponentialBackoff":
        return cls(
            max_retries=sync_settings.max_retries if max_retries is None else max_retries,
            base_delay=sync_settings.retry_base_delay_seconds,
            max_delay=sync_settings.retry_max_delay_seconds,
            jitter=sync_settings.retry_jitter,
        )

    def floor_delay(self, attempt: int) -> float:
        """Delay without jitter for zero-based retry number."""
        return min(self.base_delay * (self.multiplier ** attempt), self.max_delay)

    def next_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        delay = self.floor_delay(attempt)
        if self.jitter > 0:
            delay += delay * self.rng.uniform(0, self.jitter)
        # Сервер сам сказал, сколько ждать
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries


@dataclass
class RetryStats:
    """Сколько попыток сделано и сколько ждали между ними."""
    attempts: int = 0
    delays: List[float] = field(default_factory=list)
    last_error: Optional[BaseException] = None

    @property
    def total_delay(self) -> float:
        return sum(self.delays)


def retry_call(
    func: Callable[[], T],
    policy: ExponentialBackoff,
    classifier: Callable[[BaseException], bool] = is_transient_error,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    stats: Optional[RetryStats] = None,
    description: str = "remote call",
) -> T:
    """
    Вызывает func, повторяя при временных ошибках до policy.max_retries раз.

    Постоянные ошибки пробрасываются сразу, временные - после исчерпания попыток.
    """
    stats = stats if stats is not None else RetryStats()
    retry = 0
    while True:
        stats.attempts += 1
        try:
            return func()
        except Exception as e:
            stats.last_error = e
            if not classifier(e) or not policy.should_retry(retry):
                raise
            delay = policy.next_delay(retry, e)
            stats.delays.append(delay)
            logger.warning(f"{description}: временная ошибка ({e}), повтор {retry + 1}/{policy.max_retries} через {delay:.2f}s")
            if on_retry is not None:
                on_retry(retry + 1, e, delay)
            sleep(delay)
            retry += 1
