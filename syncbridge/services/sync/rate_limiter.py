"""
 * @file: rate_limiter.py
 * @description: Общий rate limiter (Token Bucket) для запросов к площадке из нескольких исполнителей
 * @dependencies: threading, time
 * @created: 2025-08-05
"""

import threading
import time
from typing import Callable, Optional


class TokenBucketRateLimiter:
    """
    Rate limiter (Token Bucket).

    Один экземпляр разделяется всеми исполнителями, работающими против одного
    лимита площадки: каждый пакет перед отправкой забирает токен.
    """
    def __init__(self, requests_per_minute: int = 60, capacity: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute должен быть положительным")
        self.capacity = capacity or requests_per_minute
        self.tokens = float(self.capacity)
        self.refill_rate = requests_per_minute / 60  # токенов в секунду
        self.clock = clock
        self.sleep = sleep
        self.last_refill = clock()
        self.lock = threading.Lock()

    def acquire(self, tokens: int = 1, timeout: Optional[float] = None) -> bool:
        """
        Получить токен(ы) для запроса. Блокирует поток до появления токенов или до timeout.
        Возвращает True, если токены получены, иначе False.
        """
        deadline = self.clock() + timeout if timeout is not None else None
        while True:
            with self.lock:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return True
                wait = (tokens - self.tokens) / self.refill_rate
            if deadline is not None:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            self.sleep(min(wait, 0.5))

    def _refill(self):
        now = self.clock()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_rate)
            self.last_refill = now
