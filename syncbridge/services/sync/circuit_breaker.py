"""
 * @file: circuit_breaker.py
 * @description: Circuit breaker для пути записи на площадку: fail-fast после серии сбоев
 * @dependencies: threading, time
 * @created: 2025-08-05

Состояния:
    CLOSED: обычная работа, вызовы проходят
    OPEN: вызовы отклоняются сразу, без обращения к площадке
    HALF_OPEN: после паузы пропускается один пробный вызов
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from syncbridge.core.config import sync_settings
from syncbridge.services.sync.exceptions import CircuitOpenError, is_transient_error

T = TypeVar("T")

logger = logging.getLogger("sync.batch")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    """Статистика для мониторинга."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0


@dataclass
class CircuitBreaker:
    """
    Circuit breaker с порогом подряд идущих сбоев.

    Attributes:
        name: Имя цепи (обычно площадка)
        failure_threshold: Сколько сбоев подряд открывают цепь
        recovery_timeout: Пауза в секундах перед пробным вызовом
        clock: Источник монотонного времени
    """

    name: str = "default"
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _consecutive_failures: int = field(default=0, init=False)
    _opened_at: Optional[float] = field(default=None, init=False)
    _trial_in_flight: bool = field(default=False, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False)
    stats: CircuitStats = field(default_factory=CircuitStats, init=False)

    @classmethod
    def from_settings(cls, name: str) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=sync_settings.circuit_failure_threshold,
            recovery_timeout=sync_settings.circuit_recovery_timeout_seconds,
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_cooldown()
            return self._state

    def _check_cooldown(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self.clock() - self._opened_at >= self.recovery_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self.stats.state_changes += 1
        if new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._opened_at = None
        elif new_state == CircuitState.OPEN:
            self._opened_at = self.clock()
        self._trial_in_flight = False
        logger.info(f"Circuit '{self.name}': {old_state.value} -> {new_state.value}")

    def allow_request(self) -> bool:
        """Можно ли выполнить вызов сейчас. В HALF_OPEN пропускается ровно один."""
        with self._lock:
            self._check_cooldown()
            self.stats.total_requests += 1
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            self.stats.rejected_requests += 1
            return False

    def record_success(self) -> None:
        with self._lock:
            self.stats.successful_requests += 1
            self._consecutive_failures = 0
            if self._state != CircuitState.CLOSED:
                self._transition_to(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self.stats.failed_requests += 1
            self._consecutive_failures += 1
            if self._state == CircuitState.HALF_OPEN:
                # Пробный вызов не прошёл
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._consecutive_failures >= self.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        with self._lock:
            self._transition_to(CircuitState.CLOSED)

    def call(
        self,
        func: Callable[..., T],
        *args: Any,
        failure_classifier: Callable[[BaseException], bool] = is_transient_error,
        **kwargs: Any,
    ) -> T:
        """
        Выполняет вызов через circuit breaker.

        Сбоем цепи считаются только временные ошибки (rate limit, 5xx, сеть):
        ошибка валидации отдельного товара не говорит о недоступности площадки.

        Raises:
            CircuitOpenError: цепь открыта, вызов не выполнялся
        """
        if not self.allow_request():
            raise CircuitOpenError(f"Circuit '{self.name}' открыт, вызов отклонён")
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if failure_classifier(e):
                self.record_failure()
            else:
                self.record_success()
            raise
        self.record_success()
        return result
