"""
 * @file: exceptions.py
 * @description: Иерархия ошибок ядра синхронизации и классификатор временных/постоянных сбоев
 * @dependencies: requests
 * @created: 2025-08-04
"""
from typing import Optional

import requests


class SyncError(Exception):
    """Базовое исключение ядра синхронизации."""

    def __init__(self, message: str = "Ошибка синхронизации"):
        self.message = message
        super().__init__(self.message)


class InvalidResourceKeyError(SyncError, ValueError):
    """Пустой или некорректный ключ ресурса."""


class CoordinationStoreError(SyncError):
    """Координационное хранилище (Redis) недоступно. Фатально для прогона."""


class LedgerUnavailableError(SyncError):
    """Журнал транзакций недоступен. Фатально для прогона."""


class RunTimeoutError(SyncError, TimeoutError):
    """Прогон не уложился в отведённое время."""


class RemoteCallTimeoutError(SyncError, TimeoutError):
    """Удалённый вызов не вернулся за отведённое время. Считается временной ошибкой."""


class CircuitOpenError(SyncError):
    """Circuit breaker открыт, вызов отклонён без обращения к площадке."""

    def __init__(self, message: str = "Circuit breaker is open"):
        super().__init__(message)


class PlatformError(SyncError):
    """
    Ошибка обращения к площадке.

    Args:
        message: Текст ошибки
        platform: Идентификатор площадки
        status_code: HTTP статус ответа, если был
    """

    def __init__(self, message: str, platform: Optional[str] = None, status_code: Optional[int] = None):
        self.platform = platform
        self.status_code = status_code
        super().__init__(message)


class PlatformNotFoundError(PlatformError):
    """Ресурс не найден на площадке. Не повторяется."""


class PlatformTransientError(PlatformError):
    """Временный сбой: rate limit, 5xx, сетевая ошибка. Повторяется."""

    def __init__(self, message: str, platform: Optional[str] = None, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, platform=platform, status_code=status_code)


class PlatformPermanentError(PlatformError):
    """Постоянный сбой: ошибка валидации, неверное сопоставление. Не повторяется."""


TRANSIENT_STATUS_CODES = frozenset({429})


def is_transient_status(status_code: Optional[int]) -> bool:
    """HTTP статус, при котором запрос имеет смысл повторить."""
    if status_code is None:
        return False
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


def is_transient_error(error: BaseException) -> bool:
    """
    Единый классификатор ошибок для retry и circuit breaker.

    Временными считаются rate limit, 5xx, таймауты и обрывы соединения.
    Всё остальное (валидация, "не найдено", ошибки программы) постоянно.
    """
    if isinstance(error, (PlatformTransientError, CircuitOpenError)):
        return True
    if isinstance(error, (PlatformNotFoundError, PlatformPermanentError)):
        return False
    if isinstance(error, RunTimeoutError):
        # Дедлайн прогона не лечится повтором
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(error, requests.HTTPError):
        response = error.response
        return response is not None and is_transient_status(response.status_code)
    return False
