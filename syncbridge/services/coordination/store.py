"""
 * @file: store.py
 * @description: Координационное хранилище для аренд (lease): атомарный set-if-absent с TTL
 * @dependencies: redis, threading, time
 * @created: 2025-08-04
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import redis

from syncbridge.services.sync.exceptions import CoordinationStoreError

logger = logging.getLogger("sync.locks")


class CoordinationStore(ABC):
    """
    Внешнее key-value хранилище, используемое только для аренд.
    Никакой бизнес-логики. set_if_absent обязан быть атомарным.
    """

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Устанавливает ключ с TTL, только если его нет. True если ключ создан этим вызовом."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Безусловно удаляет ключ."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Есть ли живой (не истёкший) ключ."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Текущее значение ключа или None."""

    @abstractmethod
    def compare_and_delete(self, key: str, value: str) -> bool:
        """Удаляет ключ, только если его значение совпадает с value. Атомарно."""


class RedisCoordinationStore(CoordinationStore):
    """
    Реализация на Redis: SET NX EX и Lua-скрипт для удаления "только своего" ключа.
    Любая ошибка Redis превращается в CoordinationStoreError.
    """

    _COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

    def __init__(self, client: redis.Redis):
        self.client = client
        self._compare_and_delete = client.register_script(self._COMPARE_AND_DELETE)

    @classmethod
    def from_url(cls, redis_url: str, socket_timeout: float = 5.0) -> "RedisCoordinationStore":
        client = redis.Redis.from_url(
            redis_url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )
        return cls(client)

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            return bool(self.client.set(key, value, nx=True, ex=int(ttl_seconds)))
        except redis.RedisError as e:
            raise CoordinationStoreError(f"Redis недоступен при установке {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            raise CoordinationStoreError(f"Redis недоступен при удалении {key}: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            return self.client.exists(key) == 1
        except redis.RedisError as e:
            raise CoordinationStoreError(f"Redis недоступен при проверке {key}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.client.get(key)
        except redis.RedisError as e:
            raise CoordinationStoreError(f"Redis недоступен при чтении {key}: {e}") from e
        if isinstance(value, bytes):
            return value.decode()
        return value

    def compare_and_delete(self, key: str, value: str) -> bool:
        try:
            return bool(self._compare_and_delete(keys=[key], args=[value]))
        except redis.RedisError as e:
            raise CoordinationStoreError(f"Redis недоступен при освобождении {key}: {e}") from e


class InMemoryCoordinationStore(CoordinationStore):
    """
    Потокобезопасное хранилище в памяти процесса с истечением по монотонным часам.
    Подходит для одного процесса и для тестов; между процессами не работает.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live_value(self, key: str) -> Optional[str]:
        record = self._data.get(key)
        if record is None:
            return None
        value, expires_at = record
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl_seconds)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_value(key) is not None

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    def compare_and_delete(self, key: str, value: str) -> bool:
        with self._lock:
            if self._live_value(key) != value:
                return False
            del self._data[key]
            return True
