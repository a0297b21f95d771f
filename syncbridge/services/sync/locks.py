"""
 * @file: locks.py
 * @description: Менеджер аренд (lease) на пару (ключ ресурса, операция) поверх координационного хранилища
 * @dependencies: CoordinationStore
 * @created: 2025-08-04
"""
import logging
import os
import socket
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from syncbridge.core.config import sync_settings
from syncbridge.services.coordination.store import CoordinationStore
from syncbridge.services.sync.exceptions import CoordinationStoreError
from syncbridge.utils.keys import normalize_resource_key

logger = logging.getLogger("sync.locks")


def make_owner_token() -> str:
    """Уникальный идентификатор владельца аренды: хост, pid процесса и случайная часть."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex}"


class LockManager:
    """
    Короткоживущие аренды на пару (ключ ресурса, операция).

    acquire - единственная атомарная операция set-if-absent с TTL. Одновременно
    может существовать не более одной живой аренды на пару; аренда с истёкшим TTL
    считается отсутствующей, даже если её не освобождали.
    """

    def __init__(
        self,
        store: CoordinationStore,
        default_ttl: Optional[int] = None,
        key_prefix: Optional[str] = None,
        owner_token: Optional[str] = None,
    ):
        self.store = store
        self.default_ttl = default_ttl or sync_settings.lock_ttl_seconds
        self.key_prefix = key_prefix or sync_settings.lock_key_prefix
        self.owner_token = owner_token or make_owner_token()
        # lease key -> значение, записанное этим менеджером
        self._held: Dict[str, str] = {}

    def lease_key(self, resource_key: str, operation: str) -> str:
        return f"{self.key_prefix}:{normalize_resource_key(resource_key)}:{operation}"

    def acquire(self, resource_key: str, operation: str, ttl: Optional[int] = None) -> bool:
        """
        Пытается взять аренду. Возвращает True, только если аренду создал этот вызов.

        Raises:
            CoordinationStoreError: хранилище недоступно (это не конкуренция, а сбой инфраструктуры)
        """
        ttl = ttl or self.default_ttl
        if ttl <= 0:
            raise ValueError("TTL аренды должен быть положительным")
        key = self.lease_key(resource_key, operation)
        value = f"{self.owner_token}:{uuid.uuid4().hex}"

        acquired = self.store.set_if_absent(key, value, ttl)
        if acquired:
            self._held[key] = value
            logger.debug(f"Аренда {key} получена (ttl={ttl}s)")
        else:
            logger.info(f"Аренда {key} уже занята другим прогоном")
        return acquired

    def release(self, resource_key: str, operation: str) -> None:
        """
        Освобождает аренду, взятую этим менеджером. Best-effort: ошибки хранилища
        только логируются, аренда в любом случае истечёт по TTL.
        """
        key = self.lease_key(resource_key, operation)
        value = self._held.pop(key, None)
        if value is None:
            logger.debug(f"Аренда {key} не принадлежит этому менеджеру, освобождать нечего")
            return
        try:
            if not self.store.compare_and_delete(key, value):
                logger.warning(f"Аренда {key} истекла до освобождения или перехвачена другим владельцем")
        except CoordinationStoreError as e:
            logger.error(f"Не удалось освободить аренду {key}, она истечёт по TTL: {e}")
        except Exception as e:
            logger.error(f"Неожиданная ошибка при освобождении аренды {key}: {e}")

    def is_held(self, resource_key: str, operation: str) -> bool:
        """
        Диагностическая проверка наличия живой аренды (кем угодно).
        Не заменяет acquire: между проверкой и действием состояние может измениться.
        """
        key = self.lease_key(resource_key, operation)
        try:
            return self.store.exists(key)
        except CoordinationStoreError as e:
            logger.error(f"Не удалось проверить аренду {key}: {e}")
            return False

    @contextmanager
    def lease(self, resource_key: str, operation: str, ttl: Optional[int] = None) -> Iterator[bool]:
        """
        Контекстный менеджер: отдаёт признак получения аренды и освобождает её на выходе.

        Example:
            >>> with lock_manager.lease("SKU-1", "quantity") as acquired:
            ...     if acquired:
            ...         sync()
        """
        acquired = self.acquire(resource_key, operation, ttl)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(resource_key, operation)
