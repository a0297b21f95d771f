"""
 * @file: base.py
 * @description: Интерфейсы чтения/записи площадок и тонкий HTTP клиент на requests
 * @dependencies: requests
 * @created: 2025-08-05
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from syncbridge.core.config import sync_settings
from syncbridge.schemas.sync import BatchItem, Observation, SyncOperation
from syncbridge.services.sync.exceptions import (
    PlatformError,
    PlatformNotFoundError,
    PlatformPermanentError,
    PlatformTransientError,
    is_transient_error,
    is_transient_status,
)
from syncbridge.utils.keys import normalize_resource_key

logger = logging.getLogger("platforms")


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class WriteOutcome:
    """Результат записи одного значения на площадку."""
    status: OutcomeStatus
    message: Optional[str] = None

    @classmethod
    def success(cls) -> "WriteOutcome":
        return cls(OutcomeStatus.SUCCESS)

    @classmethod
    def transient(cls, message: str) -> "WriteOutcome":
        return cls(OutcomeStatus.TRANSIENT, message)

    @classmethod
    def permanent(cls, message: str) -> "WriteOutcome":
        return cls(OutcomeStatus.PERMANENT, message)

    @classmethod
    def from_error(cls, error: BaseException) -> "WriteOutcome":
        if is_transient_error(error):
            return cls.transient(str(error))
        return cls.permanent(str(error))

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


class PlatformReader(ABC):
    """Чтение текущих значений с площадки. Ошибки: PlatformNotFoundError или PlatformTransientError."""

    name: str

    @abstractmethod
    def get_quantity(self, resource_key: str) -> Observation:
        ...

    @abstractmethod
    def get_price(self, resource_key: str) -> Observation:
        ...

    def read(self, resource_key: str, operation: SyncOperation) -> Observation:
        if operation == SyncOperation.QUANTITY:
            return self.get_quantity(resource_key)
        return self.get_price(resource_key)


class PlatformWriter(ABC):
    """Запись значений на площадку. Используется только через BatchExecutor."""

    name: str

    @abstractmethod
    def apply_quantity(self, resource_key: str, value: float) -> WriteOutcome:
        ...

    @abstractmethod
    def apply_price(self, resource_key: str, value: float) -> WriteOutcome:
        ...

    def resolve_target(self, resource_key: str) -> Optional[str]:
        """
        Идентификатор ресурса на площадке или None, если ресурс не сопоставлен.
        По умолчанию ключ ресурса и есть идентификатор.
        """
        return resource_key

    def apply_batch(self, items: List[BatchItem]) -> Dict[str, WriteOutcome]:
        """
        Записывает пакет. По умолчанию - поэлементно; площадки с пакетным API
        переопределяют метод. Исключение из метода означает сбой всего пакета.
        """
        outcomes: Dict[str, WriteOutcome] = {}
        for item in items:
            try:
                if item.operation == SyncOperation.QUANTITY:
                    outcomes[item.resource_key] = self.apply_quantity(item.resource_key, item.value)
                else:
                    outcomes[item.resource_key] = self.apply_price(item.resource_key, item.value)
            except PlatformError as e:
                outcomes[item.resource_key] = WriteOutcome.from_error(e)
        return outcomes


class HttpPlatformClient:
    """
    Тонкий HTTP клиент площадки: только вызовы и перевод ответов в таксономию ошибок.
    Повторы, пакеты и circuit breaker живут в BatchExecutor, а не здесь.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        :param name: Идентификатор площадки
        :param base_url: Базовый URL API, например "https://example.com/api"
        :param token: Bearer токен для аутентификации
        :param timeout: Таймаут запросов в секундах
        """
        self.name = name
        self.base_url = base_url.rstrip('/')
        self.headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if token:
            self.headers['Authorization'] = f'Bearer {token}'
        self.timeout = timeout or sync_settings.remote_call_timeout_seconds
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, headers=self.headers, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise PlatformTransientError(f"{self.name}: сетевая ошибка {method} {url}: {e}", platform=self.name) from e
        except requests.RequestException as e:
            raise PlatformPermanentError(f"{self.name}: ошибка запроса {method} {url}: {e}", platform=self.name) from e

        status = response.status_code
        if status == 404:
            raise PlatformNotFoundError(f"{self.name}: ресурс не найден {url}", platform=self.name, status_code=status)
        if is_transient_status(status):
            retry_after = response.headers.get("Retry-After")
            raise PlatformTransientError(
                f"{self.name}: временная ошибка {status} для {method} {url}",
                platform=self.name,
                status_code=status,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status >= 400:
            raise PlatformPermanentError(
                f"{self.name}: запрос отклонён {status}: {response.text[:200]}",
                platform=self.name,
                status_code=status,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise PlatformPermanentError(f"{self.name}: некорректный JSON в ответе {url}", platform=self.name) from e


class RestPlatformClient(HttpPlatformClient, PlatformReader, PlatformWriter):
    """
    Площадка с простым REST API остатков и цен.

    GET  {quantity_path}  -> {"<quantity_field>": 10}
    PUT  {quantity_path}  <- {"<quantity_field>": 10}
    GET  {price_path}     -> {"<price_field>": 12.5}
    PUT  {price_path}     <- {"<price_field>": 12.5}

    Пути - шаблоны с подстановкой {key}.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        quantity_path: str = "/inventory/{key}",
        price_path: str = "/prices/{key}",
        quantity_field: str = "quantity",
        price_field: str = "price",
        **kwargs,
    ):
        super().__init__(name, base_url, **kwargs)
        self.quantity_path = quantity_path
        self.price_path = price_path
        self.quantity_field = quantity_field
        self.price_field = price_field

    def _read_value(self, path_template: str, field_name: str, resource_key: str) -> Observation:
        key = normalize_resource_key(resource_key)
        data = self._request("GET", path_template.format(key=key))
        if field_name not in data or data[field_name] is None:
            raise PlatformPermanentError(f"{self.name}: в ответе нет поля '{field_name}' для {key}", platform=self.name)
        return Observation(resource_key=key, platform=self.name, value=float(data[field_name]))

    def _write_value(self, path_template: str, field_name: str, resource_key: str, value: float) -> WriteOutcome:
        key = normalize_resource_key(resource_key)
        try:
            self._request("PUT", path_template.format(key=key), json={field_name: value})
        except PlatformError as e:
            logger.warning(f"{self.name}: запись {field_name}={value} для {key} не удалась: {e}")
            return WriteOutcome.from_error(e)
        return WriteOutcome.success()

    def get_quantity(self, resource_key: str) -> Observation:
        return self._read_value(self.quantity_path, self.quantity_field, resource_key)

    def get_price(self, resource_key: str) -> Observation:
        return self._read_value(self.price_path, self.price_field, resource_key)

    def apply_quantity(self, resource_key: str, value: float) -> WriteOutcome:
        return self._write_value(self.quantity_path, self.quantity_field, resource_key, int(value))

    def apply_price(self, resource_key: str, value: float) -> WriteOutcome:
        return self._write_value(self.price_path, self.price_field, resource_key, value)
