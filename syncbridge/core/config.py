"""
 * @file: config.py
 * @description: Конфигурация ядра синхронизации остатков и цен между двумя площадками
 * @dependencies: pydantic-settings, python-dotenv
 * @created: 2025-08-04
"""
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()

# Проверяем, запущено ли приложение в Docker
is_docker = os.path.exists("/.dockerenv") or os.path.exists("/run/.containerenv")

# Если запущено в Docker, перезагружаем переменные из .env.docker
if is_docker:
    load_dotenv(".env.docker", override=True)


class SyncSettings(BaseSettings):
    """
    Конфигурация системы синхронизации.

    Настройки можно переопределить через переменные окружения с префиксом SYNC_
    """
    # Среда выполнения: development, staging, production
    environment: str = "production"

    # Площадки: A - источник цен, B - целевая площадка
    platform_a_name: str = "platform_a"
    platform_a_url: str = ""
    platform_a_token: str = ""
    platform_b_name: str = "platform_b"
    platform_b_url: str = ""
    platform_b_token: str = ""

    # Координационное хранилище (Redis) и блокировки
    redis_url: str = "redis://redis:6379/2"
    lock_ttl_seconds: int = 300
    lock_key_prefix: str = "sync:lock"

    # Пакетная запись
    batch_size: int = 100
    inter_batch_delay_seconds: float = 1.0
    batch_concurrency: int = 1
    platform_requests_per_minute: int = 0  # 0 - без ограничения

    # Настройки retry механизма
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_jitter: float = 0.25
    read_max_retries: int = 2

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout_seconds: float = 30.0

    # Таймауты
    remote_call_timeout_seconds: float = 30.0
    run_timeout_seconds: float = 240.0

    # Политика цен
    price_threshold_percent: float = 5.0
    manual_override_window_hours: int = 24
    default_margin_multiplier: float = 1.15
    default_exchange_rate: float = 1.0
    target_currency: str = "USD"

    # Журнал (ledger) транзакций и цен
    ledger_database_uri: str = "sqlite:///./ledger.db"

    # Celery
    celery_broker_url: str = "redis://redis:6379/0"
    celery_result_backend: str = "redis://redis:6379/1"
    sync_schedule_minutes: int = 5

    model_config = {
        "env_prefix": "SYNC_",
        "env_file": ".env",
        "extra": "ignore"  # Игнорировать дополнительные поля из .env
    }


# Глобальный экземпляр конфигурации
sync_settings = SyncSettings()


# Настройки для различных сред выполнения
ENVIRONMENT_CONFIGS = {
    "development": {
        "max_retries": 2,
        "inter_batch_delay_seconds": 0.2,
        "lock_ttl_seconds": 120,
        "run_timeout_seconds": 90.0,
        "sync_schedule_minutes": 15
    },
    "staging": {
        "max_retries": 3,
        "inter_batch_delay_seconds": 0.5,
        "lock_ttl_seconds": 180,
        "run_timeout_seconds": 150.0,
        "sync_schedule_minutes": 10
    },
    "production": {
        "max_retries": 3,
        "inter_batch_delay_seconds": 1.0,
        "lock_ttl_seconds": 300,
        "run_timeout_seconds": 240.0,
        "sync_schedule_minutes": 5
    }
}


def get_environment_config(env: str = "production") -> Dict[str, Any]:
    """
    Получает конфигурацию для указанной среды выполнения.

    Args:
        env: Имя среды (development, staging, production)

    Returns:
        Dict с настройками для указанной среды
    """
    return ENVIRONMENT_CONFIGS.get(env, ENVIRONMENT_CONFIGS["production"])


def update_config_for_environment(env: str = "production", settings: Optional[SyncSettings] = None) -> None:
    """
    Обновляет конфигурацию для указанной среды.

    Пресет заполняет только поля, не заданные явно (переменными SYNC_* или .env):
    значение оператора важнее значения среды.

    Args:
        env: Имя среды выполнения
        settings: Изменяемые настройки; по умолчанию глобальный sync_settings
    """
    settings = settings or sync_settings
    explicit = set(settings.model_fields_set)
    env_config = get_environment_config(env)

    for key, value in env_config.items():
        if hasattr(settings, key) and key not in explicit:
            setattr(settings, key, value)
