"""
 * @file: bootstrap.py
 * @description: Сборка оркестратора из настроек: Redis аренды, журнал на SQLModel, REST клиенты площадок
 * @dependencies: core.config, database, RedisCoordinationStore, RestPlatformClient
 * @created: 2025-08-06
"""
import logging
from typing import Optional

from syncbridge.core.config import sync_settings, update_config_for_environment
from syncbridge.database import SessionLocal, init_db
from syncbridge.services.coordination.store import CoordinationStore, RedisCoordinationStore
from syncbridge.services.ledger.reader import SqlLedger
from syncbridge.services.platforms.base import RestPlatformClient
from syncbridge.services.sync.batch_executor import BatchExecutor
from syncbridge.services.sync.conflict_resolver import ConflictResolver
from syncbridge.services.sync.locks import LockManager
from syncbridge.services.sync.orchestrator import SyncOrchestrator
from syncbridge.services.sync.rate_limiter import TokenBucketRateLimiter

logger = logging.getLogger("sync.bootstrap")


def build_platform(name: str, base_url: str, token: str) -> RestPlatformClient:
    if not base_url:
        raise ValueError(f"Не задан URL API площадки {name}")
    return RestPlatformClient(name, base_url, token=token or None)


def build_executor(platform: RestPlatformClient) -> BatchExecutor:
    """Исполнитель записи; при заданном лимите площадки - с общим rate limiter."""
    rate_limiter = None
    if sync_settings.platform_requests_per_minute > 0:
        rate_limiter = TokenBucketRateLimiter(requests_per_minute=sync_settings.platform_requests_per_minute)
    return BatchExecutor(platform, rate_limiter=rate_limiter)


def build_orchestrator(store: Optional[CoordinationStore] = None) -> SyncOrchestrator:
    """
    Создать оркестратор по настройкам SYNC_*.

    Args:
        store: Координационное хранилище; по умолчанию Redis из SYNC_REDIS_URL

    Returns:
        Экземпляр SyncOrchestrator
    """
    update_config_for_environment(sync_settings.environment)

    platform_a = build_platform(sync_settings.platform_a_name, sync_settings.platform_a_url,
                                sync_settings.platform_a_token)
    platform_b = build_platform(sync_settings.platform_b_name, sync_settings.platform_b_url,
                                sync_settings.platform_b_token)
    store = store or RedisCoordinationStore.from_url(sync_settings.redis_url)
    init_db()
    ledger = SqlLedger(SessionLocal)

    logger.info(
        f"Оркестратор: {platform_a.name} <-> {platform_b.name}, среда {sync_settings.environment}, "
        f"пакет {sync_settings.batch_size}, аренда {sync_settings.lock_ttl_seconds} сек"
    )
    return SyncOrchestrator(
        lock_manager=LockManager(store),
        platform_a=platform_a,
        platform_b=platform_b,
        resolver=ConflictResolver(ledger),
        executor_a=build_executor(platform_a),
        executor_b=build_executor(platform_b),
        # Время последней синхронизации общее для всех воркеров: берётся из журнала
        last_sync_provider=ledger.last_sync_at,
        ledger_writer=ledger,
    )
