"""
 * @file: sync_tasks.py
 * @description: Celery-задачи запуска прогонов синхронизации (по списку ключей и периодическая сверка всех ключей)
 * @dependencies: celery_shared, SyncOrchestrator
 * @created: 2025-08-05
"""

import logging
import threading
import time
from typing import Callable, List, Optional

from celery import group

from syncbridge.bootstrap import build_orchestrator
from syncbridge.celery_shared import celery
from syncbridge.core.config import sync_settings
from syncbridge.schemas.sync import SyncDirection, SyncOperation
from syncbridge.services.sync.batch_executor import partition
from syncbridge.services.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger("sync.tasks")

OrchestratorFactory = Callable[[], SyncOrchestrator]
KeyProvider = Callable[[SyncOperation], List[str]]

_orchestrator_factory: Optional[OrchestratorFactory] = None
_key_provider: Optional[KeyProvider] = None
_orchestrator: Optional[SyncOrchestrator] = None
_lock = threading.Lock()


def configure_orchestrator_factory(factory: OrchestratorFactory) -> None:
    """
    Регистрирует фабрику оркестратора для воркера.

    Оркестратор создаётся один раз на процесс: circuit breaker и время последней
    синхронизации должны переживать отдельные задачи.
    """
    global _orchestrator_factory, _orchestrator
    with _lock:
        _orchestrator_factory = factory
        _orchestrator = None


def configure_key_provider(provider: KeyProvider) -> None:
    """Регистрирует источник полного списка ключей для периодической сверки."""
    global _key_provider
    _key_provider = provider


def get_orchestrator() -> SyncOrchestrator:
    """Оркестратор процесса; без зарегистрированной фабрики собирается из настроек SYNC_*."""
    global _orchestrator
    with _lock:
        if _orchestrator is None:
            _orchestrator = (_orchestrator_factory or build_orchestrator)()
        return _orchestrator


@celery.task(name="syncbridge.sync_tasks.run_sync_task")
def run_sync_task(resource_keys: List[str], operation: str = "quantity", direction: str = "bidirectional"):
    """
    Celery-задача: один прогон синхронизации для списка ключей.
    Параллельные запуски для тех же ключей безопасны: конкуренцию разрешают аренды.
    """
    start = time.time()
    logger.info(f"[Sync] Старт прогона {operation} ({direction}) для {len(resource_keys)} ключей")
    run = get_orchestrator().run(resource_keys, SyncOperation(operation), SyncDirection(direction))
    summary = run.summary()
    logger.info(f"[Sync] Прогон {run.run_id} завершён за {time.time() - start:.2f} сек: {run.outcome.value}")
    return summary


@celery.task(name="syncbridge.sync_tasks.reconcile_all_task")
def reconcile_all_task(operation: str = "quantity", direction: str = "bidirectional",
                       keys_per_task: Optional[int] = None):
    """
    Периодическая сверка: получает все ключи и запускает прогоны группами.
    """
    if _key_provider is None:
        logger.warning("[Sync] Источник ключей не зарегистрирован, сверка пропущена")
        return {"success": False, "error": "Источник ключей не зарегистрирован", "keys": 0}

    keys = _key_provider(SyncOperation(operation))
    if not keys:
        logger.info("[Sync] Нет ключей для сверки")
        return {"success": True, "keys": 0, "tasks": 0}

    chunks = partition(list(keys), keys_per_task or sync_settings.batch_size)
    job = group(run_sync_task.s(chunk, operation, direction) for chunk in chunks).apply_async()
    logger.info(f"[Sync] Сверка {operation}: {len(keys)} ключей в {len(chunks)} задачах")
    return {"success": True, "keys": len(keys), "tasks": len(chunks), "group_id": job.id}
