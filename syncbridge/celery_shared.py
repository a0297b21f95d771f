"""
 * @file: celery_shared.py
 * @description: Общий экземпляр Celery и расписание периодической сверки
 * @dependencies: core.config, celery
 * @created: 2025-08-05
"""

from datetime import timedelta

from celery import Celery
from celery.signals import setup_logging

from syncbridge.core.config import sync_settings
from syncbridge.utils.logging_config import setup_project_logging

# Инициализация Celery
celery = Celery(
    "syncbridge",
    broker=sync_settings.celery_broker_url,
    backend=sync_settings.celery_result_backend,
    include=["syncbridge.sync_tasks"],
)

# Настройка Celery
celery.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    worker_hijack_root_logger=False,  # Отключаем перехват root логгера
    worker_log_format='[%(asctime)s: %(levelname)s/%(processName)s] %(message)s',
    worker_task_log_format='[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s',
    broker_connection_retry_on_startup=True,
    # Одна задача на воркер, лимит чуть больше дедлайна прогона
    worker_prefetch_multiplier=1,
    task_soft_time_limit=int(sync_settings.run_timeout_seconds) + 30,
    task_time_limit=int(sync_settings.run_timeout_seconds) + 60,
)

# Периодическая сверка: остатки часто, цены реже
celery.conf.beat_schedule = {
    "reconcile-quantities": {
        "task": "syncbridge.sync_tasks.reconcile_all_task",
        "schedule": timedelta(minutes=sync_settings.sync_schedule_minutes),
        "kwargs": {"operation": "quantity"},
    },
    "reconcile-prices": {
        "task": "syncbridge.sync_tasks.reconcile_all_task",
        "schedule": timedelta(minutes=sync_settings.sync_schedule_minutes * 6),
        "kwargs": {"operation": "price"},
    },
}


@setup_logging.connect
def configure_worker_logging(**kwargs):
    """Celery не трогает логирование: воркеры и beat пишут в хендлеры root логгера приложения."""
    setup_project_logging()
