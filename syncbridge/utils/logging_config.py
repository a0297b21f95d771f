"""
 * @file: logging_config.py
 * @description: Логирование ядра синхронизации: консоль для бизнес-событий, файлы с ротацией для разбора
 * @dependencies: logging, RotatingFileHandler
 * @created: 2025-08-04
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

LOG_PATH = os.getenv("SYNC_LOG_PATH", os.path.join(os.getcwd(), "logs"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENABLE_TECHNICAL_LOGS = os.getenv("ENABLE_TECHNICAL_LOGS", "false").lower() == "true"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Библиотеки, чей вывод на консоли только мешает читать ход синхронизации
TECHNICAL_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "sqlalchemy.dialects",
    "sqlalchemy.orm",
    "urllib3",
    "requests",
    "celery.worker",
    "celery.beat",
    "celery.app",
    "kombu",
    "redis",
)

BUSINESS_LOGGERS = (
    "sync.locks",
    "sync.resolver",
    "sync.batch",
    "sync.orchestrator",
    "sync.events",
    "sync.ledger",
    "sync.tasks",
    "sync.bootstrap",
    "sync.business",
    "sync.errors",
    "platforms",
)

LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
RESET_COLOR = "\033[0m"


class TechnicalLogFilter(logging.Filter):
    """Пропускает на консоль всё, кроме логов библиотек из TECHNICAL_LOGGERS."""

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(TECHNICAL_LOGGERS)


class ColoredFormatter(logging.Formatter):
    """Подсвечивает уровень записи. Запись не меняется: файловые хендлеры получают её без цвета."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        if color is None:
            return message
        return message.replace(f"[{record.levelname}]", f"[{color}{record.levelname}{RESET_COLOR}]", 1)


def _rotating_handler(path: str, max_megabytes: int, backups: int, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=max_megabytes * 1024 * 1024, backupCount=backups, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.setLevel(level)
    return handler


def setup_project_logging(log_level: Optional[str] = None, enable_technical_logs: Optional[bool] = None,
                          log_path: Optional[str] = None) -> logging.Logger:
    """
    Настраивает логирование процесса: веб-воркера, Celery воркера или beat.

    Хендлеры вешаются на root логгер, поэтому все логгеры ядра ("sync.*", "platforms")
    пишут в одни и те же места: консоль (уровень log_level), logs/sync.log (всё)
    и logs/errors.log (только ошибки).

    Args:
        log_level: Уровень консоли (DEBUG, INFO, WARNING, ERROR)
        enable_technical_logs: Показывать на консоли логи redis/celery/sqlalchemy
        log_path: Каталог для файлов логов

    Returns:
        logging.Logger: логгер пакета syncbridge
    """
    log_level = (log_level or LOG_LEVEL).upper()
    if enable_technical_logs is None:
        enable_technical_logs = ENABLE_TECHNICAL_LOGS
    log_path = log_path or LOG_PATH
    os.makedirs(log_path, exist_ok=True)

    root_logger = logging.getLogger()
    # Повторный вызов (например, из сигнала Celery) не должен дублировать хендлеры
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    if sys.stdout.isatty():
        console_handler.setFormatter(ColoredFormatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    else:
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    console_handler.setLevel(getattr(logging, log_level, logging.INFO))
    if not enable_technical_logs:
        console_handler.addFilter(TechnicalLogFilter())

    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(_rotating_handler(os.path.join(log_path, "sync.log"), 10, 5, logging.DEBUG))
    root_logger.addHandler(_rotating_handler(os.path.join(log_path, "errors.log"), 5, 3, logging.ERROR))

    technical_level = logging.WARNING if enable_technical_logs else logging.ERROR
    for name in TECHNICAL_LOGGERS:
        logging.getLogger(name).setLevel(technical_level)
    for name in BUSINESS_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG)

    package_logger = logging.getLogger("syncbridge")
    package_logger.setLevel(logging.DEBUG)
    return package_logger


def _format_context(values: dict) -> str:
    return " | ".join(f"{key}={value}" for key, value in values.items())


def log_business_event(event_type: str, message: str, **kwargs: Any) -> None:
    """
    Одна строка о бизнес-событии: "[RUN_FINISHED] Прогон ... | state=completed | failed=0".

    Args:
        event_type: Тип события (run_finished, lease_contended и т.п.)
        message: Текст события
        **kwargs: Поля, дописываемые в конец строки
    """
    context = _format_context(kwargs)
    line = f"[{event_type.upper()}] {message}"
    logging.getLogger("sync.business").info(f"{line} | {context}" if context else line)


def log_error_with_context(error: BaseException, context: str = "", **kwargs: Any) -> None:
    """Логирует ошибку с описанием места и дополнительными полями."""
    details = _format_context(kwargs)
    prefix = f"{context}: " if context else ""
    message = f"[ERROR] {prefix}{type(error).__name__}: {error}"
    logging.getLogger("sync.errors").error(f"{message} | {details}" if details else message)
