"""
Структурированные события синхронизации.

Каждый переход состояния прогона, каждое решение конфликта и каждый отчёт
пакетной записи публикуются как SyncEvent: в логгер "sync.events" (payload
передаётся через extra) и всем подписчикам. Формат внешнего логирования
определяет подписчик, а не ядро.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from syncbridge.schemas.sync import BatchRunReport, Resolution, RunState, SyncEvent

Subscriber = Callable[[SyncEvent], None]


class EventType:
    STATE_TRANSITION = "state_transition"
    RESOLUTION = "resolution"
    BATCH_REPORT = "batch_report"
    LEASE_CONTENDED = "lease_contended"
    KEY_SKIPPED = "key_skipped"


class SyncEventLogger:
    """
    Централизованная публикация событий синхронизации.

    Ошибка подписчика логируется и никогда не прерывает прогон.
    """

    def __init__(self, subscribers: Optional[List[Subscriber]] = None):
        self.logger = logging.getLogger("sync.events")
        self._subscribers: List[Subscriber] = list(subscribers or [])
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def emit(self, event_type: str, run_id: Optional[str] = None, level: int = logging.INFO,
             **payload: Any) -> SyncEvent:
        event = SyncEvent(event_type=event_type, run_id=run_id, payload=payload)
        self.logger.log(
            level,
            f"[{event_type}] run={run_id} {payload}",
            extra={"event_type": event_type, "run_id": run_id, "payload": payload},
        )
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as e:
                self.logger.error(f"Подписчик событий {subscriber!r} упал на {event_type}: {e}")
        return event

    def log_state_transition(
        self,
        run_id: str,
        from_state: RunState,
        to_state: RunState,
        reason: str,
        additional_context: Optional[Dict[str, Any]] = None,
    ) -> SyncEvent:
        """
        Логирование перехода прогона между состояниями.

        Args:
            run_id: ID прогона
            from_state: Исходное состояние
            to_state: Целевое состояние
            reason: Причина перехода
            additional_context: Дополнительный контекст
        """
        details = {
            "from_state": from_state.value,
            "to_state": to_state.value,
            "reason": reason,
            "transition": f"{from_state.value} -> {to_state.value}",
        }
        if additional_context:
            details.update(additional_context)

        # Skipped - ожидаемая конкуренция, не тревога
        level = logging.WARNING if to_state == RunState.FAILED else logging.INFO
        return self.emit(EventType.STATE_TRANSITION, run_id=run_id, level=level, **details)

    def log_resolution(self, run_id: Optional[str], resolution: Resolution) -> SyncEvent:
        return self.emit(
            EventType.RESOLUTION,
            run_id=run_id,
            resource_key=resolution.resource_key,
            conflict_type=resolution.conflict_type.value,
            strategy=resolution.strategy.value,
            value=resolution.value,
            requires_write=resolution.requires_write,
            evidence=resolution.evidence,
        )

    def log_batch_report(self, run_id: Optional[str], platform: str, report: BatchRunReport) -> SyncEvent:
        level = logging.WARNING if report.has_failures else logging.INFO
        return self.emit(
            EventType.BATCH_REPORT,
            run_id=run_id,
            level=level,
            platform=platform,
            total=report.total,
            succeeded=report.succeeded,
            failed=report.failed,
            skipped=report.skipped,
            success_rate=round(report.success_rate, 2),
            cancelled=report.cancelled,
            duration_seconds=round(report.duration_seconds, 3),
            failures=[f.model_dump() for f in report.failures],
        )
