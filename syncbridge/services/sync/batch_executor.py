"""
 * @file: batch_executor.py
 * @description: Пакетная запись на площадку с паузами между пакетами, повторами и circuit breaker
 * @dependencies: PlatformWriter, CircuitBreaker, ExponentialBackoff, TokenBucketRateLimiter
 * @created: 2025-08-05
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from syncbridge.core.config import sync_settings
from syncbridge.schemas.sync import (
    BatchItem,
    BatchRunReport,
    ItemFailure,
    ItemResult,
    ItemStatus,
)
from syncbridge.services.platforms.base import OutcomeStatus, PlatformWriter, WriteOutcome
from syncbridge.services.sync.circuit_breaker import CircuitBreaker
from syncbridge.services.sync.exceptions import (
    PlatformNotFoundError,
    PlatformTransientError,
    is_transient_error,
)
from syncbridge.services.sync.rate_limiter import TokenBucketRateLimiter
from syncbridge.services.sync.retry import ExponentialBackoff
from syncbridge.services.sync.timeouts import Deadline, call_with_timeout
from syncbridge.utils.date_utils import utcnow

logger = logging.getLogger("sync.batch")

# Причины пропуска элемента без обращения к площадке
SKIP_UP_TO_DATE = "value_already_current"
SKIP_UNRESOLVED = "target_not_resolved"
SKIP_DUPLICATE = "duplicate_in_batch"
SKIP_CANCELLED = "cancelled"
SKIP_DEADLINE = "deadline_exceeded"
SKIP_FAIL_FAST = "fail_fast"

IndexedItem = Tuple[int, BatchItem]


@dataclass(frozen=True)
class BatchOptions:
    """Параметры пакетной записи."""
    batch_size: int = 100
    inter_batch_delay: float = 1.0
    max_retries: int = 3
    fail_fast: bool = False
    concurrency: int = 1
    call_timeout: Optional[float] = None

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError("batch_size должен быть положительным")
        if self.max_retries < 0:
            raise ValueError("max_retries не может быть отрицательным")
        if self.inter_batch_delay < 0:
            raise ValueError("inter_batch_delay не может быть отрицательным")
        if self.concurrency < 1:
            raise ValueError("concurrency должен быть не меньше 1")

    @classmethod
    def from_settings(cls, **overrides) -> "BatchOptions":
        values = {
            "batch_size": sync_settings.batch_size,
            "inter_batch_delay": sync_settings.inter_batch_delay_seconds,
            "max_retries": sync_settings.max_retries,
            "concurrency": sync_settings.batch_concurrency,
            "call_timeout": sync_settings.remote_call_timeout_seconds,
        }
        values.update(overrides)
        return cls(**values)


class CancellationToken:
    """Сигнал остановки: исполнитель перестаёт отправлять новые пакеты, начатые дорабатывают."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = SKIP_CANCELLED) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


def partition(items: Sequence, size: int) -> List[list]:
    """Делит список на последовательные куски по size элементов с сохранением порядка."""
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class BatchExecutor:
    """
    Единственная точка записи на площадку.

    Элементы делятся на пакеты; каждый пакет отправляется через circuit breaker
    с явным таймаутом, временные сбои повторяются с экспоненциальной задержкой.
    Ошибки отдельных элементов не выходят за пределы исполнителя: они попадают в отчёт.
    """

    def __init__(
        self,
        writer: PlatformWriter,
        circuit_breaker: Optional[CircuitBreaker] = None,
        backoff: Optional[ExponentialBackoff] = None,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.writer = writer
        self.circuit_breaker = circuit_breaker or CircuitBreaker.from_settings(writer.name)
        self.backoff = backoff or ExponentialBackoff.from_settings()
        self.rate_limiter = rate_limiter
        self.sleep = sleep
        self.clock = clock

    @property
    def platform(self) -> str:
        return self.writer.name

    def execute(
        self,
        items: Sequence[BatchItem],
        options: Optional[BatchOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        deadline: Optional[Deadline] = None,
    ) -> BatchRunReport:
        """
        Записывает элементы пакетами и возвращает неизменяемый отчёт.

        Args:
            items: Элементы для записи, порядок сохраняется внутри пакета
            options: Размер пакета, пауза, число повторов, fail-fast, параллельность
            cancel_token: Остановка между пакетами по сигналу извне
            deadline: Дедлайн прогона, проверяется между пакетами
        """
        options = options or BatchOptions.from_settings()
        cancel_token = cancel_token or CancellationToken()
        started_at = utcnow()
        started = self.clock()
        results: Dict[int, ItemResult] = {}

        dispatchable = self._pre_dispatch(items, results)
        chunks = partition(dispatchable, options.batch_size)
        logger.info(
            f"Запись на {self.platform}: {len(items)} элементов, к отправке {len(dispatchable)}, "
            f"пакетов {len(chunks)} по {options.batch_size}"
        )

        if options.concurrency > 1 and len(chunks) > 1:
            chunks_attempted, stop_reason = self._run_concurrent(chunks, options, cancel_token, deadline, results)
        else:
            chunks_attempted, stop_reason = self._run_sequential(chunks, options, cancel_token, deadline, results)

        report = self._build_report(
            items, results, len(chunks), chunks_attempted, stop_reason, started_at, self.clock() - started
        )
        self._log_summary(report)
        return report

    def _pre_dispatch(self, items: Sequence[BatchItem], results: Dict[int, ItemResult]) -> List[IndexedItem]:
        """Отсекает элементы, которые не нужно или нельзя отправлять."""
        dispatchable: List[IndexedItem] = []
        seen = set()
        for index, item in enumerate(items):
            if item.resource_key in seen:
                results[index] = self._skipped(item, SKIP_DUPLICATE)
                continue
            seen.add(item.resource_key)

            if item.current_value is not None and item.current_value == item.value:
                results[index] = self._skipped(item, SKIP_UP_TO_DATE)
                continue

            try:
                target = self.writer.resolve_target(item.resource_key)
            except PlatformNotFoundError:
                target = None
            except Exception as e:
                logger.error(f"Не удалось сопоставить {item.resource_key} на {self.platform}: {e}")
                results[index] = ItemResult(
                    resource_key=item.resource_key,
                    platform=item.platform,
                    status=ItemStatus.FAILED,
                    error=str(e),
                )
                continue

            if target is None:
                logger.info(f"{item.resource_key} не сопоставлен с ресурсом на {self.platform}, пропускаем")
                results[index] = self._skipped(item, SKIP_UNRESOLVED)
                continue
            dispatchable.append((index, item))
        return dispatchable

    def _stop_reason(self, cancel_token: CancellationToken, deadline: Optional[Deadline],
                     chunk_failed: threading.Event, options: BatchOptions) -> Optional[str]:
        if cancel_token.is_cancelled:
            return cancel_token.reason or SKIP_CANCELLED
        if deadline is not None and deadline.expired():
            return SKIP_DEADLINE
        if options.fail_fast and chunk_failed.is_set():
            return SKIP_FAIL_FAST
        return None

    def _wait_for_slot(self, index: int, options: BatchOptions, deadline: Optional[Deadline]) -> bool:
        """Пауза между стартами пакетов и токен общего rate limiter."""
        if index > 0 and options.inter_batch_delay > 0:
            self.sleep(options.inter_batch_delay)
        if self.rate_limiter is None:
            return True
        timeout = max(deadline.remaining(), 0.0) if deadline is not None else None
        return self.rate_limiter.acquire(timeout=timeout)

    def _skip_remaining(self, chunks: List[List[IndexedItem]], start: int, reason: str,
                        results: Dict[int, ItemResult]) -> None:
        """Причина остановки попадает только в отчёт: токен вызывающего не трогаем."""
        remaining = sum(len(chunk) for chunk in chunks[start:])
        logger.warning(f"Запись на {self.platform} остановлена ({reason}), не отправлено {remaining} элементов")
        for chunk in chunks[start:]:
            for index, item in chunk:
                results[index] = self._skipped(item, reason)

    def _run_sequential(self, chunks, options, cancel_token, deadline, results) -> Tuple[int, Optional[str]]:
        chunk_failed = threading.Event()
        attempted = 0
        stop_reason = None
        for number, chunk in enumerate(chunks):
            reason = self._stop_reason(cancel_token, deadline, chunk_failed, options)
            if reason is None and not self._wait_for_slot(number, options, deadline):
                reason = SKIP_DEADLINE
            reason = reason or self._stop_reason(cancel_token, deadline, chunk_failed, options)
            if reason is not None:
                self._skip_remaining(chunks, number, reason, results)
                stop_reason = reason
                break
            attempted += 1
            results.update(self._process_chunk(number, len(chunks), chunk, options, deadline, chunk_failed))
        return attempted, stop_reason

    def _run_concurrent(self, chunks, options, cancel_token, deadline, results) -> Tuple[int, Optional[str]]:
        chunk_failed = threading.Event()
        futures = []
        stop_reason = None
        with ThreadPoolExecutor(max_workers=options.concurrency, thread_name_prefix=f"batch-{self.platform}") as pool:
            for number, chunk in enumerate(chunks):
                reason = self._stop_reason(cancel_token, deadline, chunk_failed, options)
                if reason is None and not self._wait_for_slot(number, options, deadline):
                    reason = SKIP_DEADLINE
                reason = reason or self._stop_reason(cancel_token, deadline, chunk_failed, options)
                if reason is not None:
                    self._skip_remaining(chunks, number, reason, results)
                    stop_reason = reason
                    break
                futures.append(
                    pool.submit(self._process_chunk, number, len(chunks), chunk, options, deadline, chunk_failed)
                )
            for future in futures:
                results.update(future.result())
        return len(futures), stop_reason

    @staticmethod
    def _call_timeout(options: BatchOptions, deadline: Optional[Deadline]) -> Optional[float]:
        """Таймаут вызова площадки, не выходящий за дедлайн прогона."""
        if deadline is None:
            return options.call_timeout
        remaining = max(deadline.remaining(), 0.0)
        return remaining if options.call_timeout is None else min(options.call_timeout, remaining)

    def _dispatch(self, batch: List[BatchItem], timeout: Optional[float], description: str) -> Dict[str, WriteOutcome]:
        outcomes = call_with_timeout(lambda: self.writer.apply_batch(batch), timeout, description)
        transient = [o for o in outcomes.values() if o.status == OutcomeStatus.TRANSIENT]
        if batch and len(transient) == len(batch):
            # Площадка отказала целиком (rate limit, 5xx): это сбой вызова, а не элементов
            raise PlatformTransientError(transient[-1].message or "временный сбой", platform=self.platform)
        return outcomes

    def _process_chunk(
        self,
        number: int,
        total: int,
        chunk: List[IndexedItem],
        options: BatchOptions,
        deadline: Optional[Deadline],
        chunk_failed: threading.Event,
    ) -> Dict[int, ItemResult]:
        """
        Отправляет один пакет. Успешные и постоянно отклонённые элементы фиксируются сразу,
        временно отклонённые отправляются повторно до max_retries раз.
        """
        backoff = replace(self.backoff, max_retries=options.max_retries)
        description = f"{self.platform} пакет {number + 1}/{total}"
        index_by_key = {item.resource_key: index for index, item in chunk}
        pending: Dict[str, BatchItem] = {item.resource_key: item for _, item in chunk}
        attempts: Dict[str, int] = {key: 0 for key in pending}
        results: Dict[int, ItemResult] = {}
        retry = 0

        logger.info(f"Отправляем {description} ({len(pending)} элементов)")

        def finish(item: BatchItem, status: ItemStatus, error: Optional[str] = None, transient: bool = False) -> None:
            results[index_by_key[item.resource_key]] = ItemResult(
                resource_key=item.resource_key,
                platform=item.platform,
                status=status,
                attempts=attempts[item.resource_key],
                error=error,
                transient=transient,
            )

        while pending:
            batch = list(pending.values())
            for item in batch:
                attempts[item.resource_key] += 1
            error: Optional[BaseException] = None
            retryable: Dict[str, BatchItem] = {}
            last_messages: Dict[str, str] = {}

            try:
                outcomes = self.circuit_breaker.call(
                    self._dispatch, batch, self._call_timeout(options, deadline), description
                )
            except Exception as e:
                error = e
                if is_transient_error(e):
                    retryable = dict(pending)
                    last_messages = {key: str(e) for key in pending}
                else:
                    logger.error(f"{description}: постоянная ошибка, пакет не повторяется: {e}")
                    for item in batch:
                        finish(item, ItemStatus.FAILED, str(e))
            else:
                for key, item in pending.items():
                    outcome = outcomes.get(key)
                    if outcome is None:
                        finish(item, ItemStatus.FAILED, "площадка не вернула результат для элемента")
                    elif outcome.ok:
                        finish(item, ItemStatus.SUCCEEDED)
                    elif outcome.status == OutcomeStatus.PERMANENT:
                        finish(item, ItemStatus.FAILED, outcome.message)
                    else:
                        retryable[key] = item
                        last_messages[key] = outcome.message or "временный сбой"

            if not retryable:
                break

            if not backoff.should_retry(retry) or (deadline is not None and deadline.expired()):
                logger.error(
                    f"{description}: {len(retryable)} элементов не записаны после {retry + 1} попыток"
                )
                for key, item in retryable.items():
                    finish(item, ItemStatus.FAILED, last_messages[key], transient=True)
                break

            delay = backoff.next_delay(retry, error)
            logger.warning(
                f"{description}: временная ошибка для {len(retryable)} элементов, "
                f"повтор {retry + 1}/{backoff.max_retries} через {delay:.2f}s"
            )
            self.sleep(delay)
            retry += 1
            pending = retryable

        if any(r.status == ItemStatus.FAILED for r in results.values()):
            chunk_failed.set()
        return results

    @staticmethod
    def _skipped(item: BatchItem, reason: str) -> ItemResult:
        return ItemResult(
            resource_key=item.resource_key,
            platform=item.platform,
            status=ItemStatus.SKIPPED,
            reason=reason,
        )

    def _build_report(self, items, results, chunks_total, chunks_attempted, stop_reason, started_at, duration):
        ordered = [results[index] for index in sorted(results)]
        failures = []
        for result in ordered:
            if result.status == ItemStatus.FAILED:
                failures.append(ItemFailure(
                    resource_key=result.resource_key,
                    platform=result.platform,
                    error=result.error or "неизвестная ошибка",
                    transient=result.transient,
                ))
        return BatchRunReport(
            total=len(items),
            succeeded=sum(1 for r in ordered if r.status == ItemStatus.SUCCEEDED),
            failed=len(failures),
            skipped=sum(1 for r in ordered if r.status == ItemStatus.SKIPPED),
            failures=failures,
            items=ordered,
            chunks_total=chunks_total,
            chunks_attempted=chunks_attempted,
            cancelled=stop_reason is not None,
            cancel_reason=stop_reason,
            started_at=started_at,
            duration_seconds=duration,
        )

    def _log_summary(self, report: BatchRunReport) -> None:
        message = (
            f"Запись на {self.platform} завершена: всего {report.total}, успешно {report.succeeded}, "
            f"ошибок {report.failed}, пропущено {report.skipped}, "
            f"пакетов {report.chunks_attempted}/{report.chunks_total}, "
            f"успешность {report.success_rate:.1f}%, {report.duration_seconds:.2f}s"
        )
        if report.has_failures or report.cancelled:
            logger.warning(message)
        else:
            logger.info(message)
