"""
 * @file: orchestrator.py
 * @description: Конечный автомат прогона синхронизации: аренды -> чтение -> разрешение -> запись
 * @dependencies: LockManager, ConflictResolver, BatchExecutor, PlatformReader/PlatformWriter
 * @created: 2025-08-05
"""
import logging
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from syncbridge.core.config import sync_settings
from syncbridge.schemas.sync import (
    BatchItem,
    BatchRunReport,
    ConflictType,
    ItemStatus,
    LedgerEntry,
    LedgerSource,
    Observation,
    Resolution,
    ResolutionStrategy,
    RunState,
    SkippedKey,
    SyncDirection,
    SyncOperation,
    SyncRun,
)
from syncbridge.services.ledger.reader import LedgerWriter
from syncbridge.services.platforms.base import PlatformReader, PlatformWriter
from syncbridge.services.sync.batch_executor import (
    SKIP_DEADLINE,
    BatchExecutor,
    BatchOptions,
    CancellationToken,
)
from syncbridge.services.sync.conflict_resolver import (
    ConflictResolver,
    PricingPolicy,
    StaticPricingPolicy,
    currency_places,
    round_price,
)
from syncbridge.services.sync.events import EventType, SyncEventLogger
from syncbridge.services.sync.exceptions import (
    LedgerUnavailableError,
    PlatformNotFoundError,
    PlatformTransientError,
    RunTimeoutError,
    SyncError,
    is_transient_error,
)
from syncbridge.services.sync.locks import LockManager
from syncbridge.services.sync.retry import ExponentialBackoff, retry_call
from syncbridge.services.sync.timeouts import Deadline, call_with_timeout
from syncbridge.utils.date_utils import to_utc, utcnow
from syncbridge.utils.keys import normalize_resource_key
from syncbridge.utils.logging_config import log_business_event, log_error_with_context

logger = logging.getLogger("sync.orchestrator")

LastSyncProvider = Callable[[str, SyncOperation], Optional[datetime]]

# Допустимые переходы автомата; FAILED достижим из любого нетерминального состояния
TRANSITIONS = {
    RunState.IDLE: {RunState.LOCKING},
    RunState.LOCKING: {RunState.READING, RunState.SKIPPED},
    RunState.READING: {RunState.RESOLVING},
    RunState.RESOLVING: {RunState.WRITING},
    RunState.WRITING: {RunState.COMPLETED},
}


class Platform(PlatformReader, PlatformWriter):
    """Площадка, с которой оркестратор и читает, и пишет."""


class InvalidTransitionError(SyncError):
    """Переход автомата, не предусмотренный схемой состояний."""


class LastSyncTracker:
    """Время последней завершённой синхронизации по (ключ, операция) в памяти процесса."""

    def __init__(self):
        self._values: Dict[Tuple[str, SyncOperation], datetime] = {}
        self._lock = threading.Lock()

    def __call__(self, resource_key: str, operation: SyncOperation) -> Optional[datetime]:
        with self._lock:
            return self._values.get((resource_key, operation))

    def mark(self, resource_keys: Sequence[str], operation: SyncOperation, at: datetime) -> None:
        with self._lock:
            for key in resource_keys:
                self._values[(key, operation)] = at


class ReadResult:
    """Наблюдение с площадки или причина, по которой его нет."""

    def __init__(self, platform: str, observation: Optional[Observation] = None,
                 error: Optional[BaseException] = None):
        self.platform = platform
        self.observation = observation
        self.error = error

    @property
    def ok(self) -> bool:
        return self.observation is not None

    @property
    def not_found(self) -> bool:
        return isinstance(self.error, PlatformNotFoundError)


class SyncOrchestrator:
    """
    Прогон синхронизации для набора ключей и одной операции.

    Idle -> Locking -> Reading -> Resolving -> Writing -> Completed,
    Skipped - если ни одной аренды взять не удалось, Failed - при фатальной ошибке.
    Аренды освобождаются самим оркестратором при любом выходе.
    """

    def __init__(
        self,
        lock_manager: LockManager,
        platform_a: Platform,
        platform_b: Platform,
        resolver: ConflictResolver,
        executor_a: Optional[BatchExecutor] = None,
        executor_b: Optional[BatchExecutor] = None,
        pricing_policy: Optional[PricingPolicy] = None,
        events: Optional[SyncEventLogger] = None,
        last_sync_provider: Optional[LastSyncProvider] = None,
        ledger_writer: Optional[LedgerWriter] = None,
        batch_options: Optional[BatchOptions] = None,
        read_backoff: Optional[ExponentialBackoff] = None,
        run_timeout: Optional[float] = None,
        call_timeout: Optional[float] = None,
        lease_ttl: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lock_manager = lock_manager
        self.platform_a = platform_a
        self.platform_b = platform_b
        self.resolver = resolver
        self.executor_a = executor_a or BatchExecutor(platform_a, sleep=sleep)
        self.executor_b = executor_b or BatchExecutor(platform_b, sleep=sleep)
        self.pricing_policy = pricing_policy or StaticPricingPolicy()
        self.events = events or SyncEventLogger()
        self.last_sync_tracker = LastSyncTracker()
        self.last_sync_provider = last_sync_provider
        self.ledger_writer = ledger_writer
        self.batch_options = batch_options or BatchOptions.from_settings()
        self.read_backoff = read_backoff or ExponentialBackoff.from_settings(max_retries=sync_settings.read_max_retries)
        self.run_timeout = run_timeout or sync_settings.run_timeout_seconds
        self.call_timeout = call_timeout or sync_settings.remote_call_timeout_seconds
        self.lease_ttl = lease_ttl
        self.sleep = sleep
        self.clock = clock

        # Аренда должна пережить дедлайн прогона
        effective_ttl = lease_ttl or lock_manager.default_ttl
        if effective_ttl <= self.run_timeout:
            raise ValueError(
                f"TTL аренды ({effective_ttl} сек) должен быть больше дедлайна прогона ({self.run_timeout} сек)"
            )

    def _transition(self, run: SyncRun, to_state: RunState, reason: str, **context) -> None:
        from_state = run.state
        if from_state.is_terminal:
            raise InvalidTransitionError(f"Прогон {run.run_id} уже завершён ({from_state.value})")
        if to_state != RunState.FAILED and to_state not in TRANSITIONS.get(from_state, set()):
            raise InvalidTransitionError(f"Недопустимый переход {from_state.value} -> {to_state.value}")
        run.state = to_state
        run.state_history.append(to_state)
        if to_state.is_terminal:
            run.finished_at = utcnow()
        self.events.log_state_transition(run.run_id, from_state, to_state, reason, context or None)

    def run(
        self,
        resource_keys: Sequence[str],
        operation: SyncOperation = SyncOperation.QUANTITY,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SyncRun:
        """
        Выполняет один прогон и возвращает его запись.

        Ошибки отдельных ключей и элементов попадают в SyncRun; фатальные ошибки
        (хранилище аренд или журнал недоступны, обе площадки не читаются, дедлайн)
        переводят прогон в FAILED, но не пробрасываются вызывающему.

        Raises:
            InvalidResourceKeyError: пустой или некорректный ключ ресурса
        """
        operation = SyncOperation(operation)
        direction = SyncDirection(direction)
        keys = list(dict.fromkeys(normalize_resource_key(key) for key in resource_keys))
        run = SyncRun(
            run_id=uuid.uuid4().hex,
            operation=operation,
            direction=direction,
            resource_keys=keys,
        )
        cancel_token = cancel_token or CancellationToken()
        deadline = Deadline.after(self.run_timeout, clock=self.clock)
        logger.info(
            f"Прогон {run.run_id}: {operation.value} ({direction.value}) для {len(keys)} ключей"
        )

        try:
            self._execute(run, cancel_token, deadline)
        except Exception as e:
            run.error = f"{type(e).__name__}: {e}"
            log_error_with_context(e, f"Прогон {run.run_id}", state=run.state.value, operation=operation.value)
            if not run.state.is_terminal:
                self._transition(run, RunState.FAILED, run.error)
        finally:
            self._release_leases(run)

        log_business_event("run_finished", f"Прогон {run.run_id} завершён", **run.summary())
        return run

    def _execute(self, run: SyncRun, cancel_token: CancellationToken, deadline: Deadline) -> None:
        self._transition(run, RunState.LOCKING, "run requested")
        self._acquire_leases(run)
        if not run.leased_keys:
            # Ожидаемая конкуренция, не ошибка
            self._transition(
                run, RunState.SKIPPED, "lease held by another run" if run.contended_keys else "no resource keys",
                contended_keys=list(run.contended_keys),
            )
            return
        deadline.check("locking")

        self._transition(run, RunState.READING, "leases acquired", leased=len(run.leased_keys))
        reads = self._read_all(run, deadline)

        self._transition(run, RunState.RESOLVING, "observations collected", keys=len(reads))
        items_a, items_b = self._resolve_all(run, reads)
        deadline.check("resolving")

        self._transition(
            run, RunState.WRITING, "resolutions ready",
            items_a=len(items_a), items_b=len(items_b),
        )
        self._write(run, items_a, items_b, cancel_token, deadline)

        if cancel_token.is_cancelled:
            raise SyncError(f"Прогон отменён: {cancel_token.reason}")
        if any(report.cancel_reason == SKIP_DEADLINE for report in run.reports):
            raise RunTimeoutError("Время прогона истекло во время записи")

        self.last_sync_tracker.mark(run.leased_keys, run.operation, utcnow())
        self._transition(
            run, RunState.COMPLETED, "batch executor returned",
            failed_items=sum(report.failed for report in run.reports),
        )

    def _last_sync_at(self, resource_key: str, operation: SyncOperation) -> Optional[datetime]:
        """Самое позднее из известных времён синхронизации: память процесса и внешний источник."""
        known = [self.last_sync_tracker(resource_key, operation)]
        if self.last_sync_provider is not None:
            known.append(self.last_sync_provider(resource_key, operation))
        known = [to_utc(value) for value in known if value is not None]
        return max(known) if known else None

    def _acquire_leases(self, run: SyncRun) -> None:
        for key in run.resource_keys:
            if self.lock_manager.acquire(key, run.operation.value, self.lease_ttl):
                run.leased_keys.append(key)
            else:
                run.contended_keys.append(key)
                self.events.emit(EventType.LEASE_CONTENDED, run_id=run.run_id, resource_key=key)

    def _release_leases(self, run: SyncRun) -> None:
        for key in run.leased_keys:
            self.lock_manager.release(key, run.operation.value)

    def _read_one(self, platform: PlatformReader, key: str, operation: SyncOperation,
                  deadline: Deadline) -> ReadResult:
        description = f"чтение {operation.value} {key} с {platform.name}"
        try:
            observation = retry_call(
                lambda: call_with_timeout(
                    lambda: platform.read(key, operation), deadline.bound(self.call_timeout), description
                ),
                self.read_backoff,
                sleep=self.sleep,
                description=description,
            )
        except RunTimeoutError:
            raise
        except Exception as e:
            if not isinstance(e, PlatformNotFoundError):
                logger.warning(f"Не удалось прочитать {key} с {platform.name}: {e}")
            return ReadResult(platform.name, error=e)
        return ReadResult(platform.name, observation=observation)

    def _read_all(self, run: SyncRun, deadline: Deadline) -> Dict[str, Tuple[ReadResult, ReadResult]]:
        """Читает обе площадки по каждому арендованному ключу."""
        reads: Dict[str, Tuple[ReadResult, ReadResult]] = {}
        for key in run.leased_keys:
            read_a = self._read_one(self.platform_a, key, run.operation, deadline)
            read_b = self._read_one(self.platform_b, key, run.operation, deadline)

            if not read_a.ok and not read_b.ok:
                if read_a.not_found and read_b.not_found:
                    self._skip_key(run, key, "not_found_on_both_platforms")
                    continue
                if is_transient_error(read_a.error) and is_transient_error(read_b.error):
                    raise PlatformTransientError(
                        f"Обе площадки недоступны для {key}: {read_a.error}; {read_b.error}"
                    )
                self._skip_key(run, key, f"unreadable: {read_a.error}; {read_b.error}")
                continue

            for read in (read_a, read_b):
                if read.ok:
                    run.observations.append(read.observation)
            reads[key] = (read_a, read_b)
        return reads

    def _skip_key(self, run: SyncRun, key: str, reason: str) -> None:
        logger.info(f"Прогон {run.run_id}: ключ {key} пропущен ({reason})")
        run.skipped_keys.append(SkippedKey(resource_key=key, reason=reason))
        self.events.emit(EventType.KEY_SKIPPED, run_id=run.run_id, resource_key=key, reason=reason)

    def _record(self, run: SyncRun, resolution: Resolution) -> Resolution:
        run.resolutions.append(resolution)
        self.events.log_resolution(run.run_id, resolution)
        return resolution

    def _resolve_all(self, run: SyncRun, reads) -> Tuple[List[BatchItem], List[BatchItem]]:
        items: Dict[str, List[BatchItem]] = {self.platform_a.name: [], self.platform_b.name: []}
        for key, (read_a, read_b) in reads.items():
            if run.operation == SyncOperation.PRICE:
                new_items = self._resolve_price(run, key, read_a, read_b)
            elif run.direction == SyncDirection.BIDIRECTIONAL:
                new_items = self._resolve_quantity(run, key, read_a, read_b)
            else:
                new_items = self._resolve_directional(run, key, read_a, read_b)
            for item in new_items:
                items[item.platform].append(item)
        return items[self.platform_a.name], items[self.platform_b.name]

    def _write_item(self, resolution: Resolution, platform: str, current: Optional[Observation]) -> BatchItem:
        return BatchItem(
            resource_key=resolution.resource_key,
            platform=platform,
            operation=SyncOperation.PRICE if resolution.conflict_type == ConflictType.PRICE else SyncOperation.QUANTITY,
            value=resolution.value,
            current_value=current.value if current is not None else None,
            reason=resolution.strategy.value,
        )

    def _single_source(self, run: SyncRun, key: str, present: ReadResult, missing: ReadResult,
                       conflict_type: ConflictType, value: float, **evidence) -> List[BatchItem]:
        """
        Данные есть только с одной площадки: значение берётся как есть.
        На вторую площадку пишем, только если её не удалось прочитать; если ресурса
        там нет, создавать его не наша задача.
        """
        write = not missing.not_found
        resolution = self._record(run, Resolution(
            conflict_type=conflict_type,
            resource_key=key,
            strategy=ResolutionStrategy.SINGLE_SOURCE,
            value=value,
            requires_write=write,
            observations=[present.observation],
            evidence={
                "source_platform": present.platform,
                "missing_platform": missing.platform,
                "missing_reason": "not_found" if missing.not_found else str(missing.error),
                **evidence,
            },
        ))
        return [self._write_item(resolution, missing.platform, None)] if write else []

    def _resolve_quantity(self, run: SyncRun, key: str, read_a: ReadResult, read_b: ReadResult) -> List[BatchItem]:
        if not read_a.ok:
            return self._single_source(run, key, read_b, read_a, ConflictType.QUANTITY, read_b.observation.value)
        if not read_b.ok:
            return self._single_source(run, key, read_a, read_b, ConflictType.QUANTITY, read_a.observation.value)

        observation_a, observation_b = read_a.observation, read_b.observation
        if observation_a.value == observation_b.value:
            return []
        resolution = self._record(run, self.resolver.resolve_quantity_conflict(
            observation_a, observation_b, self._last_sync_at(key, run.operation)
        ))
        return [
            self._write_item(resolution, observation.platform, observation)
            for observation in (observation_a, observation_b)
            if observation.value != resolution.value
        ]

    def _resolve_directional(self, run: SyncRun, key: str, read_a: ReadResult, read_b: ReadResult) -> List[BatchItem]:
        if run.direction == SyncDirection.A_TO_B:
            source, target = read_a, read_b
        else:
            source, target = read_b, read_a

        if not source.ok:
            self._skip_key(run, key, f"source_unavailable: {source.error}")
            return []
        if not target.ok:
            return self._single_source(run, key, source, target, ConflictType.QUANTITY, source.observation.value)
        if source.observation.value == target.observation.value:
            return []

        resolution = self._record(run, Resolution(
            conflict_type=ConflictType.QUANTITY,
            resource_key=key,
            strategy=ResolutionStrategy.SOURCE_AUTHORITATIVE,
            value=source.observation.value,
            observations=[source.observation, target.observation],
            evidence={"direction": run.direction.value, "source_platform": source.platform},
        ))
        return [self._write_item(resolution, target.platform, target.observation)]

    def _resolve_price(self, run: SyncRun, key: str, read_a: ReadResult, read_b: ReadResult) -> List[BatchItem]:
        """Цена всегда пересчитывается из площадки A в площадку B."""
        if not read_a.ok:
            self._skip_key(run, key, f"source_unavailable: {read_a.error}")
            return []

        context = self.pricing_policy.context_for(key)
        if not read_b.ok:
            price = round_price(context.expected_price(read_a.observation.value), context.currency)
            return self._single_source(
                run, key, read_a, read_b, ConflictType.PRICE, float(price),
                exchange_rate=context.exchange_rate,
                margin_multiplier=context.margin_multiplier,
                currency=context.currency,
                rounded_to_places=currency_places(context.currency),
            )

        resolution = self._record(
            run, self.resolver.resolve_price_conflict(read_a.observation, read_b.observation, context)
        )
        if not resolution.requires_write:
            return []
        return [self._write_item(resolution, self.platform_b.name, read_b.observation)]

    def _write(self, run: SyncRun, items_a: List[BatchItem], items_b: List[BatchItem],
               cancel_token: CancellationToken, deadline: Deadline) -> None:
        options = self.batch_options
        if options.call_timeout is None:
            options = replace(options, call_timeout=self.call_timeout)
        for executor, items in ((self.executor_a, items_a), (self.executor_b, items_b)):
            if not items:
                continue
            report = executor.execute(items, options, cancel_token=cancel_token, deadline=deadline)
            run.reports.append(report)
            self.events.log_batch_report(run.run_id, executor.platform, report)
            self._record_applied(run, items, report)

    def _record_applied(self, run: SyncRun, items: List[BatchItem], report: BatchRunReport) -> None:
        """
        Фиксирует в журнале значения, которые прогон успешно записал.
        Самая свежая системная запись - время последней синхронизации для любого воркера.
        """
        if self.ledger_writer is None:
            return
        by_key = {item.resource_key: item for item in reversed(items)}
        recorded_at = utcnow()
        for result in report.items:
            if result.status != ItemStatus.SUCCEEDED:
                continue
            item = by_key[result.resource_key]
            entry = LedgerEntry(
                resource_key=item.resource_key,
                kind=item.operation,
                platform=item.platform,
                previous_value=item.current_value,
                new_value=item.value,
                recorded_at=recorded_at,
                source=LedgerSource.SYSTEM,
                reason=f"{item.reason} (прогон {run.run_id})",
            )
            try:
                self.ledger_writer.append(entry)
            except LedgerUnavailableError as e:
                # Значение на площадке уже записано, прогон не откатываем
                log_error_with_context(e, f"Прогон {run.run_id}: журнал", resource_key=item.resource_key)
