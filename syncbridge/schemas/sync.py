from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from syncbridge.utils.date_utils import utcnow
from syncbridge.utils.keys import normalize_resource_key


class SyncOperation(str, Enum):
    """Тип синхронизируемого значения."""
    QUANTITY = "quantity"
    PRICE = "price"


class SyncDirection(str, Enum):
    """Направление синхронизации остатков."""
    BIDIRECTIONAL = "bidirectional"
    A_TO_B = "a_to_b"
    B_TO_A = "b_to_a"


class LedgerSource(str, Enum):
    """Кто инициировал изменение, записанное в журнал."""
    SYSTEM = "system"
    MANUAL = "manual"
    WEBHOOK = "webhook"


class ConflictType(str, Enum):
    QUANTITY = "quantity"
    PRICE = "price"
    ORDER = "order"


class ResolutionStrategy(str, Enum):
    """Стратегии разрешения конфликтов."""
    LATEST_TRANSACTION = "latest_transaction"
    CONSERVATIVE_MINIMUM = "conservative_minimum"
    IGNORE = "ignore"
    MANUAL_OVERRIDE = "manual_override"
    RECALCULATE_FROM_SOURCE = "recalculate_from_source"
    SOURCE_AUTHORITATIVE = "source_authoritative"
    SINGLE_SOURCE = "single_source"
    STATUS_PRIORITY = "status_priority"


class ItemStatus(str, Enum):
    """Жизненный цикл элемента пакета: queued -> attempted -> succeeded | failed | skipped."""
    QUEUED = "queued"
    ATTEMPTED = "attempted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunState(str, Enum):
    """Состояния прогона синхронизации."""
    IDLE = "idle"
    LOCKING = "locking"
    READING = "reading"
    RESOLVING = "resolving"
    WRITING = "writing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.SKIPPED)


class RunOutcome(str, Enum):
    """Итог прогона для дашбордов и алертов: частичная деградация отделена от полного сбоя."""
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    FAILED = "failed"
    SKIPPED = "skipped"
    IN_PROGRESS = "in_progress"


class Observation(BaseModel):
    """Значение, прочитанное с площадки в момент синхронизации."""
    model_config = ConfigDict(frozen=True)

    resource_key: str
    platform: str
    value: float
    observed_at: datetime = Field(default_factory=utcnow)

    @field_validator("resource_key")
    @classmethod
    def _normalize_key(cls, v: str) -> str:
        return normalize_resource_key(v)


class LedgerEntry(BaseModel):
    """Неизменяемая запись журнала о ранее применённом изменении."""
    model_config = ConfigDict(frozen=True)

    resource_key: str
    kind: SyncOperation
    platform: str
    previous_value: Optional[float] = None
    new_value: float
    recorded_at: datetime
    source: LedgerSource = LedgerSource.SYSTEM
    reason: Optional[str] = None

    @field_validator("resource_key")
    @classmethod
    def _normalize_key(cls, v: str) -> str:
        return normalize_resource_key(v)


class Resolution(BaseModel):
    """
    Результат разрешения конфликта.

    Содержит всё необходимое для независимой перепроверки решения:
    входные наблюдения, использованные записи журнала и параметры расчёта.
    """
    model_config = ConfigDict(frozen=True)

    conflict_type: ConflictType
    resource_key: str
    strategy: ResolutionStrategy
    value: Optional[float] = None
    requires_write: bool = True
    observations: List[Observation] = Field(default_factory=list)
    ledger_entries: List[LedgerEntry] = Field(default_factory=list)
    evidence: Dict[str, Any] = Field(default_factory=dict)
    resolved_at: datetime = Field(default_factory=utcnow)


class BatchItem(BaseModel):
    """Одна ожидающая запись на площадку."""
    model_config = ConfigDict(frozen=True)

    resource_key: str
    platform: str
    operation: SyncOperation
    value: float
    current_value: Optional[float] = None
    reason: Optional[str] = None

    @field_validator("resource_key")
    @classmethod
    def _normalize_key(cls, v: str) -> str:
        return normalize_resource_key(v)


class ItemResult(BaseModel):
    """Итог обработки одного элемента пакета."""
    model_config = ConfigDict(frozen=True)

    resource_key: str
    platform: str
    status: ItemStatus
    attempts: int = 0
    error: Optional[str] = None
    reason: Optional[str] = None
    transient: bool = False


class ItemFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource_key: str
    platform: str
    error: str
    transient: bool = False


class BatchRunReport(BaseModel):
    """Сводный отчёт о пакетной записи. Неизменяем после возврата из исполнителя."""
    model_config = ConfigDict(frozen=True)

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[ItemFailure] = Field(default_factory=list)
    items: List[ItemResult] = Field(default_factory=list)
    chunks_total: int = 0
    chunks_attempted: int = 0
    cancelled: bool = False
    cancel_reason: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    duration_seconds: float = 0.0

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    @property
    def success_rate(self) -> float:
        """Процент успешно записанных элементов."""
        if self.total <= 0:
            return 100.0
        return (self.succeeded / self.total) * 100


class SkippedKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource_key: str
    reason: str


class SyncRun(BaseModel):
    """Единица работы оркестратора."""
    run_id: str
    operation: SyncOperation
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    resource_keys: List[str] = Field(default_factory=list)
    state: RunState = RunState.IDLE
    state_history: List[RunState] = Field(default_factory=lambda: [RunState.IDLE])
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    leased_keys: List[str] = Field(default_factory=list)
    contended_keys: List[str] = Field(default_factory=list)
    skipped_keys: List[SkippedKey] = Field(default_factory=list)
    observations: List[Observation] = Field(default_factory=list)
    resolutions: List[Resolution] = Field(default_factory=list)
    reports: List[BatchRunReport] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def outcome(self) -> RunOutcome:
        if self.state == RunState.SKIPPED:
            return RunOutcome.SKIPPED
        if self.state == RunState.FAILED:
            return RunOutcome.FAILED
        if self.state == RunState.COMPLETED:
            if any(report.has_failures for report in self.reports):
                return RunOutcome.COMPLETED_WITH_FAILURES
            return RunOutcome.COMPLETED
        return RunOutcome.IN_PROGRESS

    def summary(self) -> Dict[str, Any]:
        """Краткая сводка прогона для логов и результата Celery задачи."""
        return {
            "run_id": self.run_id,
            "operation": self.operation.value,
            "state": self.state.value,
            "outcome": self.outcome.value,
            "resource_keys": len(self.resource_keys),
            "leased": len(self.leased_keys),
            "contended": len(self.contended_keys),
            "skipped": len(self.skipped_keys),
            "resolutions": len(self.resolutions),
            "succeeded": sum(r.succeeded for r in self.reports),
            "failed": sum(r.failed for r in self.reports),
            "error": self.error,
        }


class SyncEvent(BaseModel):
    """Структурированное событие для внешнего логирования и алертов."""
    model_config = ConfigDict(frozen=True)

    event_type: str
    run_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)
