"""
 * @file: reader.py
 * @description: Чтение журнала транзакций остатков и цен - источник истины для разрешения конфликтов
 * @dependencies: SQLModel, LedgerEntryRecord
 * @created: 2025-08-04
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from syncbridge.models.ledger import LedgerEntryRecord
from syncbridge.schemas.sync import LedgerEntry, LedgerSource, SyncOperation
from syncbridge.services.sync.exceptions import LedgerUnavailableError
from syncbridge.utils.date_utils import to_utc, utcnow
from syncbridge.utils.keys import normalize_resource_key

logger = logging.getLogger("sync.ledger")


class LedgerReader(ABC):
    """Сторона чтения журнала, которую использует ConflictResolver."""

    @abstractmethod
    def find_latest_since(
        self,
        resource_key: str,
        since: datetime,
        kind: SyncOperation = SyncOperation.QUANTITY,
    ) -> List[LedgerEntry]:
        """Записи строго новее since, от самой свежей к самой старой."""

    @abstractmethod
    def find_manual_override(
        self,
        resource_key: str,
        within: timedelta,
        kind: SyncOperation = SyncOperation.PRICE,
    ) -> Optional[LedgerEntry]:
        """Самая свежая ручная запись за окно within или None."""


class LedgerWriter(ABC):
    """Сторона записи журнала: оркестратор фиксирует в нём применённые значения."""

    @abstractmethod
    def append(self, entry: LedgerEntry):
        """Дописывает запись в журнал."""


class SqlLedger(LedgerReader, LedgerWriter):
    """
    Журнал на SQLModel: чтение для разрешения конфликтов, дописывание применённых
    значений и время последней синхронизации по самой свежей системной записи.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    @staticmethod
    def _to_entry(record: LedgerEntryRecord) -> LedgerEntry:
        return LedgerEntry(
            resource_key=record.resource_key,
            kind=SyncOperation(record.kind),
            platform=record.platform,
            previous_value=record.previous_value,
            new_value=record.new_value,
            recorded_at=to_utc(record.recorded_at),
            source=LedgerSource(record.source),
            reason=record.reason,
        )

    def find_latest_since(
        self,
        resource_key: str,
        since: datetime,
        kind: SyncOperation = SyncOperation.QUANTITY,
    ) -> List[LedgerEntry]:
        key = normalize_resource_key(resource_key)
        since = to_utc(since)
        try:
            with self.session_factory() as session:
                records = session.exec(
                    select(LedgerEntryRecord)
                    .where(
                        LedgerEntryRecord.resource_key == key,
                        LedgerEntryRecord.kind == kind.value,
                        LedgerEntryRecord.recorded_at > since,
                    )
                    .order_by(LedgerEntryRecord.recorded_at.desc())
                ).all()
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Журнал недоступен при чтении {key}: {e}") from e
        return [self._to_entry(r) for r in records]

    def find_manual_override(
        self,
        resource_key: str,
        within: timedelta,
        kind: SyncOperation = SyncOperation.PRICE,
    ) -> Optional[LedgerEntry]:
        key = normalize_resource_key(resource_key)
        threshold = to_utc(self.clock()) - within
        try:
            with self.session_factory() as session:
                record = session.exec(
                    select(LedgerEntryRecord)
                    .where(
                        LedgerEntryRecord.resource_key == key,
                        LedgerEntryRecord.kind == kind.value,
                        LedgerEntryRecord.source == LedgerSource.MANUAL.value,
                        LedgerEntryRecord.recorded_at >= threshold,
                    )
                    .order_by(LedgerEntryRecord.recorded_at.desc())
                ).first()
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Журнал недоступен при поиске ручной цены {key}: {e}") from e
        return self._to_entry(record) if record else None

    def last_sync_at(self, resource_key: str, kind: SyncOperation) -> Optional[datetime]:
        """Время самой свежей записи, сделанной самой синхронизацией (source=system), или None."""
        key = normalize_resource_key(resource_key)
        try:
            with self.session_factory() as session:
                record = session.exec(
                    select(LedgerEntryRecord)
                    .where(
                        LedgerEntryRecord.resource_key == key,
                        LedgerEntryRecord.kind == kind.value,
                        LedgerEntryRecord.source == LedgerSource.SYSTEM.value,
                    )
                    .order_by(LedgerEntryRecord.recorded_at.desc())
                ).first()
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Журнал недоступен при поиске последней синхронизации {key}: {e}") from e
        return to_utc(record.recorded_at) if record else None

    def append(self, entry: LedgerEntry) -> LedgerEntryRecord:
        """Дописывает запись в журнал."""
        record = LedgerEntryRecord(
            resource_key=entry.resource_key,
            kind=entry.kind.value,
            platform=entry.platform,
            previous_value=entry.previous_value,
            new_value=entry.new_value,
            source=entry.source.value,
            reason=entry.reason,
            recorded_at=to_utc(entry.recorded_at),
        )
        try:
            with self.session_factory() as session:
                session.add(record)
                session.commit()
                session.refresh(record)
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Журнал недоступен при записи {entry.resource_key}: {e}") from e
        logger.debug(f"В журнал добавлена запись {record}")
        return record
