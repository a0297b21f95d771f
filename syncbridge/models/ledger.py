from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel

from syncbridge.utils.date_utils import utcnow


class LedgerEntryRecord(SQLModel, table=True):
    """
    Запись журнала применённых изменений остатков и цен.

    Журнал только дополняется. Оркестратор пишет в него применённые значения (source=system),
    внешние источники - ручные правки и вебхуки площадок.
    """
    __tablename__ = "ledger_entries"

    id: UUID = Field(default_factory=uuid4, primary_key=True)

    resource_key: str = Field(index=True, description="Нормализованный ключ ресурса (SKU)")
    kind: str = Field(index=True, description="Тип значения: quantity или price")
    platform: str = Field(index=True, description="Площадка, на которой применено изменение")

    previous_value: Optional[float] = Field(default=None, description="Значение до изменения")
    new_value: float = Field(description="Значение после изменения")

    source: str = Field(default="system", index=True, description="Инициатор: system, manual, webhook")
    reason: Optional[str] = Field(default=None, description="Причина или источник изменения")
    recorded_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
        description="Время записи (UTC)"
    )

    def __str__(self) -> str:
        return f"Ledger({self.kind}:{self.resource_key}@{self.platform}) {self.previous_value} -> {self.new_value}"
