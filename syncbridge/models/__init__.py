"""
Все SQLModel таблицы ядра, для init_db (create_all).
"""
from .ledger import LedgerEntryRecord

__all__ = [
    "LedgerEntryRecord",
]
