from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Текущее время UTC с tzinfo=timezone.utc.

    Все метки времени ядра (ledger, наблюдения, прогоны) хранятся как offset-aware UTC.
    """
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """
    Приводит datetime к offset-aware UTC.

    Naive значение считается уже записанным в UTC: так его возвращает SQLite,
    который не хранит часовой пояс.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
