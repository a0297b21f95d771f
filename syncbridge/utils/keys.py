"""
 * @file: keys.py
 * @description: Нормализация ключей ресурсов (SKU) перед поиском, сравнением и блокировкой
 * @created: 2025-08-04
"""
import re

from syncbridge.services.sync.exceptions import InvalidResourceKeyError

_WHITESPACE = re.compile(r"\s+")


def normalize_resource_key(resource_key: str) -> str:
    """
    Приводит ключ ресурса к каноническому виду: без пробельных символов, в верхнем регистре.

    Два ключа, отличающиеся только регистром или пробелами, дают один и тот же
    результат, а значит одну и ту же блокировку и одни и те же записи журнала.

    Raises:
        InvalidResourceKeyError: если ключ пустой или не строка
    """
    if not isinstance(resource_key, str):
        raise InvalidResourceKeyError(f"Ключ ресурса должен быть строкой, получено {type(resource_key).__name__}")
    normalized = _WHITESPACE.sub("", resource_key).upper()
    if not normalized:
        raise InvalidResourceKeyError("Ключ ресурса не может быть пустым")
    return normalized
