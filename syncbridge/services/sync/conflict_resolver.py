"""
 * @file: conflict_resolver.py
 * @description: Разрешение конфликтов остатков, цен и статусов заказов между двумя площадками
 * @dependencies: LedgerReader, Decimal
 * @created: 2025-08-04
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from syncbridge.core.config import sync_settings
from syncbridge.schemas.sync import (
    ConflictType,
    Observation,
    Resolution,
    ResolutionStrategy,
    SyncOperation,
)
from syncbridge.services.ledger.reader import LedgerReader
from syncbridge.utils.keys import normalize_resource_key

logger = logging.getLogger("sync.resolver")


# Валюты без разменной единицы (ISO 4217, exponent 0)
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW",
    "PYG", "RWF", "UGX", "UYI", "VND", "VUV", "XAF", "XOF", "XPF",
})

# Приоритет статусов заказа: побеждает более "поздний" статус
ORDER_STATUS_PRIORITY = {
    "CANCELED": 10,
    "RETURNED": 9,
    "EXCHANGED": 8,
    "DELIVERED": 7,
    "SHIPPING": 6,
    "PAYED": 5,
    "PENDING": 4,
}


def currency_places(currency: str) -> int:
    """Количество знаков после запятой для валюты площадки."""
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def round_price(amount, currency: str) -> Decimal:
    """Округляет цену до минимальной единицы валюты (HALF_UP)."""
    places = currency_places(currency)
    quantum = Decimal(1) if places == 0 else Decimal(1).scaleb(-places)
    return Decimal(str(amount)).quantize(quantum, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceContext:
    """Параметры пересчёта цены источника в цену целевой площадки."""
    exchange_rate: float
    margin_multiplier: float
    currency: str

    def expected_price(self, source_price: float) -> Decimal:
        """(цена источника / курс) * наценка, без округления."""
        if self.exchange_rate <= 0:
            raise ValueError(f"Некорректный курс обмена: {self.exchange_rate}")
        return (Decimal(str(source_price)) / Decimal(str(self.exchange_rate))) * Decimal(str(self.margin_multiplier))


class PricingPolicy(ABC):
    """Источник курса, наценки и валюты для ключа ресурса."""

    @abstractmethod
    def context_for(self, resource_key: str) -> PriceContext:
        ...


class StaticPricingPolicy(PricingPolicy):
    """Один курс и одна наценка для всех товаров, по умолчанию из настроек."""

    def __init__(self, exchange_rate: Optional[float] = None, margin_multiplier: Optional[float] = None,
                 currency: Optional[str] = None):
        self.context = PriceContext(
            exchange_rate=exchange_rate if exchange_rate is not None else sync_settings.default_exchange_rate,
            margin_multiplier=margin_multiplier if margin_multiplier is not None else sync_settings.default_margin_multiplier,
            currency=currency or sync_settings.target_currency,
        )

    def context_for(self, resource_key: str) -> PriceContext:
        return self.context


@dataclass(frozen=True)
class PricePolicy:
    """Порог шума и окно ручного переопределения цены."""
    threshold_percent: float = 5.0
    manual_override_window: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls) -> "PricePolicy":
        return cls(
            threshold_percent=sync_settings.price_threshold_percent,
            manual_override_window=timedelta(hours=sync_settings.manual_override_window_hours),
        )


class ConflictResolver:
    """
    Решает, какое значение считать авторитетным при расхождении двух площадок.

    Единственный ввод-вывод - чтение журнала. Каждое решение содержит входные
    данные и имя стратегии, чтобы его можно было перепроверить.
    """

    def __init__(self, ledger: LedgerReader, price_policy: Optional[PricePolicy] = None):
        self.ledger = ledger
        self.price_policy = price_policy or PricePolicy.from_settings()

    def resolve_quantity_conflict(
        self,
        observation_a: Observation,
        observation_b: Observation,
        last_sync_at: Optional[datetime] = None,
    ) -> Resolution:
        """
        Конфликт остатков.

        1. Есть записи журнала строго после последней синхронизации - побеждает самая свежая.
        2. Иначе берётся минимум из двух значений, чтобы не продать больше, чем есть.
        """
        resource_key = normalize_resource_key(observation_a.resource_key)
        if normalize_resource_key(observation_b.resource_key) != resource_key:
            raise ValueError(
                f"Наблюдения относятся к разным ресурсам: {observation_a.resource_key} и {observation_b.resource_key}"
            )

        logger.warning(
            f"Конфликт остатков для {resource_key}: "
            f"{observation_a.platform}={observation_a.value}, {observation_b.platform}={observation_b.value}"
        )

        observations = [observation_a, observation_b]
        if last_sync_at is not None:
            entries = self.ledger.find_latest_since(resource_key, last_sync_at, SyncOperation.QUANTITY)
            if entries:
                latest = max(entries, key=lambda e: e.recorded_at)
                resolution = Resolution(
                    conflict_type=ConflictType.QUANTITY,
                    resource_key=resource_key,
                    strategy=ResolutionStrategy.LATEST_TRANSACTION,
                    value=latest.new_value,
                    observations=observations,
                    ledger_entries=entries,
                    evidence={
                        "last_sync_at": last_sync_at.isoformat(),
                        "source_platform": latest.platform,
                        "transaction_recorded_at": latest.recorded_at.isoformat(),
                    },
                )
                logger.info(f"{resource_key}: остаток {latest.new_value} по последней транзакции ({latest.platform})")
                return resolution

        final_quantity = min(observation_a.value, observation_b.value)
        resolution = Resolution(
            conflict_type=ConflictType.QUANTITY,
            resource_key=resource_key,
            strategy=ResolutionStrategy.CONSERVATIVE_MINIMUM,
            value=final_quantity,
            observations=observations,
            evidence={"last_sync_at": last_sync_at.isoformat() if last_sync_at else None},
        )
        logger.info(f"{resource_key}: остаток {final_quantity} по консервативному минимуму")
        return resolution

    def resolve_price_conflict(
        self,
        source: Observation,
        target: Observation,
        context: PriceContext,
    ) -> Resolution:
        """
        Конфликт цен.

        Ожидаемая цена = (цена источника / курс) * наценка.
        1. Расхождение ниже порога - шум округления, запись не нужна (ignore).
        2. Есть ручная цена в окне - её не перетираем (manual_override).
        3. Иначе пересчитываем от источника с округлением до валюты цели.
        """
        resource_key = normalize_resource_key(target.resource_key)
        expected = context.expected_price(source.value)
        observed = Decimal(str(target.value))
        if expected <= 0:
            raise ValueError(f"Ожидаемая цена для {resource_key} должна быть положительной: {expected}")

        percent_difference = abs(observed - expected) / expected * 100
        evidence = {
            "source_price": source.value,
            "observed_price": target.value,
            "expected_price": float(expected),
            "percent_difference": float(percent_difference),
            "threshold_percent": self.price_policy.threshold_percent,
            "exchange_rate": context.exchange_rate,
            "margin_multiplier": context.margin_multiplier,
            "currency": context.currency,
        }
        observations = [source, target]

        if percent_difference < Decimal(str(self.price_policy.threshold_percent)):
            logger.debug(f"{resource_key}: расхождение цены {float(percent_difference):.2f}% ниже порога, игнорируем")
            return Resolution(
                conflict_type=ConflictType.PRICE,
                resource_key=resource_key,
                strategy=ResolutionStrategy.IGNORE,
                value=target.value,
                requires_write=False,
                observations=observations,
                evidence=evidence,
            )

        logger.warning(
            f"Конфликт цены для {resource_key}: ожидается {float(expected):.4f}, "
            f"на площадке {target.value} ({float(percent_difference):.2f}%)"
        )

        override = self.ledger.find_manual_override(
            resource_key, self.price_policy.manual_override_window, SyncOperation.PRICE
        )
        if override is not None:
            evidence["override_recorded_at"] = override.recorded_at.isoformat()
            evidence["manual_override_window_hours"] = self.price_policy.manual_override_window.total_seconds() / 3600
            return Resolution(
                conflict_type=ConflictType.PRICE,
                resource_key=resource_key,
                strategy=ResolutionStrategy.MANUAL_OVERRIDE,
                value=override.new_value,
                requires_write=override.new_value != target.value,
                observations=observations,
                ledger_entries=[override],
                evidence=evidence,
            )

        final_price = round_price(expected, context.currency)
        evidence["rounded_to_places"] = currency_places(context.currency)
        return Resolution(
            conflict_type=ConflictType.PRICE,
            resource_key=resource_key,
            strategy=ResolutionStrategy.RECALCULATE_FROM_SOURCE,
            value=float(final_price),
            requires_write=float(final_price) != target.value,
            observations=observations,
            evidence=evidence,
        )

    def resolve_order_conflict(self, order_id: str, status_a: str, status_b: str) -> Resolution:
        """
        Конфликт статусов заказа: побеждает статус с большим приоритетом,
        при равенстве - статус площадки B.
        """
        priority_a = ORDER_STATUS_PRIORITY.get(status_a.upper(), 0)
        priority_b = ORDER_STATUS_PRIORITY.get(status_b.upper(), 0)
        if priority_a > priority_b:
            final_status, source = status_a, "a"
        else:
            final_status, source = status_b, "b"

        logger.warning(f"Конфликт статуса заказа {order_id}: {status_a} vs {status_b} -> {final_status}")
        return Resolution(
            conflict_type=ConflictType.ORDER,
            resource_key=normalize_resource_key(order_id),
            strategy=ResolutionStrategy.STATUS_PRIORITY,
            requires_write=False,
            evidence={
                "status_a": status_a,
                "status_b": status_b,
                "final_status": final_status,
                "source": source,
                "priority_a": priority_a,
                "priority_b": priority_b,
            },
        )
