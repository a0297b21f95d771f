from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from syncbridge.schemas.sync import (
    ConflictType,
    LedgerEntry,
    LedgerSource,
    Observation,
    ResolutionStrategy,
    SyncOperation,
)
from syncbridge.services.sync.conflict_resolver import (
    PriceContext,
    StaticPricingPolicy,
    currency_places,
    round_price,
)
from syncbridge.utils.date_utils import utcnow

USD = PriceContext(exchange_rate=1.0, margin_multiplier=1.0, currency="USD")


def quantity(platform, value, key="SKU-1"):
    return Observation(resource_key=key, platform=platform, value=value)


def price(platform, value, key="SKU-1"):
    return Observation(resource_key=key, platform=platform, value=value)


def test_conservative_minimum_without_newer_ledger_entries(resolver):
    resolution = resolver.resolve_quantity_conflict(quantity("a", 10), quantity("b", 7), last_sync_at=utcnow())

    assert resolution.strategy == ResolutionStrategy.CONSERVATIVE_MINIMUM
    assert resolution.value == 7
    assert resolution.conflict_type == ConflictType.QUANTITY
    assert [o.value for o in resolution.observations] == [10, 7]


def test_conservative_minimum_when_last_sync_unknown(resolver, ledger):
    ledger.append(LedgerEntry(
        resource_key="SKU-1", kind=SyncOperation.QUANTITY, platform="a",
        previous_value=10, new_value=5, recorded_at=utcnow(),
    ))
    resolution = resolver.resolve_quantity_conflict(quantity("a", 10), quantity("b", 7))
    assert resolution.strategy == ResolutionStrategy.CONSERVATIVE_MINIMUM
    assert resolution.value == 7


def test_latest_transaction_takes_precedence(resolver, ledger):
    last_sync = utcnow() - timedelta(minutes=10)
    ledger.append(LedgerEntry(
        resource_key="sku-1", kind=SyncOperation.QUANTITY, platform="a",
        previous_value=8, new_value=9, recorded_at=last_sync - timedelta(minutes=1),
    ))
    ledger.append(LedgerEntry(
        resource_key="SKU-1", kind=SyncOperation.QUANTITY, platform="a",
        previous_value=6, new_value=6, recorded_at=last_sync + timedelta(minutes=2),
    ))
    ledger.append(LedgerEntry(
        resource_key=" sku-1", kind=SyncOperation.QUANTITY, platform="b",
        previous_value=6, new_value=5, recorded_at=last_sync + timedelta(minutes=5),
    ))

    resolution = resolver.resolve_quantity_conflict(quantity("a", 10), quantity("b", 7), last_sync_at=last_sync)

    assert resolution.strategy == ResolutionStrategy.LATEST_TRANSACTION
    assert resolution.value == 5
    assert resolution.evidence["source_platform"] == "b"
    assert len(resolution.ledger_entries) == 2


def test_ledger_entries_for_other_kind_are_ignored(resolver, ledger):
    last_sync = utcnow() - timedelta(minutes=10)
    ledger.append(LedgerEntry(
        resource_key="SKU-1", kind=SyncOperation.PRICE, platform="a",
        new_value=5, recorded_at=utcnow(),
    ))
    resolution = resolver.resolve_quantity_conflict(quantity("a", 10), quantity("b", 7), last_sync_at=last_sync)
    assert resolution.strategy == ResolutionStrategy.CONSERVATIVE_MINIMUM


def test_quantity_conflict_rejects_different_resources(resolver):
    with pytest.raises(ValueError):
        resolver.resolve_quantity_conflict(quantity("a", 1, "SKU-1"), quantity("b", 2, "SKU-2"))


def test_small_price_difference_is_ignored(resolver):
    resolution = resolver.resolve_price_conflict(price("a", 100.0), price("b", 103.0), USD)

    assert resolution.strategy == ResolutionStrategy.IGNORE
    assert resolution.requires_write is False
    assert resolution.evidence["percent_difference"] == pytest.approx(3.0)
    assert resolution.evidence["expected_price"] == pytest.approx(100.0)


def test_large_price_difference_is_recalculated(resolver):
    resolution = resolver.resolve_price_conflict(price("a", 100.0), price("b", 110.0), USD)

    assert resolution.strategy == ResolutionStrategy.RECALCULATE_FROM_SOURCE
    assert resolution.value == 100.0
    assert resolution.requires_write is True
    assert resolution.evidence["percent_difference"] == pytest.approx(10.0)


def test_threshold_boundary_is_not_ignored(resolver):
    resolution = resolver.resolve_price_conflict(price("a", 100.0), price("b", 105.0), USD)
    assert resolution.strategy == ResolutionStrategy.RECALCULATE_FROM_SOURCE


def test_manual_override_within_window_wins(resolver, ledger):
    ledger.append(LedgerEntry(
        resource_key="SKU-1", kind=SyncOperation.PRICE, platform="b",
        previous_value=100.0, new_value=120.0, recorded_at=utcnow() - timedelta(hours=2),
        source=LedgerSource.MANUAL, reason="акция",
    ))

    resolution = resolver.resolve_price_conflict(price("a", 100.0), price("b", 110.0), USD)

    assert resolution.strategy == ResolutionStrategy.MANUAL_OVERRIDE
    assert resolution.value == 120.0
    assert resolution.ledger_entries[0].source == LedgerSource.MANUAL


def test_manual_override_outside_window_is_ignored(resolver, ledger):
    ledger.append(LedgerEntry(
        resource_key="SKU-1", kind=SyncOperation.PRICE, platform="b",
        new_value=120.0, recorded_at=utcnow() - timedelta(hours=30), source=LedgerSource.MANUAL,
    ))
    resolution = resolver.resolve_price_conflict(price("a", 100.0), price("b", 110.0), USD)
    assert resolution.strategy == ResolutionStrategy.RECALCULATE_FROM_SOURCE


def test_recalculation_applies_rate_and_margin():
    context = PriceContext(exchange_rate=1350.0, margin_multiplier=1.15, currency="USD")
    assert context.expected_price(13500.0) == Decimal("11.500")


def test_recalculated_price_rounds_to_currency_unit(resolver):
    context = PriceContext(exchange_rate=0.0075, margin_multiplier=1.0, currency="JPY")
    resolution = resolver.resolve_price_conflict(price("a", 10.0), price("b", 1000.0), context)

    assert resolution.value == 1333.0
    assert resolution.evidence["rounded_to_places"] == 0


@pytest.mark.parametrize("amount, currency, expected", [
    ("10.005", "USD", Decimal("10.01")),
    ("10.004", "usd", Decimal("10.00")),
    ("1333.5", "JPY", Decimal("1334")),
    ("99.4", "KRW", Decimal("99")),
])
def test_round_price(amount, currency, expected):
    assert round_price(Decimal(amount), currency) == expected


def test_currency_places():
    assert currency_places("VND") == 0
    assert currency_places("EUR") == 2


def test_invalid_exchange_rate_is_rejected(resolver):
    context = PriceContext(exchange_rate=0.0, margin_multiplier=1.0, currency="USD")
    with pytest.raises(ValueError):
        resolver.resolve_price_conflict(price("a", 100.0), price("b", 110.0), context)


def test_static_pricing_policy_uses_given_values():
    policy = StaticPricingPolicy(exchange_rate=2.0, margin_multiplier=1.5, currency="EUR")
    context = policy.context_for("SKU-1")
    assert context.expected_price(10.0) == Decimal("7.5")
    assert context.currency == "EUR"


@pytest.mark.parametrize("status_a, status_b, expected, source", [
    ("SHIPPING", "DELIVERED", "DELIVERED", "b"),
    ("CANCELED", "PAYED", "CANCELED", "a"),
    ("PENDING", "PENDING", "PENDING", "b"),
    ("UNKNOWN", "PENDING", "PENDING", "b"),
])
def test_order_status_priority(resolver, status_a, status_b, expected, source):
    resolution = resolver.resolve_order_conflict("order-1", status_a, status_b)

    assert resolution.strategy == ResolutionStrategy.STATUS_PRIORITY
    assert resolution.evidence["final_status"] == expected
    assert resolution.evidence["source"] == source
    assert resolution.requires_write is False


def test_ledger_returns_utc_aware_timestamps(ledger):
    recorded_at = utcnow() - timedelta(minutes=1)
    ledger.append(LedgerEntry(
        resource_key="SKU-1", kind=SyncOperation.QUANTITY, platform="a",
        new_value=5, recorded_at=recorded_at,
    ))
    moscow = timezone(timedelta(hours=3))

    entries = ledger.find_latest_since("SKU-1", (recorded_at - timedelta(seconds=30)).astimezone(moscow))
    assert entries[0].recorded_at == recorded_at
    assert entries[0].recorded_at.utcoffset() == timedelta(0)
    assert ledger.find_latest_since("SKU-1", (recorded_at + timedelta(seconds=30)).astimezone(moscow)) == []
    # Naive значение считается UTC
    assert len(ledger.find_latest_since("SKU-1", datetime(2000, 1, 1))) == 1


def test_last_sync_is_newest_system_entry(ledger):
    assert ledger.last_sync_at("SKU-1", SyncOperation.QUANTITY) is None
    synced_at = utcnow() - timedelta(minutes=5)
    ledger.append(LedgerEntry(
        resource_key="SKU-1", kind=SyncOperation.QUANTITY, platform="a",
        new_value=7, recorded_at=synced_at - timedelta(minutes=5),
    ))
    ledger.append(LedgerEntry(
        resource_key="sku-1", kind=SyncOperation.QUANTITY, platform="b",
        new_value=7, recorded_at=synced_at,
    ))
    ledger.append(LedgerEntry(
        resource_key="SKU-1", kind=SyncOperation.QUANTITY, platform="b",
        new_value=3, recorded_at=utcnow(), source=LedgerSource.WEBHOOK,
    ))

    assert ledger.last_sync_at("SKU-1", SyncOperation.QUANTITY) == synced_at
    assert ledger.last_sync_at("SKU-1", SyncOperation.PRICE) is None
