import threading
from datetime import timedelta
from typing import Dict, List, Optional, Set, Tuple

import pytest
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session

from syncbridge.database import init_db, make_engine
from syncbridge.schemas.sync import Observation
from syncbridge.services.coordination.store import InMemoryCoordinationStore
from syncbridge.services.ledger.reader import SqlLedger
from syncbridge.services.platforms.base import PlatformReader, PlatformWriter, WriteOutcome
from syncbridge.services.sync.batch_executor import BatchExecutor, BatchOptions
from syncbridge.services.sync.circuit_breaker import CircuitBreaker
from syncbridge.services.sync.conflict_resolver import ConflictResolver, PricePolicy, StaticPricingPolicy
from syncbridge.services.sync.events import SyncEventLogger
from syncbridge.services.sync.exceptions import PlatformNotFoundError, PlatformTransientError
from syncbridge.services.sync.locks import LockManager
from syncbridge.services.sync.orchestrator import SyncOrchestrator
from syncbridge.services.sync.retry import ExponentialBackoff
from syncbridge.utils.keys import normalize_resource_key


class FakeClock:
    """Монотонные часы, которые двигаются только вручную."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleeper:
    """Вместо сна запоминает запрошенные задержки."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.delays: List[float] = []
        self.clock = clock

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)

    @property
    def total(self) -> float:
        return sum(self.delays)


class FakePlatform(PlatformReader, PlatformWriter):
    """Площадка в памяти с управляемыми сбоями чтения и записи."""

    def __init__(self, name: str, quantities: Optional[Dict[str, float]] = None,
                 prices: Optional[Dict[str, float]] = None):
        self.name = name
        self.quantities = {normalize_resource_key(k): v for k, v in (quantities or {}).items()}
        self.prices = {normalize_resource_key(k): v for k, v in (prices or {}).items()}
        self.read_errors: Dict[str, Exception] = {}
        self.read_transient_failures: Dict[str, int] = {}
        self.permanent_write_keys: Set[str] = set()
        self.transient_write_failures: Dict[str, int] = {}
        self.unmapped_keys: Set[str] = set()
        self.reads: List[Tuple[str, str]] = []
        self.writes: List[Tuple[str, str, float]] = []
        self.batch_calls: List[List[str]] = []
        self.read_gate: Optional[threading.Event] = None
        self.read_started = threading.Event()
        self._lock = threading.Lock()

    def _read(self, kind: str, values: Dict[str, float], resource_key: str) -> Observation:
        key = normalize_resource_key(resource_key)
        with self._lock:
            self.reads.append((kind, key))
        self.read_started.set()
        if self.read_gate is not None:
            self.read_gate.wait(timeout=5)
        if key in self.read_errors:
            raise self.read_errors[key]
        remaining = self.read_transient_failures.get(key, 0)
        if remaining > 0:
            self.read_transient_failures[key] = remaining - 1
            raise PlatformTransientError(f"{self.name}: 503 для {key}", platform=self.name, status_code=503)
        if key not in values:
            raise PlatformNotFoundError(f"{self.name}: {key} не найден", platform=self.name, status_code=404)
        return Observation(resource_key=key, platform=self.name, value=values[key])

    def get_quantity(self, resource_key: str) -> Observation:
        return self._read("quantity", self.quantities, resource_key)

    def get_price(self, resource_key: str) -> Observation:
        return self._read("price", self.prices, resource_key)

    def resolve_target(self, resource_key: str) -> Optional[str]:
        return None if resource_key in self.unmapped_keys else resource_key

    def _write(self, kind: str, values: Dict[str, float], resource_key: str, value: float) -> WriteOutcome:
        with self._lock:
            self.writes.append((kind, resource_key, value))
        if resource_key in self.permanent_write_keys:
            return WriteOutcome.permanent(f"{self.name}: {resource_key} отклонён валидацией")
        remaining = self.transient_write_failures.get(resource_key, 0)
        if remaining > 0:
            self.transient_write_failures[resource_key] = remaining - 1
            return WriteOutcome.transient(f"{self.name}: 429 Too Many Requests")
        values[resource_key] = value
        return WriteOutcome.success()

    def apply_quantity(self, resource_key: str, value: float) -> WriteOutcome:
        return self._write("quantity", self.quantities, resource_key, value)

    def apply_price(self, resource_key: str, value: float) -> WriteOutcome:
        return self._write("price", self.prices, resource_key, value)

    def apply_batch(self, items):
        with self._lock:
            self.batch_calls.append([item.resource_key for item in items])
        return super().apply_batch(items)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def store():
    return InMemoryCoordinationStore()


@pytest.fixture
def lock_manager(store):
    return LockManager(store, default_ttl=60, key_prefix="test:lock")


@pytest.fixture
def ledger():
    engine = make_engine("sqlite://")
    init_db(engine)
    session_factory = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
    yield SqlLedger(session_factory)
    engine.dispose()


@pytest.fixture
def resolver(ledger):
    return ConflictResolver(ledger, PricePolicy(threshold_percent=5.0, manual_override_window=timedelta(hours=24)))


@pytest.fixture
def backoff():
    return ExponentialBackoff(max_retries=3, base_delay=1.0, max_delay=30.0, jitter=0.25)


@pytest.fixture
def platform_a():
    return FakePlatform("platform_a")


@pytest.fixture
def platform_b():
    return FakePlatform("platform_b")


@pytest.fixture
def make_executor(sleeper, backoff):
    def factory(writer, **kwargs):
        kwargs.setdefault("circuit_breaker", CircuitBreaker(name=writer.name, failure_threshold=100))
        kwargs.setdefault("backoff", backoff)
        kwargs.setdefault("sleep", sleeper)
        return BatchExecutor(writer, **kwargs)
    return factory


@pytest.fixture
def events():
    received = []
    event_logger = SyncEventLogger(subscribers=[received.append])
    event_logger.received = received
    return event_logger


@pytest.fixture
def make_orchestrator(lock_manager, platform_a, platform_b, resolver, make_executor, sleeper, events):
    def factory(**kwargs):
        kwargs.setdefault("executor_a", make_executor(platform_a))
        kwargs.setdefault("executor_b", make_executor(platform_b))
        kwargs.setdefault("events", events)
        kwargs.setdefault("batch_options", BatchOptions(batch_size=100, inter_batch_delay=0.0, max_retries=2))
        kwargs.setdefault("read_backoff", ExponentialBackoff(max_retries=2, base_delay=0.01, max_delay=0.1))
        kwargs.setdefault("pricing_policy", StaticPricingPolicy(exchange_rate=1.0, margin_multiplier=1.0, currency="USD"))
        kwargs.setdefault("run_timeout", 30.0)
        kwargs.setdefault("call_timeout", 5.0)
        kwargs.setdefault("sleep", sleeper)
        return SyncOrchestrator(lock_manager, platform_a, platform_b, resolver, **kwargs)
    return factory
