import random
import time

import pytest
import requests

from syncbridge.services.sync.circuit_breaker import CircuitBreaker, CircuitState
from syncbridge.services.sync.exceptions import (
    CircuitOpenError,
    PlatformNotFoundError,
    PlatformPermanentError,
    PlatformTransientError,
    RemoteCallTimeoutError,
    RunTimeoutError,
    is_transient_error,
)
from syncbridge.services.sync.rate_limiter import TokenBucketRateLimiter
from syncbridge.services.sync.retry import ExponentialBackoff, RetryStats, retry_call
from syncbridge.services.sync.timeouts import Deadline, call_with_timeout

from tests.conftest import FakeClock, RecordingSleeper


class Flaky:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.calls = 0
        self.error = error or PlatformTransientError("503", status_code=503)

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def http_error(status):
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(response=response)


@pytest.mark.parametrize("error, transient", [
    (PlatformTransientError("429", status_code=429), True),
    (CircuitOpenError(), True),
    (TimeoutError(), True),
    (ConnectionResetError(), True),
    (requests.ConnectionError(), True),
    (requests.Timeout(), True),
    (http_error(503), True),
    (http_error(429), True),
    (http_error(400), False),
    (http_error(408), False),
    (http_error(425), False),
    (PlatformNotFoundError("404"), False),
    (PlatformPermanentError("bad sku"), False),
    (RunTimeoutError(), False),
    (ValueError("bug"), False),
])
def test_is_transient_error(error, transient):
    assert is_transient_error(error) is transient


def test_backoff_delays_stay_between_floor_and_cap():
    policy = ExponentialBackoff(max_retries=6, base_delay=1.0, max_delay=10.0, jitter=0.5, rng=random.Random(7))
    for attempt in range(6):
        delay = policy.next_delay(attempt)
        assert policy.floor_delay(attempt) <= delay <= policy.max_delay
    assert policy.floor_delay(10) == 10.0


def test_backoff_honours_retry_after_up_to_cap():
    policy = ExponentialBackoff(base_delay=1.0, max_delay=30.0, jitter=0.0)
    assert policy.next_delay(0, PlatformTransientError("429", retry_after=12)) == 12.0
    assert policy.next_delay(0, PlatformTransientError("429", retry_after=120)) == 30.0


def test_retry_succeeds_after_max_retries_transient_failures():
    policy = ExponentialBackoff(max_retries=3, base_delay=1.0, max_delay=4.0, jitter=0.25)
    sleeper = RecordingSleeper()
    stats = RetryStats()
    func = Flaky(failures=3)

    assert retry_call(func, policy, sleep=sleeper, stats=stats) == "ok"

    assert stats.attempts == 4
    floors = sum(policy.floor_delay(i) for i in range(3))
    assert stats.total_delay == pytest.approx(sleeper.total)
    assert floors <= sleeper.total <= policy.max_delay * policy.max_retries


def test_retry_gives_up_after_max_retries():
    func = Flaky(failures=10)
    with pytest.raises(PlatformTransientError):
        retry_call(func, ExponentialBackoff(max_retries=2, base_delay=0.1), sleep=RecordingSleeper())
    assert func.calls == 3


def test_permanent_errors_are_not_retried():
    func = Flaky(failures=1, error=PlatformPermanentError("invalid"))
    sleeper = RecordingSleeper()
    with pytest.raises(PlatformPermanentError):
        retry_call(func, ExponentialBackoff(max_retries=5), sleep=sleeper)
    assert func.calls == 1
    assert sleeper.delays == []


def test_circuit_opens_after_threshold_and_rejects_calls():
    clock = FakeClock()
    breaker = CircuitBreaker(name="b", failure_threshold=3, recovery_timeout=30.0, clock=clock)
    failing = Flaky(failures=100)

    for _ in range(3):
        with pytest.raises(PlatformTransientError):
            breaker.call(failing)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        breaker.call(failing)
    assert failing.calls == 3
    assert breaker.stats.rejected_requests == 1


def test_circuit_half_open_allows_single_trial_then_closes():
    clock = FakeClock()
    breaker = CircuitBreaker(name="b", failure_threshold=1, recovery_timeout=10.0, clock=clock)
    with pytest.raises(PlatformTransientError):
        breaker.call(Flaky(failures=1))

    clock.advance(10)
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.allow_request() is True
    assert breaker.allow_request() is False

    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED


def test_circuit_reopens_when_trial_fails():
    clock = FakeClock()
    breaker = CircuitBreaker(name="b", failure_threshold=1, recovery_timeout=10.0, clock=clock)
    with pytest.raises(PlatformTransientError):
        breaker.call(Flaky(failures=1))
    clock.advance(10)

    with pytest.raises(PlatformTransientError):
        breaker.call(Flaky(failures=1))
    assert breaker.state == CircuitState.OPEN


def test_permanent_errors_do_not_trip_circuit():
    breaker = CircuitBreaker(name="b", failure_threshold=2)
    for _ in range(5):
        with pytest.raises(PlatformPermanentError):
            breaker.call(Flaky(failures=1, error=PlatformPermanentError("bad")))
    assert breaker.state == CircuitState.CLOSED


def test_rate_limiter_blocks_until_tokens_refill():
    clock = FakeClock()
    sleeper = RecordingSleeper(clock)
    limiter = TokenBucketRateLimiter(requests_per_minute=60, capacity=2, clock=clock, sleep=sleeper)

    assert limiter.acquire() is True
    assert limiter.acquire() is True
    assert sleeper.delays == []

    assert limiter.acquire() is True
    assert sleeper.total == pytest.approx(1.0)


def test_rate_limiter_times_out():
    clock = FakeClock()
    limiter = TokenBucketRateLimiter(requests_per_minute=6, capacity=1, clock=clock, sleep=RecordingSleeper(clock))
    assert limiter.acquire() is True
    assert limiter.acquire(timeout=2.0) is False


def test_call_with_timeout_returns_result():
    assert call_with_timeout(lambda: 42, 1.0) == 42


def test_call_with_timeout_raises_when_call_hangs():
    started = time.monotonic()
    with pytest.raises(RemoteCallTimeoutError):
        call_with_timeout(lambda: time.sleep(2), 0.1, "hanging read")
    assert time.monotonic() - started < 1.5
    assert is_transient_error(RemoteCallTimeoutError("x"))


def test_call_with_timeout_propagates_errors():
    def missing():
        raise PlatformNotFoundError("404")

    with pytest.raises(PlatformNotFoundError):
        call_with_timeout(missing, 1.0)


def test_deadline_bounds_call_timeout():
    clock = FakeClock()
    deadline = Deadline.after(10, clock=clock)
    assert deadline.bound(30.0) == 10.0
    clock.advance(10)
    assert deadline.expired()
    with pytest.raises(RunTimeoutError):
        deadline.bound(30.0)
