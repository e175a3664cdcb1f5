"""Tests for app.services.circuit_breaker — Redis-backed breaker and registry."""
import time
import pytest
from unittest.mock import MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from app.services.circuit_breaker import (
    CircuitBreaker, CircuitOpenError, CLOSED, OPEN, HALF_OPEN,
    get_breaker, get_all_breakers, init_breakers, _registry,
)


class FakeRedis:
    """Minimal in-memory Redis fake for circuit breaker tests."""

    def __init__(self):
        self.get_store = {}
        self.hash_store = {}

    def get(self, key):
        return self.get_store.get(key)

    def set(self, key, value):
        self.get_store[key] = str(value)

    def incr(self, key):
        val = int(self.get_store.get(key, 0)) + 1
        self.get_store[key] = str(val)
        return val

    def delete(self, *keys):
        for k in keys:
            self.get_store.pop(k, None)
            self.hash_store.pop(k, None)

    def hset(self, key, field, value):
        self.hash_store.setdefault(key, {})[field] = value

    def hincrby(self, key, field, amount):
        h = self.hash_store.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)

    def hgetall(self, key):
        return dict(self.hash_store.get(key, {}))

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Queues commands and applies them on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def __getattr__(self, name):
        def queue(*args):
            self._ops.append((name, args))
            return self
        return queue

    def execute(self):
        results = [getattr(self._redis, name)(*args) for name, args in self._ops]
        self._ops = []
        return results


class DownRedis:
    """Every command fails as if Redis were unreachable."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise RedisConnectionError('redis down')
        return fail


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cb(fake_redis):
    """Fresh circuit breaker with fake Redis."""
    return CircuitBreaker('test_svc', fake_redis, failure_threshold=3, reset_timeout=10)


@pytest.fixture
def clean_registry():
    saved = dict(_registry)
    _registry.clear()
    yield _registry
    _registry.clear()
    _registry.update(saved)


def _fail():
    raise ValueError("boom")


def _trip(cb, times=3):
    for _ in range(times):
        with pytest.raises(ValueError):
            cb.call(_fail)


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------

class TestCircuitBreakerStates:
    """CLOSED → OPEN → HALF_OPEN → CLOSED."""

    def test_starts_closed(self, cb):
        assert cb.state == CLOSED

    def test_stays_closed_on_success(self, cb):
        assert cb.call(lambda: 'ok') == 'ok'
        assert cb.state == CLOSED

    def test_counts_failures_below_threshold(self, cb):
        _trip(cb, 2)
        assert cb.failure_count == 2
        assert cb.state == CLOSED

    def test_success_resets_failures(self, cb):
        _trip(cb, 2)
        cb.call(lambda: 'ok')
        assert cb.failure_count == 0

    def test_opens_at_threshold(self, cb):
        _trip(cb)
        assert cb.state == OPEN

    def test_open_rejects_calls_without_calling(self, cb):
        _trip(cb)
        func = MagicMock()
        with pytest.raises(CircuitOpenError) as exc_info:
            cb.call(func)
        func.assert_not_called()
        assert exc_info.value.name == 'test_svc'
        assert 0 < exc_info.value.retry_after <= 10

    def test_half_open_after_timeout(self, cb, fake_redis):
        _trip(cb)
        fake_redis.get_store[cb._key('last_failure')] = str(time.time() - 20)
        assert cb.state == HALF_OPEN

    def test_probe_success_closes(self, cb, fake_redis):
        _trip(cb)
        fake_redis.get_store[cb._key('last_failure')] = str(time.time() - 20)
        assert cb.call(lambda: 'recovered') == 'recovered'
        assert cb.state == CLOSED

    def test_probe_failure_reopens(self, cb, fake_redis):
        _trip(cb)
        fake_redis.get_store[cb._key('last_failure')] = str(time.time() - 20)
        assert cb.state == HALF_OPEN
        with pytest.raises(ValueError):
            cb.call(_fail)
        assert cb.state == OPEN


# ---------------------------------------------------------------------------
# Reset and Redis outages
# ---------------------------------------------------------------------------

class TestCircuitBreakerReset:

    def test_reset_closes_circuit(self, cb):
        _trip(cb)
        cb.reset()
        assert cb.state == CLOSED
        assert cb.failure_count == 0
        assert cb.call(lambda: 'ok') == 'ok'


class TestRedisUnavailable:

    def test_calls_pass_through(self):
        cb = CircuitBreaker('down', DownRedis(), failure_threshold=1)
        assert cb.state == CLOSED
        assert cb.call(lambda: 42) == 42

    def test_failures_still_raise_original_error(self):
        cb = CircuitBreaker('down', DownRedis(), failure_threshold=1)
        with pytest.raises(ValueError):
            cb.call(_fail)
        assert cb.failure_count == 0

    def test_health_reports_unknown(self):
        assert CircuitBreaker('down', DownRedis()).get_health()['state'] == 'unknown'


# ---------------------------------------------------------------------------
# Health metrics
# ---------------------------------------------------------------------------

class TestCircuitBreakerHealth:

    def test_health_after_success(self, cb):
        cb.call(lambda: 'ok')
        health = cb.get_health()
        assert health['name'] == 'test_svc'
        assert health['state'] == CLOSED
        assert health['total_success'] == 1
        assert health['total_failure'] == 0
        assert health['last_success'] is not None

    def test_health_after_failure(self, cb):
        with pytest.raises(ValueError):
            cb.call(_fail)
        health = cb.get_health()
        assert health['total_failure'] == 1
        assert health['last_error'] == 'boom'

    def test_health_includes_thresholds(self, cb):
        health = cb.get_health()
        assert health['failure_threshold'] == 3
        assert health['reset_timeout'] == 10


class TestCircuitBreakerDecorator:

    def test_protect_passes_through(self, cb):
        @cb.protect
        def double(x):
            return x * 2
        assert double(5) == 10

    def test_protect_tracks_failures(self, cb):
        @cb.protect
        def broken():
            raise RuntimeError("fail")
        with pytest.raises(RuntimeError):
            broken()
        assert cb.failure_count == 1


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestCircuitBreakerRegistry:

    def test_init_breakers(self, fake_redis, clean_registry):
        breakers = init_breakers(fake_redis)
        assert list(breakers) == ['payment_gateway']
        assert get_all_breakers()['payment_gateway'] is breakers['payment_gateway']

    def test_get_breaker_creates_once(self, fake_redis, clean_registry):
        cb = get_breaker('new_service', fake_redis, failure_threshold=5)
        assert cb.failure_threshold == 5
        assert get_breaker('new_service') is cb


class TestCircuitOpenError:

    def test_has_name(self):
        err = CircuitOpenError('myservice', retry_after=30)
        assert err.name == 'myservice'
        assert err.retry_after == 30
        assert 'myservice' in str(err)
