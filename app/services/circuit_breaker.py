"""
Circuit breaker for outbound calls, state kept in Redis so every gunicorn
worker and rq worker sees the same picture.

  CLOSED     calls pass through
  OPEN       failure_threshold consecutive failures; calls short-circuit
             with CircuitOpenError until reset_timeout has elapsed
  HALF_OPEN  one probe call; success closes, failure re-opens

Redis being unreachable never blocks a call: state reads fail open (CLOSED)
and bookkeeping writes are skipped with a debug log. Per-service success /
failure counters back the /api/health endpoint.
"""
import logging
import time
from functools import wraps

from redis.exceptions import RedisError

from app.config import PAYMENT_GATEWAY_FAILURE_THRESHOLD, PAYMENT_GATEWAY_RESET_TIMEOUT

logger = logging.getLogger('services.circuit_breaker')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'


class CircuitOpenError(Exception):
    """Raised when calling through an open circuit breaker."""
    def __init__(self, name, retry_after=None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is open")


class CircuitBreaker:
    """
    Usage:
        cb = CircuitBreaker('payment_gateway', redis_client, failure_threshold=3, reset_timeout=120)
        invoice = cb.call(session.post, url, json=payload, timeout=10)
    """

    PREFIX = 'cb'

    def __init__(self, name, redis_client, failure_threshold=3, reset_timeout=300):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout  # seconds before OPEN → HALF_OPEN

    def _key(self, suffix):
        return f'{self.PREFIX}:{self.name}:{suffix}'

    # ── State ─────────────────────────────────────────────────────────

    @property
    def state(self):
        try:
            s = self.redis.get(self._key('state'))
            if s is None:
                return CLOSED
            if s == OPEN and self._seconds_since_failure() > self.reset_timeout:
                self._write(lambda r: r.set(self._key('state'), HALF_OPEN))
                return HALF_OPEN
            return s
        except RedisError:
            return CLOSED

    @property
    def failure_count(self):
        try:
            return int(self.redis.get(self._key('failures')) or 0)
        except RedisError:
            return 0

    def _seconds_since_failure(self):
        last = self.redis.get(self._key('last_failure'))
        return time.time() - float(last) if last else float('inf')

    def _write(self, op):
        try:
            op(self.redis)
        except RedisError as e:
            logger.debug("Circuit '%s' state write skipped: %s", self.name, e)

    # ── Health ────────────────────────────────────────────────────────

    def get_health(self):
        health = {
            'name': self.name,
            'state': self.state,
            'failure_count': self.failure_count,
            'failure_threshold': self.failure_threshold,
            'reset_timeout': self.reset_timeout,
            'total_success': 0,
            'total_failure': 0,
            'last_success': None,
            'last_failure': None,
            'last_error': '',
        }
        try:
            data = self.redis.hgetall(self._key('health'))
        except RedisError:
            health['state'] = 'unknown'
            return health
        health.update({
            'total_success': int(data.get('success', 0)),
            'total_failure': int(data.get('failure', 0)),
            'last_success': float(data['last_success']) if data.get('last_success') else None,
            'last_failure': float(data['last_failure']) if data.get('last_failure') else None,
            'last_error': data.get('last_error', ''),
        })
        return health

    # ── Calls ─────────────────────────────────────────────────────────

    def call(self, func, *args, **kwargs):
        if self.state == OPEN:
            try:
                retry_after = max(0.0, self.reset_timeout - self._seconds_since_failure())
            except RedisError:
                retry_after = None
            raise CircuitOpenError(self.name, retry_after=retry_after)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def _on_success(self):
        def op(r):
            pipe = r.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.hincrby(self._key('health'), 'success', 1)
            pipe.hset(self._key('health'), 'last_success', str(time.time()))
            pipe.execute()
        self._write(op)

    def _on_failure(self, error):
        try:
            count = self.redis.incr(self._key('failures'))
            now = str(time.time())
            pipe = self.redis.pipeline()
            pipe.set(self._key('last_failure'), now)
            pipe.hincrby(self._key('health'), 'failure', 1)
            pipe.hset(self._key('health'), 'last_failure', now)
            pipe.hset(self._key('health'), 'last_error', str(error)[:200])
            if count >= self.failure_threshold:
                pipe.set(self._key('state'), OPEN)
            pipe.execute()
        except RedisError as e:
            logger.debug("Circuit '%s' failure not recorded: %s", self.name, e)
            return
        if count >= self.failure_threshold:
            logger.warning(
                "Circuit '%s' OPENED after %d failures (threshold=%d): %s",
                self.name, count, self.failure_threshold, error,
            )
        else:
            logger.info("Circuit '%s' failure %d/%d: %s", self.name, count, self.failure_threshold, error)

    def reset(self):
        """Manually close the circuit."""
        def op(r):
            pipe = r.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.delete(self._key('last_failure'))
            pipe.execute()
        self._write(op)
        logger.info("Circuit '%s' manually reset to CLOSED", self.name)

    def protect(self, func):
        """Decorator form of call()."""
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper


# ── Registry ──────────────────────────────────────────────────────────────

_registry = {}


def get_breaker(name, redis_client=None, **kwargs):
    """Get or create a named circuit breaker (one per name per process)."""
    if name not in _registry:
        if redis_client is None:
            from app.extensions import redis_client as rc
            redis_client = rc
        _registry[name] = CircuitBreaker(name, redis_client, **kwargs)
    return _registry[name]


def get_all_breakers():
    return dict(_registry)


def init_breakers(redis_client):
    """Register the breakers for every outbound service."""
    breakers = {
        'payment_gateway': CircuitBreaker(
            'payment_gateway', redis_client,
            failure_threshold=PAYMENT_GATEWAY_FAILURE_THRESHOLD,
            reset_timeout=PAYMENT_GATEWAY_RESET_TIMEOUT,
        ),
    }
    _registry.update(breakers)
    return breakers
