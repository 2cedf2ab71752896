"""
Circuit breaker with Redis-backed state, one breaker per LLM provider family.

All state for a breaker lives in one Redis hash `cb:<name>`:
  state, failures, opened_at, success_total, failure_total, last_error

States:
  - CLOSED    → calls pass through
  - OPEN      → too many consecutive failures, calls raise CircuitOpenError
  - HALF_OPEN → reset_timeout elapsed since opening; the next call is a trial call

If Redis is unreachable the breaker fails open (calls are allowed).
"""
import logging
import time
from functools import wraps

logger = logging.getLogger('services.circuit_breaker')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'

# Per-provider thresholds: (failure_threshold, reset_timeout seconds)
PROVIDER_BREAKERS = {
    'anthropic':  (5, 60),
    'openai':     (5, 60),
    'google':     (5, 60),
    'xai':        (3, 120),
    'mistral':    (3, 120),
    'openrouter': (3, 120),
    'perplexity': (3, 120),
}


class CircuitOpenError(Exception):
    """Raised when calling through an open circuit breaker."""
    def __init__(self, name, retry_after=None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN, provider unavailable")


class CircuitBreaker:
    """
    Usage:
        cb = get_breaker('anthropic')
        response = cb.call(client.messages.create, **body)
    """

    PREFIX = 'cb'

    def __init__(self, name, redis_client, failure_threshold=3, reset_timeout=300):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

    @property
    def key(self):
        return f'{self.PREFIX}:{self.name}'

    def _read(self):
        try:
            return self.redis.hgetall(self.key) or {}
        except Exception:
            return {}

    def _write(self, **fields):
        try:
            self.redis.hset(self.key, mapping={k: str(v) for k, v in fields.items()})
        except Exception:
            logger.debug("Circuit '%s' state write failed", self.name, exc_info=True)

    # ── State ─────────────────────────────────────────────────────────

    @property
    def state(self):
        data = self._read()
        current = data.get('state', CLOSED)
        if current == OPEN:
            opened_at = float(data.get('opened_at') or 0)
            if time.time() - opened_at > self.reset_timeout:
                self._write(state=HALF_OPEN)
                return HALF_OPEN
        return current

    @property
    def failure_count(self):
        return int(self._read().get('failures') or 0)

    def get_health(self):
        data = self._read()
        return {
            'name': self.name,
            'state': self.state,
            'failure_count': int(data.get('failures') or 0),
            'failure_threshold': self.failure_threshold,
            'reset_timeout': self.reset_timeout,
            'total_success': int(data.get('success_total') or 0),
            'total_failure': int(data.get('failure_total') or 0),
            'last_error': data.get('last_error', ''),
        }

    # ── Calls ─────────────────────────────────────────────────────────

    def call(self, func, *args, **kwargs):
        """Execute func through the circuit breaker."""
        if self.state == OPEN:
            opened_at = float(self._read().get('opened_at') or 0)
            retry_after = max(0.0, self.reset_timeout - (time.time() - opened_at))
            raise CircuitOpenError(self.name, retry_after=retry_after)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def _on_success(self):
        try:
            self.redis.hincrby(self.key, 'success_total', 1)
        except Exception:
            logger.debug("Circuit '%s' success counter failed", self.name, exc_info=True)
        self._write(state=CLOSED, failures=0)

    def _on_failure(self, error):
        try:
            failures = self.redis.hincrby(self.key, 'failures', 1)
            self.redis.hincrby(self.key, 'failure_total', 1)
        except Exception:
            return
        self._write(last_error=str(error)[:200])

        if failures >= self.failure_threshold or self.state == HALF_OPEN:
            self._write(state=OPEN, opened_at=time.time())
            logger.warning("Circuit '%s' OPENED after %d failures (threshold=%d): %s",
                           self.name, failures, self.failure_threshold, error)
        else:
            logger.info("Circuit '%s' failure %d/%d: %s",
                        self.name, failures, self.failure_threshold, error)

    def reset(self):
        """Manually reset the breaker to closed."""
        try:
            self.redis.delete(self.key)
            logger.info("Circuit '%s' manually reset to CLOSED", self.name)
        except Exception as e:
            logger.error("Failed to reset circuit '%s': %s", self.name, e)

    def protect(self, func):
        """Decorator form of the circuit breaker."""
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper


# ── Global registry ───────────────────────────────────────────────────────

_registry = {}


def get_breaker(name, redis_client=None, **kwargs):
    """Get or create a named circuit breaker (singleton per name)."""
    if name not in _registry:
        if redis_client is None:
            from visibility.extensions import redis_client as rc
            redis_client = rc
        if not kwargs and name in PROVIDER_BREAKERS:
            threshold, timeout = PROVIDER_BREAKERS[name]
            kwargs = {'failure_threshold': threshold, 'reset_timeout': timeout}
        _registry[name] = CircuitBreaker(name, redis_client, **kwargs)
    return _registry[name]


def get_all_breakers():
    return dict(_registry)


def init_breakers(redis_client):
    """Register a breaker for every provider family."""
    breakers = {
        name: CircuitBreaker(name, redis_client, failure_threshold=threshold, reset_timeout=timeout)
        for name, (threshold, timeout) in PROVIDER_BREAKERS.items()
    }
    _registry.update(breakers)
    return breakers
