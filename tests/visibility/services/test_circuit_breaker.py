"""Tests for visibility.services.circuit_breaker — CircuitBreaker class and registry."""
import pytest
from unittest.mock import MagicMock, patch

from visibility.services.circuit_breaker import (
    CircuitBreaker, CircuitOpenError, CLOSED, OPEN, HALF_OPEN, PROVIDER_BREAKERS,
    get_breaker, get_all_breakers, init_breakers,
)


def _boom():
    raise RuntimeError("HTTP 503")


class TestCircuitBreaker:

    def test_starts_closed(self, fake_redis):
        cb = CircuitBreaker('test', fake_redis, failure_threshold=2)
        assert cb.state == CLOSED
        assert cb.failure_count == 0

    def test_success_passes_result_through(self, fake_redis):
        cb = CircuitBreaker('test', fake_redis)
        assert cb.call(lambda x: x * 2, 21) == 42
        assert cb.get_health()['total_success'] == 1

    def test_opens_after_threshold(self, fake_redis):
        cb = CircuitBreaker('test', fake_redis, failure_threshold=2)
        for _ in range(2):
            with pytest.raises(RuntimeError):
                cb.call(_boom)
        assert cb.state == OPEN

        fn = MagicMock()
        with pytest.raises(CircuitOpenError) as exc:
            cb.call(fn)
        fn.assert_not_called()
        assert exc.value.name == 'test'

    def test_success_resets_failure_count(self, fake_redis):
        cb = CircuitBreaker('test', fake_redis, failure_threshold=3)
        with pytest.raises(RuntimeError):
            cb.call(_boom)
        cb.call(lambda: 'ok')
        assert cb.failure_count == 0
        assert cb.state == CLOSED

    def test_half_open_after_reset_timeout(self, fake_redis):
        cb = CircuitBreaker('test', fake_redis, failure_threshold=1, reset_timeout=60)
        with patch('visibility.services.circuit_breaker.time.time', return_value=1000.0):
            with pytest.raises(RuntimeError):
                cb.call(_boom)
        with patch('visibility.services.circuit_breaker.time.time', return_value=1061.0):
            assert cb.state == HALF_OPEN
            assert cb.call(lambda: 'trial') == 'trial'
        assert cb.state == CLOSED

    def test_failed_trial_call_reopens(self, fake_redis):
        cb = CircuitBreaker('test', fake_redis, failure_threshold=5, reset_timeout=60)
        fake_redis.hset(cb.key, mapping={'state': HALF_OPEN})
        with pytest.raises(RuntimeError):
            cb.call(_boom)
        assert fake_redis.hgetall(cb.key)['state'] == OPEN

    def test_reset_clears_state(self, fake_redis):
        cb = CircuitBreaker('test', fake_redis, failure_threshold=1)
        with pytest.raises(RuntimeError):
            cb.call(_boom)
        cb.reset()
        assert cb.state == CLOSED
        assert cb.get_health()['total_failure'] == 0

    def test_redis_down_fails_open(self):
        broken = MagicMock()
        broken.hgetall.side_effect = ConnectionError("redis down")
        broken.hincrby.side_effect = ConnectionError("redis down")
        broken.hset.side_effect = ConnectionError("redis down")
        cb = CircuitBreaker('test', broken, failure_threshold=1)
        assert cb.call(lambda: 'ok') == 'ok'
        with pytest.raises(RuntimeError):
            cb.call(_boom)
        assert cb.state == CLOSED

    def test_protect_decorator(self, fake_redis):
        cb = CircuitBreaker('test', fake_redis)

        @cb.protect
        def add(a, b):
            return a + b

        assert add(2, 3) == 5


class TestRegistry:

    def test_init_registers_every_provider(self):
        assert set(get_all_breakers()) == set(PROVIDER_BREAKERS)

    def test_provider_thresholds_applied(self, fake_redis):
        breakers = init_breakers(fake_redis)
        assert breakers['xai'].failure_threshold == 3
        assert breakers['anthropic'].reset_timeout == 60

    def test_get_breaker_is_singleton(self):
        assert get_breaker('openai') is get_breaker('openai')

    def test_get_breaker_creates_unknown_name(self, fake_redis):
        cb = get_breaker('custom-provider', redis_client=fake_redis, failure_threshold=7)
        assert cb.failure_threshold == 7
        assert 'custom-provider' in get_all_breakers()
