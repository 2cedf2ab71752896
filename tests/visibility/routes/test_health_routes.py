"""Tests for health and circuit breaker routes."""
from visibility.services.circuit_breaker import get_breaker


class TestHealth:

    def test_liveness(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        assert resp.get_json() == {'status': 'healthy'}

    def test_all_breakers_closed(self, client):
        body = client.get('/api/health').get_json()
        assert body['status'] == 'healthy'
        assert body['degraded'] == []
        assert 'anthropic' in body['services']

    def test_open_breaker_degrades(self, client):
        breaker = get_breaker('xai')
        for _ in range(breaker.failure_threshold):
            breaker._on_failure(RuntimeError('503'))

        body = client.get('/api/health').get_json()
        assert body['status'] == 'degraded'
        assert body['degraded'] == ['xai']
        assert body['services']['xai']['last_error'] == '503'

    def test_reset(self, client):
        breaker = get_breaker('xai')
        for _ in range(breaker.failure_threshold):
            breaker._on_failure(RuntimeError('503'))

        resp = client.post('/api/health/xai/reset')
        assert resp.status_code == 200
        assert resp.get_json()['state'] == 'closed'

    def test_reset_unknown_service(self, client):
        assert client.post('/api/health/nope/reset').status_code == 404
