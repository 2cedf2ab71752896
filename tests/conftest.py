"""Shared test fixtures."""
import contextlib

import pytest
from unittest.mock import patch, MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from visibility.database import Base


# Every module that does `from visibility.database import get_session`
SESSION_MODULES = [
    'visibility.database',
    'visibility.services.job_store',
    'visibility.services.brands',
    'visibility.services.db',
    'visibility.pipeline.coordinator',
    'visibility.pipeline.report',
    'visibility.pipeline.onboard',
    'visibility.pipeline.normalize',
    'visibility.pipeline.embed',
]


class FakeRedis:
    """Minimal in-memory Redis fake (hash commands only) for circuit breakers."""

    def __init__(self):
        self.hash_store = {}

    def hgetall(self, key):
        return dict(self.hash_store.get(key, {}))

    def hset(self, key, field=None, value=None, mapping=None):
        h = self.hash_store.setdefault(key, {})
        if mapping:
            h.update(mapping)
        if field is not None:
            h[field] = value

    def hincrby(self, key, field, amount=1):
        h = self.hash_store.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    def delete(self, *keys):
        for k in keys:
            self.hash_store.pop(k, None)


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created, shared across sessions."""
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    import visibility.models.job
    import visibility.models.pipeline_run
    import visibility.models.brand
    import visibility.models.content
    import visibility.models.sample_result
    import visibility.models.visibility_score
    import visibility.models.report
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def patch_get_session(session_factory):
    """Route all get_session() calls to fresh sessions on the test database."""
    with contextlib.ExitStack() as stack:
        for module in SESSION_MODULES:
            stack.enter_context(patch(f'{module}.get_session', side_effect=lambda: session_factory()))
        yield session_factory


@pytest.fixture
def db_session(session_factory):
    """A session for direct assertions against the test database."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def fake_redis():
    """Fresh breaker registry backed by FakeRedis; no test touches a real Redis."""
    from visibility.services import circuit_breaker
    fake = FakeRedis()
    circuit_breaker._registry.clear()
    circuit_breaker.init_breakers(fake)
    with patch('visibility.extensions.redis_client', fake):
        yield fake
    circuit_breaker._registry.clear()


@pytest.fixture(autouse=True)
def mock_queue():
    """RQ wake-ups go to a MagicMock queue."""
    queue = MagicMock()
    with patch('visibility.pipeline.coordinator._get_queue', return_value=queue):
        yield queue


@pytest.fixture(autouse=True)
def reset_config_caches():
    from visibility.pipeline import sampling_config, scoring
    from visibility.providers import client
    sampling_config.reset_cache()
    scoring.reset_cache()
    for family in client.FAMILIES.values():
        if hasattr(family, '_clients'):
            family._clients.clear()
    yield
    sampling_config.reset_cache()
    scoring.reset_cache()


@pytest.fixture
def app(fake_redis):
    """Flask test app."""
    from visibility import create_app
    app = create_app()
    app.config['TESTING'] = True
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c


@pytest.fixture
def make_brand():
    """Factory fixture: insert a brand row and return its id."""
    from visibility.services.brands import upsert_brand

    def _make(brand_id='brand-1', name='Acme', domain='acme.com',
              competitors=None, monthly_budget=100.0, description='Acme builds software'):
        upsert_brand(brand_id, name, domain,
                     competitors=competitors if competitors is not None else ['globex.com'],
                     monthly_budget=monthly_budget, description=description)
        return brand_id
    return _make


@pytest.fixture
def make_samples():
    """Factory fixture: store sample result rows for a brand."""
    from visibility.services.db import persist_sample_results

    def _make(brand_id, responses, model='gpt-4', prompt_key='def_01', job_id='job-sample',
              cost=0.01, error=None):
        rows = [{
            'model': model,
            'provider': 'openai',
            'prompt_key': prompt_key,
            'paraphrase_index': i,
            'prompt_text': f'prompt {i}',
            'response': text,
            'tokens': {'input': 10, 'output': 20, 'total': 30},
            'cost': cost,
            'execution_time_ms': 100,
            'error': error,
        } for i, text in enumerate(responses)]
        persist_sample_results(brand_id, job_id, rows)
        return rows
    return _make


@pytest.fixture
def sample_brand():
    """Brand dict as returned by services.brands.get_brand."""
    return {
        'id': 'brand-1',
        'name': 'Acme',
        'domain': 'acme.com',
        'description': 'Acme builds software',
        'competitors': ['globex.com', 'initech.com'],
        'monthly_budget': 100.0,
    }
