"""Tests for visibility.services.db — sample, context and score persistence."""
from datetime import timedelta

from visibility.database import utcnow
from visibility.models.content import BrandClaim, PageContent, ContentChunk
from visibility.models.sample_result import SampleResult
from visibility.services import db


class TestSampleResults:

    def test_persist_and_load_newest_first(self, make_samples):
        make_samples('brand-1', ['first', 'second'])
        rows = db.load_recent_samples('brand-1')
        assert len(rows) == 2
        assert rows[0]['response_text'] == 'second'
        assert rows[0]['tokens'] == {'input': 10, 'output': 20, 'total': 30}

    def test_load_filters_by_model(self, make_samples):
        make_samples('brand-1', ['a'], model='gpt-4')
        make_samples('brand-1', ['b'], model='claude-opus')
        rows = db.load_recent_samples('brand-1', model='claude-opus')
        assert [r['model'] for r in rows] == ['claude-opus']

    def test_load_respects_window(self, make_samples, db_session):
        make_samples('brand-1', ['old'])
        row = db_session.query(SampleResult).one()
        row.created_at = utcnow() - timedelta(days=45)
        db_session.commit()
        assert db.load_recent_samples('brand-1', days=30) == []

    def test_error_rows_store_empty_response(self):
        db.persist_sample_results('brand-1', 'job-1', [{
            'model': 'gpt-4', 'prompt_key': 'def_01', 'paraphrase_index': 0,
            'response': '', 'error': 'timeout', 'cost': 0.0,
        }])
        row = db.load_recent_samples('brand-1')[0]
        assert row['error'] == 'timeout'
        assert row['response_text'] == ''
        assert row['cost'] == 0.0

    def test_load_can_exclude_error_rows(self, make_samples):
        make_samples('brand-1', ['answered'])
        make_samples('brand-1', [''], job_id='job-failed', cost=0.0, error='429 rate limited')
        assert len(db.load_recent_samples('brand-1')) == 2
        rows = db.load_recent_samples('brand-1', exclude_errors=True)
        assert [r['response_text'] for r in rows] == ['answered']

    def test_trailing_spend_sums_costs(self, make_samples):
        make_samples('brand-1', ['a', 'b', 'c'], cost=0.5)
        make_samples('brand-2', ['x'], cost=9.0)
        assert db.get_trailing_spend('brand-1') == 1.5

    def test_trailing_spend_empty(self):
        assert db.get_trailing_spend('brand-1') == 0.0

    def test_job_sampling_cost(self, make_samples):
        make_samples('brand-1', ['a', 'b'], job_id='job-a', cost=0.25)
        make_samples('brand-1', ['c'], job_id='job-b', cost=1.0)
        assert db.get_job_sampling_cost(['job-a']) == 0.5
        assert db.get_job_sampling_cost([]) == 0.0


class TestContextSources:

    def test_top_claims_by_confidence(self, db_session):
        db_session.add_all([
            BrandClaim(brand_id='brand-1', claim_text='low', claim_type='service_claim', confidence=0.6),
            BrandClaim(brand_id='brand-1', claim_text='high', claim_type='company_info', confidence=0.95),
        ])
        db_session.commit()
        claims = db.get_top_claims('brand-1', limit=1)
        assert [c['text'] for c in claims] == ['high']

    def test_top_content_truncated(self, db_session):
        db_session.add(PageContent(brand_id='brand-1', url='https://acme.com',
                                   main_content='x' * 5000, word_count=1))
        db_session.commit()
        content = db.get_top_content('brand-1', max_chars=1000)
        assert len(content[0]['main_content']) == 1000

    def test_latest_chunks(self, db_session):
        for i in range(5):
            db_session.add(ContentChunk(brand_id='brand-1', chunk_index=i, chunk_text=f'chunk {i}'))
        db_session.commit()
        chunks = db.get_latest_chunks('brand-1', limit=3)
        assert len(chunks) == 3


class TestScores:

    COMPONENTS = {
        'prompt_sov': 50.0, 'generative_appearance': 40.0, 'citation_authority': 70.0,
        'answer_quality': 60.0, 'voice_presence': 50.0, 'ai_traffic': 50.0, 'ai_conversions': 50.0,
    }

    def test_persist_and_read_latest(self):
        db.persist_score('brand-1', 'job-1', 'aggregate', self.COMPONENTS, 52, {'samplesAnalyzed': 8})
        db.persist_score('brand-1', 'job-2', 'aggregate', self.COMPONENTS, 58, {})
        latest = db.get_latest_score('brand-1')
        assert latest['total_score'] == 58
        assert latest['components']['citation_authority'] == 70.0

    def test_latest_by_engine(self):
        db.persist_score('brand-1', None, 'aggregate', self.COMPONENTS, 52, {})
        db.persist_score('brand-1', None, 'gpt-4', self.COMPONENTS, 61, {})
        assert db.get_latest_score('brand-1', engine='aggregate')['total_score'] == 52

    def test_no_score(self):
        assert db.get_latest_score('brand-1') is None

    def test_history_oldest_first(self):
        db.persist_score('brand-1', None, 'aggregate', self.COMPONENTS, 40, {})
        db.persist_score('brand-1', None, 'aggregate', self.COMPONENTS, 45, {})
        history = db.get_score_history('brand-1')
        assert [h['total_score'] for h in history] == [40, 45]
