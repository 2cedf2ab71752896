"""Tests for the pipeline JSON API."""
import pytest
from unittest.mock import patch

from visibility.errors import BrandNotFound, PipelineConflict, UnknownProfile
from visibility.services.db import persist_score


COMPONENTS = {
    'prompt_sov': 40.0, 'generative_appearance': 50.0, 'citation_authority': 30.0,
    'answer_quality': 60.0, 'voice_presence': 0.0, 'ai_traffic': 0.0, 'ai_conversions': 0.0,
}


class TestCreatePipeline:

    def test_requires_brand_id(self, client):
        resp = client.post('/api/pipelines', json={})
        assert resp.status_code == 400

    def test_started(self, client, make_brand):
        make_brand()
        resp = client.post('/api/pipelines', json={'brand_id': 'brand-1', 'profile': 'lite'})
        assert resp.status_code == 202
        body = resp.get_json()
        assert body['pipelineId'] and body['firstJobId']

    @pytest.mark.parametrize('error, status', [
        (UnknownProfile('nope'), 400),
        (BrandNotFound('nope'), 404),
        (PipelineConflict('busy'), 409),
        (RuntimeError('db down'), 500),
    ])
    def test_error_mapping(self, client, error, status):
        with patch('visibility.routes.pipeline.coordinator.enqueue_pipeline', side_effect=error):
            resp = client.post('/api/pipelines', json={'brand_id': 'brand-1'})
        assert resp.status_code == status
        assert 'error' in resp.get_json()


class TestPipelineStatus:

    def test_status_and_cancel(self, client, make_brand):
        make_brand()
        pipeline_id = client.post('/api/pipelines', json={'brand_id': 'brand-1'}).get_json()['pipelineId']

        status = client.get(f'/api/pipelines/{pipeline_id}').get_json()
        assert status['status'] == 'running'
        assert status['perJobStatus'][0]['type'] == 'onboard'

        cancelled = client.post(f'/api/pipelines/{pipeline_id}/cancel').get_json()
        assert cancelled['status'] == 'cancelled'
        assert len(cancelled['cancelledJobs']) == 1

    def test_unknown_pipeline(self, client):
        assert client.get('/api/pipelines/missing').status_code == 404
        assert client.post('/api/pipelines/missing/cancel').status_code == 404

    def test_pipeline_info(self, client):
        info = client.get('/api/pipeline-info').get_json()
        assert 'assemble_report' in info


class TestScoresAndReports:

    def test_no_score(self, client):
        assert client.get('/api/brands/brand-1/score').status_code == 404

    def test_latest_score_with_trend(self, client):
        persist_score('brand-1', 'job-1', 'aggregate', COMPONENTS, 40, {})
        persist_score('brand-1', 'job-2', 'aggregate', COMPONENTS, 45, {})

        body = client.get('/api/brands/brand-1/score').get_json()
        assert body['total_score'] == 45
        assert body['trend']['direction'] == 'up'
        assert body['benchmark']['gap'] == 45 - 65

    def test_report_not_found(self, client):
        with patch('visibility.pipeline.coordinator.load_report', return_value=None):
            assert client.get('/api/reports/r-1').status_code == 404

    def test_report(self, client):
        with patch('visibility.pipeline.coordinator.load_report', return_value={'id': 'r-1'}):
            assert client.get('/api/reports/r-1').get_json() == {'id': 'r-1'}

    def test_unknown_route(self, client):
        resp = client.get('/api/nothing-here')
        assert resp.status_code == 404
        assert resp.get_json() == {'error': 'Not found'}
