"""Tests for visibility.pipeline.coordinator — pipeline lifecycle and chaining."""
import pytest
from unittest.mock import patch

from visibility.errors import BrandNotFound, PipelineConflict, PipelineNotFound, ReportNotFound, UnknownProfile
from visibility.pipeline import coordinator
from visibility.services import job_store


@pytest.fixture(autouse=True)
def mute_notifications():
    with patch('visibility.pipeline.coordinator.notify_pipeline_complete') as done, \
         patch('visibility.pipeline.coordinator.notify_pipeline_failed') as failed:
        yield {'complete': done, 'failed': failed}


def _run_next(result=None):
    """Claim the next ready job, complete it and let the coordinator chain."""
    job = job_store.claim_next_ready_job()
    assert job is not None
    out = result if result is not None else {'stage': job['type']}
    assert job_store.complete_job(job['id'], out)
    coordinator.on_job_complete(job, out)
    return job


class TestEnqueuePipeline:

    def test_creates_only_first_job(self, make_brand):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='lite')

        jobs = job_store.list_pipeline_jobs(started['pipelineId'])
        assert [j['id'] for j in jobs] == [started['firstJobId']]
        assert jobs[0]['type'] == 'onboard'
        assert jobs[0]['priority'] == 5
        assert jobs[0]['payload']['profile'] == 'lite'
        assert jobs[0]['idempotency_key'] == f"pipeline:{started['pipelineId']}:onboard"

    def test_wakes_worker(self, make_brand, mock_queue):
        make_brand()
        coordinator.enqueue_pipeline('brand-1')
        mock_queue.enqueue.assert_called_once_with('visibility.pipeline.worker.drain', job_timeout=14400)

    def test_wake_up_failure_only_logged(self, make_brand, mock_queue):
        make_brand()
        mock_queue.enqueue.side_effect = ConnectionError('redis down')
        started = coordinator.enqueue_pipeline('brand-1')
        assert started['firstJobId']

    def test_conflict_while_active(self, make_brand):
        make_brand()
        coordinator.enqueue_pipeline('brand-1')
        with pytest.raises(PipelineConflict):
            coordinator.enqueue_pipeline('brand-1')

    def test_unknown_profile(self, make_brand):
        make_brand()
        with pytest.raises(UnknownProfile):
            coordinator.enqueue_pipeline('brand-1', profile='turbo')

    @pytest.mark.parametrize('steps', [[], ['onboard', 'translate', 'score']])
    def test_profile_with_bad_steps_rejected(self, make_brand, steps):
        make_brand()
        profile = {'models': ['gpt-4'], 'prompts': ['def_01'], 'paraphrases': 1, 'steps': steps}
        with patch('visibility.pipeline.sampling_config.get_profile', return_value=profile):
            with pytest.raises(UnknownProfile):
                coordinator.enqueue_pipeline('brand-1', profile='lite')
        assert job_store.active_jobs_for_brand('brand-1') == []

    def test_unknown_brand(self):
        with pytest.raises(BrandNotFound):
            coordinator.enqueue_pipeline('nobody')


class TestChaining:

    def test_next_stage_depends_on_previous(self, make_brand):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='lite')
        onboard = _run_next()

        jobs = job_store.list_pipeline_jobs(started['pipelineId'])
        normalize = jobs[-1]
        assert normalize['type'] == 'normalize'
        assert normalize['depends_on'] == [onboard['id']]
        assert normalize['priority'] == 4

    def test_chaining_is_idempotent(self, make_brand):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='lite')
        onboard = _run_next()
        first = job_store.list_pipeline_jobs(started['pipelineId'])[-1]['id']

        again = coordinator.on_job_complete(onboard, {})
        assert again == first
        assert len(job_store.list_pipeline_jobs(started['pipelineId'])) == 2

    def test_lite_profile_skips_embed(self, make_brand, mute_notifications):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='lite')
        ran = [_run_next()['type'] for _ in range(5)]

        assert ran == ['onboard', 'normalize', 'sample', 'score', 'assemble_report']
        status = coordinator.get_pipeline_status(started['pipelineId'])
        assert status['status'] == 'complete'
        assert status['progressPct'] == 100
        assert status['finishedAt'] is not None
        mute_notifications['complete'].assert_called_once()

    def test_job_outside_pipeline_chains_nothing(self):
        assert coordinator.on_job_complete({'id': 'x', 'type': 'onboard', 'pipeline_id': None}, {}) is None


class TestFailure:

    def test_terminal_failure_fails_pipeline(self, make_brand, mute_notifications):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='lite')
        job = job_store.claim_next_ready_job()
        status = job_store.fail_job(job['id'], 'robots.txt disallows', retryable=False)
        coordinator.on_job_failed(job, status, 'robots.txt disallows')

        result = coordinator.get_pipeline_status(started['pipelineId'])
        assert result['status'] == 'failed'
        assert result['failedStage'] == 'onboard'
        assert result['error'] == 'robots.txt disallows'
        mute_notifications['failed'].assert_called_once()

    def test_retryable_failure_leaves_pipeline_running(self, make_brand):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='lite')
        job = job_store.claim_next_ready_job()
        with patch('visibility.services.job_store.backoff_seconds', return_value=0):
            status = job_store.fail_job(job['id'], 'timeout')
        coordinator.on_job_failed(job, status, 'timeout')

        assert status == 'queued'
        assert coordinator.get_pipeline_status(started['pipelineId'])['status'] == 'running'


class TestStatus:

    def test_progress_and_pending_steps(self, make_brand):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='standard')
        _run_next()

        status = coordinator.get_pipeline_status(started['pipelineId'])
        assert status['profile'] == 'standard'
        assert [j['type'] for j in status['perJobStatus']] == [
            'onboard', 'normalize', 'embed', 'sample', 'score', 'assemble_report',
        ]
        assert status['perJobStatus'][0]['status'] == 'complete'
        assert status['perJobStatus'][1]['status'] == 'queued'
        assert status['perJobStatus'][2] == {
            'type': 'embed', 'jobId': None, 'status': 'pending', 'error': None,
            'startedAt': None, 'completedAt': None, 'retryCount': 0,
        }
        assert status['progressPct'] == 17
        assert status['failedStage'] is None

    def test_cost_from_sampling_rows(self, make_brand, make_samples):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='lite')
        _run_next()
        _run_next()
        sample = job_store.claim_next_ready_job()
        make_samples('brand-1', ['a', 'b', 'c'], job_id=sample['id'], cost=0.02)

        status = coordinator.get_pipeline_status(started['pipelineId'])
        assert status['costIncurred'] == pytest.approx(0.06)

    def test_unknown_pipeline(self):
        with pytest.raises(PipelineNotFound):
            coordinator.get_pipeline_status('missing')


class TestCancel:

    def test_cancel_during_sampling_keeps_result(self, make_brand):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='lite')
        _run_next()
        _run_next()
        sample = job_store.claim_next_ready_job()
        assert sample['type'] == 'sample'

        cancelled = coordinator.cancel_pipeline(started['pipelineId'])
        assert cancelled['status'] == 'cancelled'
        assert sample['id'] in cancelled['cancelledJobs']

        assert job_store.complete_job(sample['id'], {'processed': 8}) is False
        assert coordinator.on_job_complete(sample, {'processed': 8}) is None

        kept = job_store.get_job(sample['id'])
        assert kept['status'] == 'cancelled'
        assert kept['result'] == {'processed': 8}
        types = [j['type'] for j in job_store.list_pipeline_jobs(started['pipelineId'])]
        assert types == ['onboard', 'normalize', 'sample']
        assert job_store.claim_next_ready_job() is None

    def test_cancel_finished_pipeline_is_noop(self, make_brand):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='lite')
        coordinator.cancel_pipeline(started['pipelineId'])
        again = coordinator.cancel_pipeline(started['pipelineId'])
        assert again == {'pipelineId': started['pipelineId'], 'status': 'cancelled', 'cancelledJobs': []}

    def test_brand_can_restart_after_cancel(self, make_brand):
        make_brand()
        started = coordinator.enqueue_pipeline('brand-1', profile='lite')
        coordinator.cancel_pipeline(started['pipelineId'])
        assert coordinator.enqueue_pipeline('brand-1', profile='lite')['pipelineId'] != started['pipelineId']

    def test_unknown_pipeline(self):
        with pytest.raises(PipelineNotFound):
            coordinator.cancel_pipeline('missing')


class TestReads:

    def test_report_not_found(self):
        with patch('visibility.pipeline.coordinator.load_report', return_value=None):
            with pytest.raises(ReportNotFound):
                coordinator.get_report('r-1')

    def test_latest_score_prefers_aggregate(self):
        with patch('visibility.pipeline.coordinator.db') as mock_db:
            mock_db.get_latest_score.side_effect = lambda brand_id, engine=None: (
                {'engine': 'aggregate'} if engine == 'aggregate' else {'engine': 'gpt-4'}
            )
            assert coordinator.get_latest_score('brand-1') == {'engine': 'aggregate'}
