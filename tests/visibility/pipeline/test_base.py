"""Tests for visibility.pipeline.base — stage handler contract."""
import pytest

from visibility.pipeline.base import StageHandler, StageResult, get_handler, get_pipeline_info


class EchoHandler(StageHandler):
    job_type = 'echo'
    description = 'Echo the payload'
    apis = ['none']

    def run(self, job):
        return StageResult(result=dict(job['payload']), processed=1)


class TestStageResult:

    def test_counters_fill_in(self):
        out = StageResult(result={'pages': 3}, processed=3, failed=1, cost=0.1234567).to_job_result()
        assert out == {'pages': 3, 'processed': 3, 'failed': 1, 'cost': 0.123457}

    def test_result_keys_win(self):
        out = StageResult(result={'failed': 7}, failed=1).to_job_result()
        assert out['failed'] == 7

    def test_errors_truncated(self):
        out = StageResult(errors=[f'e{i}' for i in range(30)]).to_job_result()
        assert len(out['errors']) == 20

    def test_no_errors_key_when_clean(self):
        assert 'errors' not in StageResult().to_job_result()


class TestRegistryHelpers:

    def test_get_handler_instantiates(self):
        handler = get_handler({'echo': EchoHandler}, 'echo')
        assert handler.run({'payload': {'a': 1}}).result == {'a': 1}

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            get_handler({}, 'echo')

    def test_pipeline_info(self):
        assert get_pipeline_info({'echo': EchoHandler}) == {
            'echo': {'description': 'Echo the payload', 'apis': ['none']},
        }

    def test_default_cost_estimate(self):
        assert EchoHandler().estimate_cost({}) == 0.0
