"""Tests for structured logging configuration."""
import json
import logging
import os
from unittest.mock import patch

import pytest

from visibility.logging_config import JobTextFormatter, JSONFormatter, configure_logging, job_extra


@pytest.fixture(autouse=True)
def _reset_root_logger():
    """Reset root logger state after each test."""
    root = logging.getLogger()
    original_level = root.level
    original_handlers = root.handlers[:]
    yield
    root.setLevel(original_level)
    root.handlers = original_handlers


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_default_level_is_info(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('LOG_LEVEL', None)
            configure_logging()
        assert logging.getLogger().level == logging.INFO

    def test_log_level_env_var_is_case_insensitive(self):
        with patch.dict(os.environ, {'LOG_LEVEL': 'debug'}):
            configure_logging()
        assert logging.getLogger().level == logging.DEBUG

    def test_invalid_log_level_defaults_to_info(self):
        with patch.dict(os.environ, {'LOG_LEVEL': 'NONSENSE'}):
            configure_logging()
        assert logging.getLogger().level == logging.INFO

    def test_text_format_includes_logger_name(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'text', 'LOG_LEVEL': 'INFO'}):
            configure_logging()
        logging.getLogger('pipeline.sampling').info("Completed batch %d/%d", 1, 3)
        output = capsys.readouterr().err
        assert 'pipeline.sampling' in output
        assert 'Completed batch 1/3' in output
        assert 'INFO' in output

    def test_json_format_produces_parseable_json(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json', 'LOG_LEVEL': 'INFO'}):
            configure_logging()
        logging.getLogger('services.job_store').info("Job %s complete", 'job-1')
        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed['level'] == 'INFO'
        assert parsed['logger'] == 'services.job_store'
        assert parsed['message'] == 'Job job-1 complete'
        assert 'timestamp' in parsed

    def test_json_format_carries_job_id_extra(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json', 'LOG_LEVEL': 'INFO'}):
            configure_logging()
        logging.getLogger('pipeline.worker').warning("retrying", extra={'job_id': 'job-42'})
        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed['job_id'] == 'job-42'

    def test_json_format_includes_exception(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json', 'LOG_LEVEL': 'INFO'}):
            configure_logging()
        try:
            raise ValueError("boom")
        except ValueError:
            logging.getLogger('pipeline.worker').error("crashed", exc_info=True)
        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed['level'] == 'ERROR'
        assert 'ValueError' in parsed['exception']

    def test_provider_sdk_loggers_quieted_to_warning(self):
        configure_logging()
        for name in ['urllib3', 'botocore', 'openai', 'anthropic', 'httpx']:
            assert logging.getLogger(name).level == logging.WARNING

    def test_no_duplicate_handlers_on_repeated_calls(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1


class TestJSONFormatter:

    def test_format_basic_record(self):
        formatter = JSONFormatter()
        record = logging.LogRecord(
            name='providers.client', level=logging.INFO, pathname='', lineno=0,
            msg='%s responded', args=('gpt-4',), exc_info=None,
        )
        parsed = json.loads(formatter.format(record))
        assert parsed['message'] == 'gpt-4 responded'
        assert parsed['logger'] == 'providers.client'
        assert 'job_id' not in parsed

    def test_job_fields_from_job_extra(self):
        formatter = JSONFormatter()
        record = logging.LogRecord(
            name='pipeline.sampling', level=logging.INFO, pathname='', lineno=0,
            msg='Executing %d sampling requests', args=(8,), exc_info=None,
        )
        job = {'id': 'job-7', 'type': 'sample', 'brand_id': 'brand-1', 'payload': {}}
        for key, value in job_extra(job).items():
            setattr(record, key, value)
        parsed = json.loads(formatter.format(record))
        assert parsed['job_id'] == 'job-7'
        assert parsed['job_type'] == 'sample'
        assert parsed['brand_id'] == 'brand-1'


class TestJobTextFormatter:

    def _record(self, **extra):
        record = logging.LogRecord(
            name='pipeline.worker', level=logging.WARNING, pathname='', lineno=0,
            msg='%s job failed', args=('score',), exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_tags_job_id(self):
        line = JobTextFormatter('%(levelname)s %(name)s: %(message)s').format(self._record(job_id='job-9'))
        assert line == 'WARNING pipeline.worker: score job failed [job job-9]'

    def test_untagged_without_job(self):
        line = JobTextFormatter('%(levelname)s %(name)s: %(message)s').format(self._record())
        assert line == 'WARNING pipeline.worker: score job failed'

    def test_configured_text_handler_tags_job(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'text', 'LOG_LEVEL': 'INFO'}):
            configure_logging()
        logging.getLogger('pipeline.scoring').info("scored", extra={'job_id': 'job-3'})
        assert capsys.readouterr().err.strip().endswith('scored [job job-3]')
