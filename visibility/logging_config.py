"""
Logging setup for the API process and the pipeline workers.

configure_logging() runs once from create_app() and once from the worker entry
point. LOG_FORMAT picks text or JSON lines; LOG_LEVEL defaults to INFO.

Records emitted while a job runs carry the job through `extra=job_extra(job)`.
Text lines get a `[job <id>]` tag; JSON lines get job_id, job_type and
brand_id keys. Records without a job look the same as before.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict

JOB_FIELDS = ('job_id', 'job_type', 'brand_id')

TEXT_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'
TEXT_DATEFMT = '%Y-%m-%d %H:%M:%S'

# SDK and transport loggers that are chatty at INFO
_NOISY_LOGGERS = [
    'urllib3',
    'botocore',
    'boto3',
    'openai',
    'anthropic',
    'httpcore',
    'httpx',
    'rq.worker',
]


def job_extra(job: Dict[str, Any]) -> Dict[str, Any]:
    """`extra=` mapping that ties a log record to the job being processed."""
    return {
        'job_id': job.get('id'),
        'job_type': job.get('type'),
        'brand_id': job.get('brand_id'),
    }


class JobTextFormatter(logging.Formatter):
    """Human-readable lines, tagged with the job id when the record has one."""

    def formatMessage(self, record):
        line = super().formatMessage(record)
        job_id = getattr(record, 'job_id', None)
        return f"{line} [job {job_id}]" if job_id else line


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregators."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for name in JOB_FIELDS:
            value = getattr(record, name, None)
            if value:
                entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry)


def _resolve_level() -> int:
    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), None)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(app=None):
    """
    Replace the root handlers with a single stderr handler.

    Environment variables:
        LOG_LEVEL  — Python log level name (default: INFO)
        LOG_FORMAT — "text" (default) or "json"
    """
    level = _resolve_level()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if os.getenv('LOG_FORMAT', 'text').lower() == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(JobTextFormatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
