"""
Pipeline Coordinator — the boundary the surrounding product talks to.

Starts a brand analysis as a chain of jobs:
  onboard → normalize → embed → sample → score → assemble_report
(the lite profile skips embed). Only the first job is created up front. Each
completed stage creates the next one with a dependency on itself, so a
cancelled pipeline simply stops growing.

The pipelines row tracks the run as a whole; per-stage state lives on the
jobs themselves.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from visibility.config import (
    CHAINED_JOB_PRIORITY, PIPELINE_FIRST_JOB_PRIORITY, RQ_QUEUE_NAME,
)
from visibility.database import get_session, utcnow
from visibility.errors import PipelineConflict, PipelineNotFound, ReportNotFound, UnknownProfile
from visibility.models.pipeline_run import PipelineRun
from visibility.pipeline.report import get_report as load_report
from visibility.pipeline.sampling_config import get_pipeline_steps
from visibility.services import db
from visibility.services import job_store
from visibility.services.brands import get_brand
from visibility.services.notifications import notify_pipeline_complete, notify_pipeline_failed

logger = logging.getLogger('pipeline.coordinator')


# ── Lazy RQ queue (avoids import-time Redis connection) ───────────────────

_queue = None

def _get_queue():
    global _queue
    if _queue is None:
        from visibility.extensions import redis_client
        from rq import Queue
        _queue = Queue(RQ_QUEUE_NAME, connection=redis_client)
    return _queue


def kick_workers():
    """Wake a worker to drain the job store. Polling still finds the job if this fails."""
    try:
        _get_queue().enqueue('visibility.pipeline.worker.drain', job_timeout=14400)
    except Exception as e:
        logger.warning("Could not enqueue worker wake-up: %s", e)


# ── Pipeline rows ─────────────────────────────────────────────────────────────

def _pipeline_to_dict(row: PipelineRun) -> Dict[str, Any]:
    return {
        'id': row.id,
        'brand_id': row.brand_id,
        'profile': row.profile,
        'status': row.status,
        'steps': list(row.steps or []),
        'options': row.options or {},
        'first_job_id': row.first_job_id,
        'error': row.error,
        'created_at': row.created_at.isoformat() if row.created_at else None,
        'finished_at': row.finished_at.isoformat() if row.finished_at else None,
    }


def get_pipeline(pipeline_id: str) -> Optional[Dict[str, Any]]:
    session = get_session()
    try:
        row = session.get(PipelineRun, pipeline_id)
        return _pipeline_to_dict(row) if row else None
    finally:
        session.close()


def _finish_pipeline(pipeline_id: str, status: str, error: str = None) -> bool:
    """Move a running pipeline to a terminal status. False if it was already finished."""
    session = get_session()
    try:
        row = session.get(PipelineRun, pipeline_id)
        if row is None or row.status != 'running':
            return False
        row.status = status
        row.error = error
        row.finished_at = utcnow()
        session.commit()
        logger.info("Pipeline %s %s", pipeline_id, status)
        return True
    except Exception:
        session.rollback()
        logger.error("Failed to mark pipeline %s %s", pipeline_id, status, exc_info=True)
        raise
    finally:
        session.close()


def mark_pipeline_complete(pipeline_id: str) -> bool:
    return _finish_pipeline(pipeline_id, 'complete')


def mark_pipeline_failed(pipeline_id: str, error: str) -> bool:
    return _finish_pipeline(pipeline_id, 'failed', error)


def mark_pipeline_cancelled(pipeline_id: str) -> bool:
    return _finish_pipeline(pipeline_id, 'cancelled')


def stage_payload(profile: str, options: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(options or {})
    payload['profile'] = profile
    return payload


def idempotency_key(pipeline_id: str, job_type: str) -> str:
    return f"pipeline:{pipeline_id}:{job_type}"


# ── Public API ────────────────────────────────────────────────────────────────

def enqueue_pipeline(brand_id: str, profile: str = 'standard',
                     options: Dict[str, Any] = None) -> Dict[str, str]:
    """
    Start the job chain for one brand. Returns {pipelineId, firstJobId}.

    Raises UnknownProfile, BrandNotFound, or PipelineConflict when the brand
    already has queued or running work.
    """
    options = dict(options or {})
    steps = get_pipeline_steps(profile)
    get_brand(brand_id)

    active = job_store.active_jobs_for_brand(brand_id)
    if active:
        raise PipelineConflict(
            f"Brand {brand_id} already has {len(active)} active job(s) "
            f"(e.g. {active[0]['type']} {active[0]['id']})"
        )

    pipeline_id = str(uuid.uuid4())
    session = get_session()
    try:
        session.add(PipelineRun(
            id=pipeline_id, brand_id=brand_id, profile=profile,
            status='running', steps=steps, options=options,
        ))
        session.commit()
    except Exception:
        session.rollback()
        logger.error("Failed to create pipeline for brand %s", brand_id, exc_info=True)
        raise
    finally:
        session.close()

    first_job_id = job_store.create_job(
        steps[0], brand_id,
        payload=stage_payload(profile, options),
        priority=PIPELINE_FIRST_JOB_PRIORITY,
        idempotency_key=idempotency_key(pipeline_id, steps[0]),
        pipeline_id=pipeline_id,
    )

    session = get_session()
    try:
        row = session.get(PipelineRun, pipeline_id)
        row.first_job_id = first_job_id
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    logger.info("Enqueued %s pipeline %s for brand %s (%s)",
                profile, pipeline_id, brand_id, ' → '.join(steps))
    kick_workers()
    return {'pipelineId': pipeline_id, 'firstJobId': first_job_id}


def get_pipeline_status(pipeline_id: str) -> Dict[str, Any]:
    """Per-step status, progress, the failed stage (if any) and sampling cost incurred."""
    pipeline = get_pipeline(pipeline_id)
    if pipeline is None:
        raise PipelineNotFound(f"Pipeline {pipeline_id} not found")

    jobs_by_type: Dict[str, Dict[str, Any]] = {}
    for job in job_store.list_pipeline_jobs(pipeline_id):
        jobs_by_type[job['type']] = job

    per_job = []
    for step in pipeline['steps']:
        job = jobs_by_type.get(step)
        if job is None:
            per_job.append({'type': step, 'jobId': None, 'status': 'pending', 'error': None,
                            'startedAt': None, 'completedAt': None, 'retryCount': 0})
            continue
        per_job.append({
            'type': step,
            'jobId': job['id'],
            'status': job['status'],
            'error': job['error'],
            'startedAt': job['started_at'],
            'completedAt': job['completed_at'],
            'retryCount': job['retry_count'],
        })

    complete = sum(1 for j in per_job if j['status'] == 'complete')
    failed = next((j for j in per_job if j['status'] == 'failed'), None)
    sample_ids = [j['jobId'] for j in per_job if j['type'] == 'sample' and j['jobId']]
    try:
        cost = db.get_job_sampling_cost(sample_ids)
    except Exception:
        logger.warning("Could not compute cost for pipeline %s", pipeline_id, exc_info=True)
        cost = None

    return {
        'pipelineId': pipeline_id,
        'brandId': pipeline['brand_id'],
        'profile': pipeline['profile'],
        'status': pipeline['status'],
        'progressPct': round(complete / len(per_job) * 100) if per_job else 0,
        'perJobStatus': per_job,
        'failedStage': failed['type'] if failed else None,
        'error': (failed['error'] if failed else None) or pipeline['error'],
        'costIncurred': cost,
        'createdAt': pipeline['created_at'],
        'finishedAt': pipeline['finished_at'],
    }


def cancel_pipeline(pipeline_id: str) -> Dict[str, Any]:
    """
    Stop the pipeline: cancel queued and running jobs and create no further ones.

    A running job is not interrupted; it finishes, keeps its result and chains
    nothing.
    """
    pipeline = get_pipeline(pipeline_id)
    if pipeline is None:
        raise PipelineNotFound(f"Pipeline {pipeline_id} not found")
    if pipeline['status'] != 'running':
        return {'pipelineId': pipeline_id, 'status': pipeline['status'], 'cancelledJobs': []}

    mark_pipeline_cancelled(pipeline_id)
    cancelled: List[str] = []
    if pipeline['first_job_id']:
        cancelled = job_store.cancel_chain(pipeline['first_job_id'])
    logger.info("Cancelled pipeline %s (%d jobs)", pipeline_id, len(cancelled))
    return {'pipelineId': pipeline_id, 'status': 'cancelled', 'cancelledJobs': cancelled}


def get_latest_score(brand_id: str) -> Optional[Dict[str, Any]]:
    return db.get_latest_score(brand_id, engine='aggregate') or db.get_latest_score(brand_id)


def get_report(report_id: str) -> Dict[str, Any]:
    report = load_report(report_id)
    if report is None:
        raise ReportNotFound(f"Report {report_id} not found")
    return report


# ── Worker callbacks ──────────────────────────────────────────────────────────

def on_job_complete(job: Dict[str, Any], result: Dict[str, Any]) -> Optional[str]:
    """Chain the next step after a completed job. Returns the new job id, if any."""
    pipeline_id = job.get('pipeline_id')
    if not pipeline_id:
        return None
    pipeline = get_pipeline(pipeline_id)
    if pipeline is None or pipeline['status'] != 'running':
        logger.info("Pipeline %s is %s, not chaining after %s",
                    pipeline_id, pipeline['status'] if pipeline else 'missing', job['type'])
        return None

    steps = pipeline['steps']
    if job['type'] not in steps:
        return None
    position = steps.index(job['type'])

    if position == len(steps) - 1:
        if mark_pipeline_complete(pipeline_id):
            notify_pipeline_complete(pipeline, _completion_summary(pipeline_id, result))
        return None

    next_type = steps[position + 1]
    next_id = job_store.create_job(
        next_type, job['brand_id'],
        payload=stage_payload(pipeline['profile'], pipeline['options']),
        depends_on=[job['id']],
        priority=CHAINED_JOB_PRIORITY,
        idempotency_key=idempotency_key(pipeline_id, next_type),
        pipeline_id=pipeline_id,
    )
    logger.info("Pipeline %s: %s complete, chained %s job %s",
                pipeline_id, job['type'], next_type, next_id)
    kick_workers()
    return next_id


def on_job_failed(job: Dict[str, Any], status: str, error: str) -> None:
    """A terminal job failure fails its pipeline."""
    pipeline_id = job.get('pipeline_id')
    if status != 'failed' or not pipeline_id:
        return
    message = f"{job['type']} failed: {error}"
    if mark_pipeline_failed(pipeline_id, message):
        pipeline = get_pipeline(pipeline_id)
        notify_pipeline_failed(pipeline, job['type'], str(error))


def _completion_summary(pipeline_id: str, result: Dict[str, Any]) -> Dict[str, Any]:
    stats = (result or {}).get('reportStats') or {}
    try:
        status = get_pipeline_status(pipeline_id)
        cost = status['costIncurred'] or 0
    except Exception:
        cost = 0
    return {
        'score': stats.get('score'),
        'totalSamples': stats.get('totalSamples', 0),
        'mentionRate': stats.get('mentionRate', 0) or 0,
        'costIncurred': cost,
    }
