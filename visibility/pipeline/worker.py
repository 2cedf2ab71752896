"""
Worker — claim ready jobs from the job store and run their stage handlers.

Any number of workers may run at once; the job store's conditional claim is
the only coordination between them. `drain` is also the RQ entry point that
job creation enqueues to wake an idle worker.

Error handling at the job boundary:
  PipelineError      → fail_job(retryable=error.retryable)
  anything else      → fail_job(retryable=True), logged with traceback
"""
import logging
import time
from typing import Any, Dict, Iterable, Optional, Type

from visibility.config import JOB_STALE_AFTER_SECONDS, WORKER_POLL_INTERVAL
from visibility.errors import PipelineError
from visibility.logging_config import job_extra
from visibility.pipeline import coordinator
from visibility.pipeline.base import StageHandler, get_handler, get_pipeline_info
from visibility.services import job_store

logger = logging.getLogger('pipeline.worker')

# Import handler registries from each stage module
from visibility.pipeline import onboard as onboard_mod
from visibility.pipeline import normalize as normalize_mod
from visibility.pipeline import embed as embed_mod
from visibility.pipeline import sampling as sampling_mod
from visibility.pipeline import scoring as scoring_mod
from visibility.pipeline import report as report_mod


# ── Handler registry ──────────────────────────────────────────────────────────
# Maps job type → handler class

HANDLERS: Dict[str, Type[StageHandler]] = {
    **onboard_mod.HANDLERS,
    **normalize_mod.HANDLERS,
    **embed_mod.HANDLERS,
    **sampling_mod.HANDLERS,
    **scoring_mod.HANDLERS,
    **report_mod.HANDLERS,
}


def handler_info() -> Dict[str, Any]:
    return get_pipeline_info(HANDLERS)


# ── Job execution ─────────────────────────────────────────────────────────────

def process_job(job: Dict[str, Any]) -> str:
    """Run one claimed job to a recorded outcome. Returns the job's resulting status."""
    started = time.monotonic()
    extra = job_extra(job)
    logger.info("Running %s job %s for brand %s (attempt %d/%d)",
                job['type'], job['id'], job['brand_id'],
                job['retry_count'] + 1, job['max_retries'], extra=extra)

    try:
        handler = get_handler(HANDLERS, job['type'])
    except ValueError as e:
        logger.error("%s", e, extra=extra)
        status = job_store.fail_job(job['id'], str(e), retryable=False)
        coordinator.on_job_failed(job, status, str(e))
        return status

    try:
        stage_result = handler.run(job)
    except PipelineError as e:
        logger.warning("%s job %s failed: %s", job['type'], job['id'], e, extra=extra)
        status = job_store.fail_job(job['id'], str(e), retryable=e.retryable)
        coordinator.on_job_failed(job, status, str(e))
        return status
    except Exception as e:
        logger.error("%s job %s crashed: %s", job['type'], job['id'], e, exc_info=True, extra=extra)
        status = job_store.fail_job(job['id'], f"{e.__class__.__name__}: {e}", retryable=True)
        coordinator.on_job_failed(job, status, str(e))
        return status

    result = stage_result.to_job_result()
    result.setdefault('processingTimeMs', int((time.monotonic() - started) * 1000))
    if not job_store.complete_job(job['id'], result):
        logger.info("%s job %s was cancelled while running", job['type'], job['id'], extra=extra)
        return 'cancelled'
    coordinator.on_job_complete(job, result)
    return 'complete'


def work_once(capabilities: Iterable[str] = None) -> Optional[str]:
    """Claim and run at most one job. Returns its id, or None when nothing is ready."""
    job = job_store.claim_next_ready_job(capabilities)
    if job is None:
        return None
    process_job(job)
    return job['id']


def drain(max_jobs: int = 100, capabilities: Iterable[str] = None) -> int:
    """Run ready jobs until none are left or max_jobs ran. Returns the count."""
    processed = 0
    while processed < max_jobs:
        if work_once(capabilities) is None:
            break
        processed += 1
    if processed:
        logger.info("Drained %d job(s)", processed)
    return processed


def sweep_stale_jobs(older_than_seconds: int = JOB_STALE_AFTER_SECONDS) -> int:
    """Give stuck running jobs the normal retry/fail treatment."""
    stale = job_store.requeue_stale_jobs(older_than_seconds)
    for job_id in stale:
        job = job_store.get_job(job_id)
        if job is not None:
            coordinator.on_job_failed(job, job['status'], job['error'])
    return len(stale)


def run_worker(capabilities: Iterable[str] = None, poll_interval: float = WORKER_POLL_INTERVAL,
               max_iterations: int = None) -> None:
    """Poll the job store forever (or for max_iterations loop turns)."""
    capabilities = list(capabilities) if capabilities else None
    logger.info("Worker started (capabilities=%s, poll=%.1fs)", capabilities or 'all', poll_interval)
    iterations = 0
    last_sweep = None

    while max_iterations is None or iterations < max_iterations:
        iterations += 1
        if last_sweep is None or time.monotonic() - last_sweep > JOB_STALE_AFTER_SECONDS / 4:
            try:
                sweep_stale_jobs()
            except Exception:
                logger.error("Stale job sweep failed", exc_info=True)
            last_sweep = time.monotonic()

        try:
            job_id = work_once(capabilities)
        except Exception:
            logger.error("Worker iteration failed", exc_info=True)
            job_id = None
        if job_id is None:
            time.sleep(poll_interval)
