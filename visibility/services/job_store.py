"""
Job Store — durable queue of pipeline work backed by SQLAlchemy.

Workers coordinate only through this module. A claim is a conditional UPDATE
on `status`, so two workers can never own the same job. A dependency can only
move to `complete` once and never leaves it, so a readiness check followed by
the status compare-and-set is enough to honor dependency order.
"""
import logging
import uuid
from collections import deque
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from visibility.config import (
    JOB_DEFAULT_MAX_RETRIES, JOB_MAX_RETRIES,
    JOB_BACKOFF_BASE_SECONDS, JOB_BACKOFF_MAX_SECONDS,
    JOB_STALE_AFTER_SECONDS, TERMINAL_JOB_STATUSES,
)
from visibility.database import get_session, utcnow
from visibility.errors import DuplicateIdempotencyKey, JobDependencyFailed, JobNotFound, JobStateError
from visibility.models.job import Job, JobDependency, JobLog

logger = logging.getLogger('services.job_store')

# A key held by a job in one of these states blocks a duplicate enqueue
ACTIVE_STATUSES = ('queued', 'running', 'complete')


def backoff_seconds(retry_count: int) -> float:
    """Delay before a failed job becomes claimable again."""
    exponent = max(0, retry_count - 1)
    return min(JOB_BACKOFF_MAX_SECONDS, JOB_BACKOFF_BASE_SECONDS * (2 ** exponent))


def _dependency_ids(session, job_id) -> List[str]:
    rows = session.query(JobDependency.depends_on_id).filter_by(job_id=job_id).all()
    return [r[0] for r in rows]


def _log(session, job_id, message, level='info', meta=None):
    session.add(JobLog(job_id=job_id, level=level, message=message, meta=meta))


# ── Enqueue ───────────────────────────────────────────────────────────────────

def create_job(job_type: str, brand_id: str, payload: Dict[str, Any] = None,
               depends_on: Iterable[str] = None, priority: int = 0,
               idempotency_key: str = None, pipeline_id: str = None,
               max_retries: int = None) -> str:
    """
    Insert a queued job and its dependency edges. Returns the job id.

    Enqueue is idempotent: if an active job already holds `idempotency_key`
    its id is returned and no row is written.
    """
    try:
        return _insert_job(job_type, brand_id, payload or {}, list(depends_on or []),
                           priority, idempotency_key, pipeline_id, max_retries)
    except DuplicateIdempotencyKey as e:
        logger.info("Duplicate enqueue for key %s, reusing job %s", e.key, e.existing_job_id)
        return e.existing_job_id


def _insert_job(job_type, brand_id, payload, depends_on, priority,
                idempotency_key, pipeline_id, max_retries):
    if max_retries is None:
        max_retries = JOB_MAX_RETRIES.get(job_type, JOB_DEFAULT_MAX_RETRIES)

    session = get_session()
    try:
        if idempotency_key:
            existing = session.query(Job).filter_by(idempotency_key=idempotency_key).first()
            if existing is not None:
                if existing.status in ACTIVE_STATUSES:
                    raise DuplicateIdempotencyKey(idempotency_key, existing.id)
                # Dead jobs give up their key so the work can be enqueued again
                existing.idempotency_key = None
                _log(session, existing.id, 'idempotency key released')
                session.flush()

        deps = session.query(Job).filter(Job.id.in_(depends_on)).all() if depends_on else []
        missing = set(depends_on) - {d.id for d in deps}
        if missing:
            raise JobNotFound(f"Unknown dependencies: {sorted(missing)}")

        now = utcnow()
        job = Job(
            id=str(uuid.uuid4()),
            brand_id=brand_id,
            pipeline_id=pipeline_id,
            type=job_type,
            status='queued',
            priority=priority,
            payload=payload,
            retry_count=0,
            max_retries=max_retries,
            idempotency_key=idempotency_key,
            available_at=now,
            created_at=now,
        )

        dead = [d for d in deps if d.status in ('failed', 'cancelled')]
        if dead:
            # Born blocked behind a dead dependency; it can never become ready
            job.status = 'cancelled' if dead[0].status == 'cancelled' else 'failed'
            job.error = f"dependency {dead[0].id} {dead[0].status}"
            job.completed_at = now

        session.add(job)
        session.flush()
        for dep_id in depends_on:
            session.add(JobDependency(job_id=job.id, depends_on_id=dep_id))
        _log(session, job.id, f"created {job_type} job", meta={
            'depends_on': depends_on, 'priority': priority, 'status': job.status,
        })
        session.commit()
        logger.info("Created %s job %s for brand %s (deps=%d, priority=%d)",
                    job_type, job.id, brand_id, len(depends_on), priority)
        return job.id
    except DuplicateIdempotencyKey:
        session.rollback()
        raise
    except IntegrityError:
        session.rollback()
        # Lost an insert race on the unique key; the winner's id is the answer
        if idempotency_key:
            winner = session.query(Job).filter_by(idempotency_key=idempotency_key).first()
            if winner is not None:
                raise DuplicateIdempotencyKey(idempotency_key, winner.id)
        raise
    except Exception:
        session.rollback()
        logger.error("Failed to create %s job for brand %s", job_type, brand_id, exc_info=True)
        raise
    finally:
        session.close()


# ── Claim ─────────────────────────────────────────────────────────────────────

def claim_next_ready_job(capabilities: Iterable[str] = None,
                         scan_limit: int = 20) -> Optional[Dict[str, Any]]:
    """
    Atomically claim the highest-priority ready job and mark it running.

    A job is ready when it is queued, its backoff delay has elapsed, its type
    is in `capabilities` (None means any type) and every dependency is complete.
    Returns the claimed job as a dict, or None when nothing is ready.
    """
    session = get_session()
    try:
        now = utcnow()
        dep_job = aliased(Job)
        blocked = (
            select(JobDependency.job_id)
            .join(dep_job, JobDependency.depends_on_id == dep_job.id)
            .where(dep_job.status != 'complete')
        )

        query = session.query(Job).filter(
            Job.status == 'queued',
            Job.available_at <= now,
            Job.id.not_in(blocked),
        )
        if capabilities:
            query = query.filter(Job.type.in_(list(capabilities)))
        candidates = (
            query.order_by(Job.priority.desc(), Job.created_at.asc())
            .limit(scan_limit)
            .all()
        )

        for candidate in candidates:
            claimed = session.execute(
                update(Job)
                .where(Job.id == candidate.id, Job.status == 'queued')
                .values(status='running', started_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                logger.debug("Lost claim race for job %s", candidate.id)
                continue

            _log(session, candidate.id, 'claimed', meta={'attempt': candidate.retry_count + 1})
            session.commit()
            job = session.get(Job, candidate.id)
            session.refresh(job)
            logger.info("Claimed %s job %s (priority=%d)", job.type, job.id, job.priority)
            return job.to_dict(depends_on=_dependency_ids(session, job.id))

        session.commit()
        return None
    except Exception:
        session.rollback()
        logger.error("Failed to claim next job", exc_info=True)
        raise
    finally:
        session.close()


# ── Completion / failure ──────────────────────────────────────────────────────

def complete_job(job_id: str, result: Dict[str, Any]) -> bool:
    """
    Write the job's result and mark it complete.

    Returns False when the job was cancelled while running: the result is still
    recorded (once) but the status stays cancelled and nothing should chain.
    """
    session = get_session()
    try:
        job = session.get(Job, job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        if job.result is not None:
            raise JobStateError(f"Job {job_id} already has a result")

        now = utcnow()
        done = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == 'running')
            .values(status='complete', result=result, error=None,
                    completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if done.rowcount == 1:
            _log(session, job_id, 'completed')
            session.commit()
            logger.info("Job %s complete", job_id)
            return True

        session.refresh(job)
        if job.status == 'cancelled':
            job.result = result
            _log(session, job_id, 'finished after cancellation; result kept, not chained')
            session.commit()
            logger.info("Job %s finished after cancellation", job_id)
            return False

        raise JobStateError(f"Cannot complete job {job_id} in status '{job.status}'")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def fail_job(job_id: str, error: str, retryable: bool = True) -> str:
    """
    Record a failed attempt. Returns the job's resulting status.

    Retryable failures go back to `queued` with exponential backoff until
    retry_count reaches max_retries; then, or immediately for non-retryable
    errors, the job is marked failed and the failure cascades to dependents.
    """
    session = get_session()
    try:
        job = session.get(Job, job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        if job.status in TERMINAL_JOB_STATUSES:
            logger.info("Ignoring failure for job %s already %s: %s", job_id, job.status, error)
            return job.status
        if job.status != 'running':
            raise JobStateError(f"Cannot fail job {job_id} in status '{job.status}'")

        now = utcnow()
        job.retry_count = min(job.retry_count + 1, job.max_retries)
        job.error = str(error)[:2000]

        if retryable and job.retry_count < job.max_retries:
            delay = backoff_seconds(job.retry_count)
            job.status = 'queued'
            job.started_at = None
            job.available_at = now + timedelta(seconds=delay)
            _log(session, job_id, f"attempt failed, retrying in {delay:.0f}s", level='warning',
                 meta={'error': job.error, 'retry_count': job.retry_count})
            logger.warning("Job %s failed (attempt %d/%d), retry in %.0fs: %s",
                           job_id, job.retry_count, job.max_retries, delay, error)
        else:
            job.status = 'failed'
            job.completed_at = now
            _log(session, job_id, 'failed', level='error',
                 meta={'error': job.error, 'retry_count': job.retry_count})
            logger.error("Job %s failed permanently: %s", job_id, error)
            _cascade_failure(session, job_id)

        session.commit()
        return job.status
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _cascade_failure(session, root_id):
    """Mark every not-yet-terminal transitive dependent of root_id failed."""
    now = utcnow()
    frontier = deque([root_id])
    seen = {root_id}
    while frontier:
        current = frontier.popleft()
        dependents = (
            session.query(Job)
            .join(JobDependency, JobDependency.job_id == Job.id)
            .filter(JobDependency.depends_on_id == current)
            .all()
        )
        for dep in dependents:
            if dep.id in seen:
                continue
            seen.add(dep.id)
            frontier.append(dep.id)
            if dep.status in TERMINAL_JOB_STATUSES:
                continue
            dep.status = 'failed'
            dep.error = str(JobDependencyFailed(dep.id, root_id))
            dep.completed_at = now
            _log(session, dep.id, dep.error, level='error')
            logger.warning("Job %s failed by cascade from %s", dep.id, root_id)


def cancel_chain(root_job_id: str) -> List[str]:
    """
    Cancel the root job and every transitive dependent not yet complete.

    Cancellation is cooperative: a running job keeps running, but its
    completion will not chain further work. Returns the cancelled job ids.
    """
    session = get_session()
    try:
        root = session.get(Job, root_job_id)
        if root is None:
            raise JobNotFound(f"Job {root_job_id} not found")

        now = utcnow()
        cancelled = []
        frontier = deque([root])
        seen = {root.id}
        while frontier:
            job = frontier.popleft()
            if job.status in ('queued', 'running'):
                job.status = 'cancelled'
                job.completed_at = now
                _log(session, job.id, 'cancelled', meta={'root': root_job_id})
                cancelled.append(job.id)
            dependents = (
                session.query(Job)
                .join(JobDependency, JobDependency.job_id == Job.id)
                .filter(JobDependency.depends_on_id == job.id)
                .all()
            )
            for dep in dependents:
                if dep.id not in seen:
                    seen.add(dep.id)
                    frontier.append(dep)

        session.commit()
        logger.info("Cancelled %d job(s) in chain rooted at %s", len(cancelled), root_job_id)
        return cancelled
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def requeue_stale_jobs(older_than_seconds: int = JOB_STALE_AFTER_SECONDS) -> List[str]:
    """
    Treat jobs stuck in `running` past the threshold as a failed attempt.

    There is no worker heartbeat, so a crashed worker leaves its job running
    forever; this gives such jobs the normal retry/fail treatment.
    """
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)
    session = get_session()
    try:
        stale = [
            j.id for j in session.query(Job).filter(
                Job.status == 'running', Job.started_at < cutoff,
            ).all()
        ]
    finally:
        session.close()

    for job_id in stale:
        status = fail_job(job_id, f"no completion after {older_than_seconds}s (stale worker)")
        logger.warning("Stale job %s returned as %s", job_id, status)
    return stale


# ── Reads ─────────────────────────────────────────────────────────────────────

def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    session = get_session()
    try:
        job = session.get(Job, job_id)
        if job is None:
            return None
        return job.to_dict(depends_on=_dependency_ids(session, job_id))
    finally:
        session.close()


def list_pipeline_jobs(pipeline_id: str) -> List[Dict[str, Any]]:
    session = get_session()
    try:
        jobs = (
            session.query(Job)
            .filter_by(pipeline_id=pipeline_id)
            .order_by(Job.created_at.asc())
            .all()
        )
        return [j.to_dict(depends_on=_dependency_ids(session, j.id)) for j in jobs]
    finally:
        session.close()


def active_jobs_for_brand(brand_id: str) -> List[Dict[str, Any]]:
    session = get_session()
    try:
        jobs = (
            session.query(Job)
            .filter(Job.brand_id == brand_id, Job.status.in_(('queued', 'running')))
            .all()
        )
        return [j.to_dict() for j in jobs]
    finally:
        session.close()


def log_job_event(job_id: str, message: str, level: str = 'info', meta: Dict[str, Any] = None):
    """Append to the job's audit log. Never raises."""
    session = get_session()
    try:
        _log(session, job_id, message, level=level, meta=meta)
        session.commit()
    except Exception:
        session.rollback()
        logger.error("Failed to write job log for %s", job_id, exc_info=True)
    finally:
        session.close()


def get_job_logs(job_id: str) -> List[Dict[str, Any]]:
    session = get_session()
    try:
        rows = (
            session.query(JobLog)
            .filter_by(job_id=job_id)
            .order_by(JobLog.id.asc())
            .all()
        )
        return [{
            'level': r.level,
            'message': r.message,
            'meta': r.meta,
            'created_at': r.created_at.isoformat() if r.created_at else None,
        } for r in rows]
    finally:
        session.close()
