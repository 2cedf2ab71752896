"""
Postgres persistence helpers for sampling and scoring data.

Writes raise on failure (after rollback) so the owning job fails and is
retried; the job store is the only place that decides what a failure means.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from visibility.database import get_session, utcnow
from visibility.models.content import BrandClaim, PageContent, ContentChunk
from visibility.models.sample_result import SampleResult
from visibility.models.visibility_score import VisibilityScore

logger = logging.getLogger('services.db')


# ── Sample results ────────────────────────────────────────────────────────────

def persist_sample_results(brand_id: str, job_id: str, results: List[Dict[str, Any]]) -> int:
    """Append one SampleResult row per executed request. Returns rows written."""
    session = get_session()
    try:
        for r in results:
            tokens = r.get('tokens') or {}
            session.add(SampleResult(
                brand_id=brand_id,
                job_id=job_id,
                model=r['model'],
                provider=r.get('provider', ''),
                prompt_key=r['prompt_key'],
                paraphrase_index=r.get('paraphrase_index', 0),
                intent=r.get('intent', ''),
                prompt_text=r.get('prompt_text', ''),
                response_text=r.get('response', '') or '',
                input_tokens=tokens.get('input', 0),
                output_tokens=tokens.get('output', 0),
                total_tokens=tokens.get('total', 0),
                cost=r.get('cost', 0.0) or 0.0,
                execution_time_ms=r.get('execution_time_ms', 0) or 0,
                error=r.get('error'),
            ))
        session.commit()
        logger.info("Stored %d sample results for brand %s (job %s)", len(results), brand_id, job_id)
        return len(results)
    except Exception:
        session.rollback()
        logger.error("Failed to store sample results for job %s", job_id, exc_info=True)
        raise
    finally:
        session.close()


def get_trailing_spend(brand_id: str, days: int = 30) -> float:
    """Total sampling cost recorded for the brand over the last `days` days."""
    since = utcnow() - timedelta(days=days)
    session = get_session()
    try:
        total = (
            session.query(func.coalesce(func.sum(SampleResult.cost), 0.0))
            .filter(SampleResult.brand_id == brand_id, SampleResult.created_at >= since)
            .scalar()
        )
        return float(total or 0.0)
    finally:
        session.close()


def get_job_sampling_cost(job_ids: List[str]) -> float:
    """Cost already incurred by the given sampling jobs."""
    if not job_ids:
        return 0.0
    session = get_session()
    try:
        total = (
            session.query(func.coalesce(func.sum(SampleResult.cost), 0.0))
            .filter(SampleResult.job_id.in_(job_ids))
            .scalar()
        )
        return float(total or 0.0)
    finally:
        session.close()


def load_recent_samples(brand_id: str, days: int = 30, limit: int = 500,
                        model: str = None, exclude_errors: bool = False) -> List[Dict[str, Any]]:
    """
    Newest-first sample results for the brand within the lookback window.

    `exclude_errors` drops rows recorded for failed provider calls.
    """
    since = utcnow() - timedelta(days=days)
    session = get_session()
    try:
        query = session.query(SampleResult).filter(
            SampleResult.brand_id == brand_id,
            SampleResult.created_at >= since,
        )
        if model:
            query = query.filter(SampleResult.model == model)
        if exclude_errors:
            query = query.filter(SampleResult.error.is_(None))
        rows = query.order_by(SampleResult.created_at.desc(), SampleResult.id.desc()).limit(limit).all()
        return [r.to_dict() for r in rows]
    finally:
        session.close()


# ── Sampling context sources ─────────────────────────────────────────────────

def get_top_claims(brand_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    session = get_session()
    try:
        rows = (
            session.query(BrandClaim)
            .filter_by(brand_id=brand_id)
            .order_by(BrandClaim.confidence.desc(), BrandClaim.id.asc())
            .limit(limit)
            .all()
        )
        return [{'id': c.id, 'text': c.claim_text, 'type': c.claim_type,
                 'confidence': c.confidence} for c in rows]
    finally:
        session.close()


def get_top_content(brand_id: str, limit: int = 5, max_chars: int = 1000) -> List[Dict[str, Any]]:
    session = get_session()
    try:
        rows = (
            session.query(PageContent)
            .filter_by(brand_id=brand_id)
            .order_by(PageContent.word_count.desc(), PageContent.id.asc())
            .limit(limit)
            .all()
        )
        return [{'id': p.id, 'title': p.title, 'url': p.url,
                 'main_content': (p.main_content or '')[:max_chars],
                 'word_count': p.word_count} for p in rows]
    finally:
        session.close()


def get_latest_chunks(brand_id: str, limit: int = 3) -> List[Dict[str, Any]]:
    session = get_session()
    try:
        rows = (
            session.query(ContentChunk)
            .filter_by(brand_id=brand_id)
            .order_by(ContentChunk.created_at.desc(), ContentChunk.id.desc())
            .limit(limit)
            .all()
        )
        return [{'id': c.id, 'chunk_text': c.chunk_text} for c in rows]
    finally:
        session.close()


# ── Scores ────────────────────────────────────────────────────────────────────

def persist_score(brand_id: str, job_id: Optional[str], engine: str,
                  components: Dict[str, float], total_score: int,
                  metadata: Dict[str, Any]) -> int:
    """Append a VisibilityScore row. Returns its id."""
    session = get_session()
    try:
        row = VisibilityScore(
            brand_id=brand_id,
            job_id=job_id,
            engine=engine,
            total_score=total_score,
            calculation_metadata=metadata,
            **components,
        )
        session.add(row)
        session.commit()
        logger.info("Stored %s score %d for brand %s", engine, total_score, brand_id)
        return row.id
    except Exception:
        session.rollback()
        logger.error("Failed to store score for brand %s", brand_id, exc_info=True)
        raise
    finally:
        session.close()


def get_latest_score(brand_id: str, engine: str = None) -> Optional[Dict[str, Any]]:
    session = get_session()
    try:
        query = session.query(VisibilityScore).filter_by(brand_id=brand_id)
        if engine:
            query = query.filter_by(engine=engine)
        row = query.order_by(VisibilityScore.calculated_at.desc(), VisibilityScore.id.desc()).first()
        return row.to_dict() if row else None
    finally:
        session.close()


def get_score_history(brand_id: str, days: int = 30, engine: str = None) -> List[Dict[str, Any]]:
    """Oldest-first score rows within the window."""
    since = utcnow() - timedelta(days=days)
    session = get_session()
    try:
        query = session.query(VisibilityScore).filter(
            VisibilityScore.brand_id == brand_id,
            VisibilityScore.calculated_at >= since,
        )
        if engine:
            query = query.filter(VisibilityScore.engine == engine)
        rows = query.order_by(VisibilityScore.calculated_at.asc(), VisibilityScore.id.asc()).all()
        return [r.to_dict() for r in rows]
    finally:
        session.close()
