"""
Report assembly — terminal stage of the pipeline.

Gathers the latest score, recent sample results, competitor rollups, recent
prompts and top claims in parallel. A source that fails contributes an empty
value instead of failing the job. Derives insights and tiered recommendations,
then renders two artifacts from the same data:

    reports/{brand_id}/{report_id}/report.json   structured document
    reports/{brand_id}/{report_id}/report.md     narrative document

The Report row is created as 'generating' and finishes 'complete' or 'failed'.
"""
import json
import logging
import math
import time
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from visibility.config import SCORING_LOOKBACK_DAYS, SCORING_MAX_ROWS
from visibility.database import get_session, utcnow
from visibility.models.report import Report
from visibility.models.visibility_score import COMPONENT_FIELDS
from visibility.pipeline.base import StageHandler, StageResult
from visibility.pipeline.scoring import (
    DOMAIN_AUTHORITY, DEFAULT_DOMAIN_AUTHORITY,
    answered, brand_needles, count_competitor_mentions, extract_domain, extract_urls, mentions,
)
from visibility.services import db
from visibility.services.brands import get_brand
from visibility.services.r2 import put_blob

logger = logging.getLogger('pipeline.report')

REPORT_VERSION = '1.0'
NARRATIVE_CHARS_PER_PAGE = 2000
MAX_RECOMMENDATIONS = 8
TOP_DOMAIN_LIMIT = 10
RECENT_PROMPT_LIMIT = 20
CLAIM_LIMIT = 15

# Report dimension → score component
DIMENSIONS = {
    'presence': 'generative_appearance',
    'accuracy': 'answer_quality',
    'authority': 'citation_authority',
}

LOW_MODEL_MENTION_RATE = 0.3
STRONG_COMPETITOR_PCT = 60
LOW_MENTION_RATE = 0.3
HIGH_MENTION_RATE = 0.7
PROGRAM_MENTION_RATE = 0.5


# ── Data gathering ────────────────────────────────────────────────────────────

def _safe(name, fn, default):
    """Run one source fetch; log and fall back to `default` on failure."""
    try:
        return fn()
    except Exception:
        logger.warning("Report source '%s' failed, continuing without it", name, exc_info=True)
        return default


def _mentions_brand(text: str, brand: Dict[str, Any]) -> bool:
    return mentions(text, brand_needles(brand))


def gather_report_data(brand: Dict[str, Any]) -> Dict[str, Any]:
    """Fetch every report source concurrently. A failed source yields its empty value."""
    brand_id = brand['id']

    def latest_score():
        return db.get_latest_score(brand_id, engine='aggregate') or db.get_latest_score(brand_id)

    def recent_samples():
        return db.load_recent_samples(brand_id, days=SCORING_LOOKBACK_DAYS, limit=SCORING_MAX_ROWS)

    def top_claims():
        return db.get_top_claims(brand_id, limit=CLAIM_LIMIT)

    with ThreadPoolExecutor(max_workers=3) as executor:
        score_future = executor.submit(_safe, 'score', latest_score, None)
        samples_future = executor.submit(_safe, 'samples', recent_samples, [])
        claims_future = executor.submit(_safe, 'claims', top_claims, [])
        score = score_future.result()
        samples = samples_future.result()
        claims = claims_future.result()

    competitors = _safe(
        'competitors', lambda: competitor_rollups(samples, brand.get('competitors') or []), {},
    )
    prompts = _safe('prompts', lambda: recent_prompts(samples), [])

    return {
        'score': score,
        'samples': samples,
        'competitors': competitors,
        'prompts': prompts,
        'claims': claims,
    }


def competitor_rollups(samples: List[Dict[str, Any]], competitors: List[str]) -> Dict[str, Dict[str, Any]]:
    """Mention count and mention rate (percent of answered responses) per competitor."""
    counts = count_competitor_mentions(samples, competitors)
    total = len(answered(samples))
    return {
        name: {
            'mentions': count,
            'mentionRate': round(count / total * 100, 1) if total else 0.0,
        }
        for name, count in counts.items()
    }


def recent_prompts(samples: List[Dict[str, Any]], limit: int = RECENT_PROMPT_LIMIT) -> List[Dict[str, Any]]:
    seen = set()
    prompts = []
    for s in samples:
        key = (s['prompt_key'], s.get('paraphrase_index', 0))
        if key in seen:
            continue
        seen.add(key)
        prompts.append({'promptKey': s['prompt_key'], 'paraphraseIndex': key[1],
                        'text': s.get('prompt_text', '')})
        if len(prompts) >= limit:
            break
    return prompts


# ── Analysis ──────────────────────────────────────────────────────────────────

def _group_performance(samples, brand, key) -> Dict[str, Dict[str, Any]]:
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for s in samples:
        groups.setdefault(s[key], []).append(s)

    performance = {}
    for name, rows in groups.items():
        replies = answered(rows)
        mentioned = sum(1 for r in replies if _mentions_brand(r.get('response_text'), brand))
        performance[name] = {
            'totalSamples': len(rows),
            'mentionRate': mentioned / len(replies) if replies else 0.0,
            'failed': sum(1 for r in rows if r.get('error')),
            'totalCost': sum(r.get('cost') or 0.0 for r in rows),
        }
    return performance


def top_cited_domains(samples: List[Dict[str, Any]], limit: int = TOP_DOMAIN_LIMIT) -> List[Dict[str, Any]]:
    """Cited hostnames grouped and sorted by frequency."""
    counter = Counter()
    for s in samples:
        for url in extract_urls(s.get('response_text')):
            domain = extract_domain(url)
            if domain:
                counter[domain] += 1
    ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))[:limit]
    return [
        {'domain': domain, 'count': count,
         'authority': DOMAIN_AUTHORITY.get(domain, DEFAULT_DOMAIN_AUTHORITY)}
        for domain, count in ranked
    ]


def analyze_samples(samples: List[Dict[str, Any]], brand: Dict[str, Any]) -> Dict[str, Any]:
    total = len(samples)
    replies = answered(samples)
    mentioned = sum(1 for s in replies if _mentions_brand(s.get('response_text'), brand))
    return {
        'totalSamples': total,
        'mentionRate': mentioned / len(replies) if replies else 0.0,
        'modelPerformance': _group_performance(samples, brand, 'model'),
        'promptPerformance': _group_performance(samples, brand, 'prompt_key'),
        'topCitedDomains': top_cited_domains(replies),
    }


def strongest_and_weakest(components: Dict[str, float]):
    """(strongest, weakest) component names by raw value; ties keep field order."""
    present = [name for name in COMPONENT_FIELDS if components.get(name) is not None]
    if not present:
        return None, None
    strongest = present[0]
    weakest = present[0]
    for name in present[1:]:
        if components[name] > components[strongest]:
            strongest = name
        if components[name] < components[weakest]:
            weakest = name
    return strongest, weakest


def _fmt(value) -> str:
    return f"{value:g}" if isinstance(value, float) else str(value)


def generate_key_insights(score: Optional[Dict[str, Any]], analysis: Dict[str, Any]) -> List[str]:
    insights = []
    if score:
        overall = score['total_score']
        if overall >= 80:
            insights.append(f"Excellent brand visibility with an overall score of {overall}/100")
        elif overall >= 60:
            insights.append(f"Good brand visibility with room for improvement (score: {overall}/100)")
        else:
            insights.append(f"Low brand visibility detected (score: {overall}/100) - immediate action recommended")

        components = score['components']
        strongest, weakest = strongest_and_weakest(components)
        if strongest:
            insights.append(f"Strongest aspect: {strongest} ({_fmt(components[strongest])}/100)")
            insights.append(f"Area for improvement: {weakest} ({_fmt(components[weakest])}/100)")
    else:
        insights.append("No visibility score is available yet for this brand")

    models = analysis['modelPerformance']
    if models:
        best_name = None
        for name, data in models.items():
            if best_name is None or data['mentionRate'] > models[best_name]['mentionRate']:
                best_name = name
        insights.append(
            f"Best performing model: {best_name} with "
            f"{models[best_name]['mentionRate'] * 100:.1f}% mention rate"
        )

    rate = analysis['mentionRate']
    if rate < LOW_MENTION_RATE:
        insights.append('Low overall mention rate suggests need for improved content strategy')
    elif rate > HIGH_MENTION_RATE:
        insights.append('High mention rate indicates strong brand recognition in AI responses')
    return insights


def dimension_scores(score: Optional[Dict[str, Any]]) -> Dict[str, Optional[float]]:
    components = (score or {}).get('components') or {}
    return {dim: components.get(component) for dim, component in DIMENSIONS.items()}


def generate_recommendations(score: Optional[Dict[str, Any]], analysis: Dict[str, Any],
                             competitors: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Fixed rule list driven by score and mention-rate thresholds."""
    dims = dimension_scores(score)
    recommendations = []

    if dims['presence'] is not None and dims['presence'] < 50:
        recommendations.append({
            'category': 'Content Strategy',
            'priority': 'high',
            'title': 'Increase Brand Presence in AI Training Data',
            'description': 'Your brand has low visibility in AI model responses. Focus on creating more '
                           'discoverable, high-quality content that AI models can reference.',
            'estimatedImpact': 'Could improve presence score by 20-30 points',
            'timeframe': '3-6 months',
            'resources': ['Content team', 'SEO specialist', 'PR team'],
        })

    if dims['accuracy'] is not None and dims['accuracy'] < 60:
        recommendations.append({
            'category': 'Information Quality',
            'priority': 'high',
            'title': 'Improve Information Accuracy and Consistency',
            'description': 'AI models are providing inaccurate information about your brand. Ensure all '
                           'public information is consistent and up-to-date.',
            'estimatedImpact': 'Could improve accuracy score by 15-25 points',
            'timeframe': '1-3 months',
            'resources': ['Brand team', 'Web development', 'Content team'],
        })

    if dims['authority'] is not None and dims['authority'] < 55:
        recommendations.append({
            'category': 'Authority Building',
            'priority': 'medium',
            'title': 'Build Authoritative Content and Partnerships',
            'description': 'Increase the authority of your brand mentions through thought leadership, '
                           'expert content, and strategic partnerships.',
            'estimatedImpact': 'Could improve authority score by 10-20 points',
            'timeframe': '6-12 months',
            'resources': ['Content team', 'PR team', 'Executive team'],
        })

    low_models = [name for name, data in analysis['modelPerformance'].items()
                  if data['mentionRate'] < LOW_MODEL_MENTION_RATE]
    if low_models:
        recommendations.append({
            'category': 'Model-Specific Optimization',
            'priority': 'medium',
            'title': f"Optimize Content for {', '.join(low_models)}",
            'description': 'These AI models have low mention rates for your brand. Consider targeted '
                           'content strategies for these specific platforms.',
            'estimatedImpact': 'Could improve overall mention rate by 10-15%',
            'timeframe': '2-4 months',
            'resources': ['AI specialist', 'Content team', 'Data analyst'],
        })

    strong = [name for name, data in competitors.items() if data['mentionRate'] > STRONG_COMPETITOR_PCT]
    if strong:
        recommendations.append({
            'category': 'Competitive Strategy',
            'priority': 'medium',
            'title': 'Competitive Visibility Enhancement',
            'description': f"Your competitors ({', '.join(strong)}) have strong AI visibility. Analyze "
                           "their content strategies and differentiate your approach.",
            'estimatedImpact': 'Could improve competitive positioning by 15-25%',
            'timeframe': '3-6 months',
            'resources': ['Competitive intelligence', 'Strategy team', 'Content team'],
        })

    if analysis['mentionRate'] < PROGRAM_MENTION_RATE:
        recommendations.append({
            'category': 'Overall Strategy',
            'priority': 'high',
            'title': 'Comprehensive AI Visibility Program',
            'description': "Implement a comprehensive program to improve your brand's visibility in AI "
                           "model training data and responses.",
            'estimatedImpact': 'Could improve overall score by 25-40 points',
            'timeframe': '6-12 months',
            'resources': ['Cross-functional team', 'AI consultant', 'Content strategy team'],
        })

    return recommendations[:MAX_RECOMMENDATIONS]


# ── Rendering ─────────────────────────────────────────────────────────────────

def build_report_document(report_id: str, brand: Dict[str, Any], data: Dict[str, Any],
                          analysis: Dict[str, Any], insights: List[str],
                          recommendations: List[Dict[str, Any]]) -> Dict[str, Any]:
    score = data['score']
    now = utcnow()
    return {
        'reportId': report_id,
        'brand': {
            'id': brand['id'],
            'name': brand['name'],
            'domain': brand['domain'],
            'competitors': brand.get('competitors') or [],
        },
        'score': {
            'overall': score['total_score'] if score else None,
            'components': score['components'] if score else {},
            'dimensions': dimension_scores(score),
            'calculatedAt': score.get('calculated_at') if score else None,
            'competitorComparison': data['competitors'],
        },
        'analysis': analysis,
        'content': {
            'topClaims': data['claims'],
            'recentPrompts': data['prompts'],
            'keyInsights': insights,
        },
        'recommendations': recommendations,
        'metadata': {
            'generatedAt': now.isoformat(),
            'reportPeriod': now.strftime('%Y-%m'),
            'reportVersion': REPORT_VERSION,
            'dataSourceCount': (
                analysis['totalSamples'] + len(data['claims'])
                + len(analysis['modelPerformance']) + len(analysis['promptPerformance'])
            ),
        },
    }


def render_narrative(document: Dict[str, Any]) -> str:
    """Markdown narrative rendered from the structured document."""
    brand = document['brand']
    score = document['score']
    analysis = document['analysis']
    overall = score['overall']

    lines = [
        f"# AI Visibility Report: {brand['name']}",
        '',
        f"Generated {document['metadata']['generatedAt']} for {brand['domain']}.",
        '',
        '## Executive Summary',
        '',
        f"This report analyzes {brand['name']}'s visibility across AI models based on "
        f"{analysis['totalSamples']} samples.",
        '',
        f"- Overall score: **{overall if overall is not None else 'n/a'}/100**",
        f"- Mention rate: **{analysis['mentionRate'] * 100:.1f}%**",
        '',
    ]

    if score['components']:
        lines += ['## Score Components', '', '| Component | Score |', '| --- | --- |']
        for name in COMPONENT_FIELDS:
            if name in score['components']:
                lines.append(f"| {name} | {_fmt(score['components'][name])} |")
        lines.append('')

    if analysis['modelPerformance']:
        lines += ['## Model Performance', '', '| Model | Samples | Mention rate | Failed |',
                  '| --- | --- | --- | --- |']
        for model, perf in sorted(analysis['modelPerformance'].items()):
            lines.append(f"| {model} | {perf['totalSamples']} | "
                         f"{perf['mentionRate'] * 100:.1f}% | {perf['failed']} |")
        lines.append('')

    if analysis['topCitedDomains']:
        lines += ['## Top Cited Domains', '']
        for entry in analysis['topCitedDomains']:
            lines.append(f"- {entry['domain']}: {entry['count']} citations (authority {entry['authority']})")
        lines.append('')

    lines += ['## Key Insights', '']
    lines += [f"- {insight}" for insight in document['content']['keyInsights']]
    lines.append('')

    lines += ['## Recommendations', '']
    if not document['recommendations']:
        lines += ['No recommendations at this time.', '']
    for rec in document['recommendations']:
        lines += [
            f"### {rec['title']}",
            '',
            f"**Priority:** {rec['priority'].upper()} | **Category:** {rec['category']}",
            '',
            rec['description'],
            '',
            f"- Estimated impact: {rec['estimatedImpact']}",
            f"- Timeframe: {rec['timeframe']}",
            f"- Resources: {', '.join(rec['resources'])}",
            '',
        ]
    return '\n'.join(lines)


def upload_artifacts(brand_id: str, report_id: str, document: Dict[str, Any],
                     narrative: str) -> Dict[str, Any]:
    prefix = f"reports/{brand_id}/{report_id}"
    json_bytes = json.dumps(document, indent=2, default=str).encode('utf-8')
    narrative_bytes = narrative.encode('utf-8')

    json_url = put_blob(f"{prefix}/report.json", json_bytes, 'application/json')
    narrative_url = put_blob(f"{prefix}/report.md", narrative_bytes, 'text/markdown')
    return {
        'json_url': json_url,
        'narrative_url': narrative_url,
        'page_count': max(1, math.ceil(len(narrative) / NARRATIVE_CHARS_PER_PAGE)),
        'size_bytes': len(json_bytes) + len(narrative_bytes),
    }


# ── Report rows ───────────────────────────────────────────────────────────────

def create_report_record(report_id: str, brand_id: str, job_id: Optional[str]) -> None:
    session = get_session()
    try:
        session.add(Report(id=report_id, brand_id=brand_id, job_id=job_id, status='generating'))
        session.commit()
    except Exception:
        session.rollback()
        logger.error("Failed to create report %s", report_id, exc_info=True)
        raise
    finally:
        session.close()


def finish_report_record(report_id: str, **fields) -> None:
    """Write the final fields once; a report that is already complete is left untouched."""
    session = get_session()
    try:
        report = session.get(Report, report_id)
        if report is None or report.status == 'complete':
            return
        for name, value in fields.items():
            setattr(report, name, value)
        report.completed_at = utcnow()
        session.commit()
    except Exception:
        session.rollback()
        logger.error("Failed to update report %s", report_id, exc_info=True)
        raise
    finally:
        session.close()


def get_report(report_id: str) -> Optional[Dict[str, Any]]:
    session = get_session()
    try:
        report = session.get(Report, report_id)
        return report.to_dict() if report else None
    finally:
        session.close()


# ── Stage handler ─────────────────────────────────────────────────────────────

def assemble_report(brand_id: str, job_id: str = None) -> Dict[str, Any]:
    started = time.monotonic()
    brand = get_brand(brand_id)
    report_id = str(uuid.uuid4())
    create_report_record(report_id, brand_id, job_id)

    try:
        data = gather_report_data(brand)
        analysis = analyze_samples(data['samples'], brand)
        insights = generate_key_insights(data['score'], analysis)
        recommendations = generate_recommendations(data['score'], analysis, data['competitors'])
        document = build_report_document(report_id, brand, data, analysis, insights, recommendations)
        narrative = render_narrative(document)
        artifacts = upload_artifacts(brand_id, report_id, document, narrative)
    except Exception as e:
        finish_report_record(report_id, status='failed', error=str(e))
        raise

    overall = data['score']['total_score'] if data['score'] else None
    finish_report_record(
        report_id,
        status='complete',
        overall_score=overall,
        score_snapshot=data['score'],
        insights=insights,
        recommendations=recommendations,
        report_data=document,
        **artifacts,
    )
    processing_ms = int((time.monotonic() - started) * 1000)
    logger.info("Assembled report %s for brand %s (score=%s, %d recommendations)",
                report_id, brand_id, overall, len(recommendations),
                extra={'job_id': job_id, 'brand_id': brand_id})

    return {
        'reportId': report_id,
        'brandId': brand_id,
        'overallScore': overall,
        'mentionRate': analysis['mentionRate'],
        'totalSamples': analysis['totalSamples'],
        'topCitedDomains': analysis['topCitedDomains'][:5],
        'artifacts': artifacts,
        'reportStats': {
            'score': overall,
            'mentionRate': analysis['mentionRate'],
            'totalSamples': analysis['totalSamples'],
            'recommendationCount': len(recommendations),
            'processingTimeMs': processing_ms,
        },
    }


class ReportHandler(StageHandler):
    job_type = 'assemble_report'
    description = 'Insights, recommendations and report artifacts'
    apis = ['Cloudflare R2']

    def run(self, job):
        result = assemble_report(job['brand_id'], job_id=job['id'])
        return StageResult(result=result, processed=1)


HANDLERS = {
    'assemble_report': ReportHandler,
}
