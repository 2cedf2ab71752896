"""
Scoring stage — reduce stored sample results into the visibility score.

Seven components, each in [0, 100]:

    prompt_sov             brand mentions vs competitor mentions (50 with no baseline)
    generative_appearance  % of responses naming the brand or its bare domain
    citation_authority     mean domain authority of every cited URL (50 with none)
    answer_quality         structural heuristics per response, averaged
    voice_presence         placeholder (50) until a voice data feed exists
    ai_traffic             placeholder (50) until analytics attribution exists
    ai_conversions         placeholder (50) until conversion tracking exists

totalScore = round(Σ component × weight). Weights are loaded from
scoring_config.yaml and must sum to 1.0.
"""
import logging
import math
import os
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml

from visibility.config import SCORING_LOOKBACK_DAYS, SCORING_MAX_ROWS, INDUSTRY_AVERAGE_SCORE
from visibility.errors import NoData
from visibility.models.visibility_score import COMPONENT_FIELDS
from visibility.pipeline.base import StageHandler, StageResult
from visibility.services import db
from visibility.services.brands import get_brand

logger = logging.getLogger('pipeline.scoring')


DEFAULT_SCORE_WEIGHTS = {
    'prompt_sov': 0.30,
    'generative_appearance': 0.20,
    'citation_authority': 0.15,
    'answer_quality': 0.10,
    'voice_presence': 0.05,
    'ai_traffic': 0.10,
    'ai_conversions': 0.10,
}

DEFAULT_PLACEHOLDERS = {
    'voice_presence': 50,
    'ai_traffic': 50,
    'ai_conversions': 50,
}

DEFAULT_DOMAIN_AUTHORITY = 50
NO_CITATION_AUTHORITY = 50
NO_BASELINE_SOV = 50

URL_PATTERN = re.compile(r'https?://[^\s\]<>"]+')
# Sentence and markdown punctuation that ends up glued to a cited URL
TRAILING_PUNCTUATION = '.,;:!?)]}>\'"'

DOMAIN_AUTHORITY = {
    'stackoverflow.com': 95,
    'github.com': 90,
    'reddit.com': 85,
    'medium.com': 75,
    'docs.python.org': 95,
    'developer.mozilla.org': 92,
    'w3schools.com': 88,
    'geeksforgeeks.org': 82,
    'hackernoon.com': 78,
    'dev.to': 80,
    'freecodecamp.org': 85,
    'tutorialspoint.com': 75,
    'codecademy.com': 82,
    'udemy.com': 80,
    'coursera.org': 88,
    'npmjs.com': 90,
    'pypi.org': 88,
    'rubygems.org': 85,
    'packagist.org': 82,
    'maven.org': 85,
    'nuget.org': 83,
    'crates.io': 88,
    'golang.org': 92,
    'kubernetes.io': 90,
    'docker.com': 88,
    'aws.amazon.com': 95,
    'cloud.google.com': 93,
    'azure.microsoft.com': 92,
    'firebase.google.com': 90,
    'netlify.com': 85,
    'vercel.com': 83,
    'heroku.com': 82,
    'digitalocean.com': 80,
    'mongodb.com': 88,
    'postgresql.org': 90,
    'mysql.com': 87,
    'redis.io': 85,
    'elastic.co': 87,
    'apache.org': 92,
    'nginx.org': 88,
    'reactjs.org': 92,
    'vuejs.org': 90,
    'angular.io': 90,
    'svelte.dev': 85,
    'nextjs.org': 88,
    'nuxtjs.org': 85,
    'gatsbyjs.com': 83,
    'stripe.com': 90,
    'twilio.com': 87,
    'sendgrid.com': 85,
    'mailgun.com': 82,
    'auth0.com': 87,
    'okta.com': 88,
    'salesforce.com': 92,
    'hubspot.com': 88,
    'zendesk.com': 85,
    'intercom.com': 83,
    'slack.com': 88,
    'discord.com': 85,
    'zoom.us': 87,
    'atlassian.com': 90,
    'jetbrains.com': 88,
    'visualstudio.com': 90,
    'code.visualstudio.com': 88,
    'sublimetext.com': 85,
    'vim.org': 83,
    'emacs.org': 80,
    'tensorflow.org': 95,
    'pytorch.org': 93,
    'scikit-learn.org': 90,
    'jupyter.org': 88,
    'pandas.pydata.org': 87,
    'numpy.org': 88,
    'scipy.org': 87,
}


# ── Config ────────────────────────────────────────────────────────────────────

_scoring_config = None


def _default_config():
    return {
        'version': 'default',
        'weights': dict(DEFAULT_SCORE_WEIGHTS),
        'placeholders': dict(DEFAULT_PLACEHOLDERS),
        'lookback_days': SCORING_LOOKBACK_DAYS,
        'max_rows': SCORING_MAX_ROWS,
    }


def weights_are_valid(weights: Dict[str, float]) -> bool:
    if set(weights) != set(COMPONENT_FIELDS):
        return False
    return math.isclose(sum(weights.values()), 1.0, abs_tol=1e-9)


def load_scoring_config() -> dict:
    """Load scoring config from YAML, with in-memory cache and hardcoded fallback."""
    global _scoring_config
    if _scoring_config is not None:
        return _scoring_config

    config_path = os.path.join(os.path.dirname(__file__), 'scoring_config.yaml')
    try:
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
        config = _default_config()
        config.update({k: v for k, v in loaded.items() if v is not None})
        if not weights_are_valid(config['weights']):
            logger.warning("Score weights in YAML do not sum to 1.0, using defaults")
            config['weights'] = dict(DEFAULT_SCORE_WEIGHTS)
        _scoring_config = config
        logger.info("Scoring config loaded from YAML (version=%s)", config.get('version', '?'))
    except Exception as e:
        logger.warning("Scoring YAML not loaded (%s), using defaults", e)
        _scoring_config = _default_config()

    return _scoring_config


def get_score_weights() -> Dict[str, float]:
    return dict(load_scoring_config()['weights'])


def reset_cache():
    """Reset the in-memory cache (useful for testing)."""
    global _scoring_config
    _scoring_config = None


# ── Text helpers ──────────────────────────────────────────────────────────────

def _trim_url(url: str) -> str:
    while url and url[-1] in TRAILING_PUNCTUATION:
        # Keep a closing paren that balances one inside the URL, e.g. wiki/Foo_(bar)
        if url[-1] == ')' and url.count('(') >= url.count(')'):
            break
        url = url[:-1]
    return url


def extract_urls(text: str) -> List[str]:
    urls = (_trim_url(match) for match in URL_PATTERN.findall(text or ''))
    return [url for url in urls if url]


def extract_domain(url: str) -> Optional[str]:
    """Hostname without a leading www., or None for an unparseable URL."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    host = (host or '').rstrip('.')
    if not host:
        return None
    return host[4:] if host.startswith('www.') else host


def bare_domain(domain: str) -> str:
    """'https://www.Acme.com/' → 'acme.com'."""
    domain = (domain or '').lower().strip()
    if '://' in domain:
        domain = domain.split('://', 1)[1]
    domain = domain.split('/', 1)[0].rstrip('.')
    return domain[4:] if domain.startswith('www.') else domain


def brand_needles(brand: Dict[str, Any]) -> List[str]:
    return [(brand.get('name') or '').lower().strip(), bare_domain(brand.get('domain'))]


def mentions(text: str, needles: List[str]) -> bool:
    """Case-insensitive substring match; empty needles never match."""
    lowered = (text or '').lower()
    return any(n and n in lowered for n in needles)


def answered(samples: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Samples whose provider call succeeded."""
    return [s for s in samples if not s.get('error')]


# ── Components ────────────────────────────────────────────────────────────────

def count_competitor_mentions(samples: List[Dict[str, Any]], competitors: List[str]) -> Dict[str, int]:
    """Responses mentioning each competitor, matched on its domain or bare name."""
    counts = {}
    for competitor in competitors:
        domain = bare_domain(competitor)
        name = domain.split('.')[0] if '.' in domain else domain
        needles = [domain, name]
        counts[competitor] = sum(1 for s in samples if mentions(s.get('response_text'), needles))
    return counts


def calculate_prompt_sov(samples, brand, competitor_mentions: Dict[str, int]) -> float:
    total_competitor = sum(competitor_mentions.values())
    if total_competitor <= 0:
        return float(NO_BASELINE_SOV)
    name = brand['name'].lower()
    brand_mentions = sum(1 for s in samples if mentions(s.get('response_text'), [name]))
    return min(100.0, brand_mentions / total_competitor * 100)


def calculate_generative_appearance(samples, brand) -> float:
    if not samples:
        return 0.0
    needles = brand_needles(brand)
    appearances = sum(1 for s in samples if mentions(s.get('response_text'), needles))
    return appearances / len(samples) * 100


def calculate_citation_authority(samples) -> float:
    total = 0
    count = 0
    for s in samples:
        for url in extract_urls(s.get('response_text')):
            domain = extract_domain(url)
            if domain is None:
                continue
            total += DOMAIN_AUTHORITY.get(domain, DEFAULT_DOMAIN_AUTHORITY)
            count += 1
    return total / count if count else float(NO_CITATION_AUTHORITY)


def score_answer(text: str) -> int:
    """Heuristic quality of one response, clamped to [0, 100]."""
    quality = 50
    word_count = len(text.split())
    if 50 <= word_count <= 120:
        quality += 20
    elif 30 <= word_count <= 200:
        quality += 10

    if '\n' in text or '•' in text or '-' in text:
        quality += 10

    url_count = len(extract_urls(text))
    if url_count > 3:
        quality += 15
    elif url_count > 1:
        quality += 10
    elif url_count > 0:
        quality += 5

    if '?' in text:
        quality += 5
    return min(100, max(0, quality))


def calculate_answer_quality(samples) -> float:
    """Mean per-response quality. Empty responses count as zero."""
    if not samples:
        return 0.0
    total = sum(score_answer(s['response_text']) for s in samples if s.get('response_text'))
    return total / len(samples)


def _clamp(value: float) -> float:
    return float(min(100.0, max(0.0, value)))


def calculate_score_components(samples: List[Dict[str, Any]], brand: Dict[str, Any],
                               competitor_mentions: Dict[str, int] = None) -> Dict[str, float]:
    if competitor_mentions is None:
        competitor_mentions = count_competitor_mentions(samples, brand.get('competitors') or [])
    placeholders = load_scoring_config().get('placeholders') or DEFAULT_PLACEHOLDERS

    components = {
        'prompt_sov': calculate_prompt_sov(samples, brand, competitor_mentions),
        'generative_appearance': calculate_generative_appearance(samples, brand),
        'citation_authority': calculate_citation_authority(samples),
        'answer_quality': calculate_answer_quality(samples),
        'voice_presence': placeholders.get('voice_presence', 50),
        'ai_traffic': placeholders.get('ai_traffic', 50),
        'ai_conversions': placeholders.get('ai_conversions', 50),
    }
    return {name: _clamp(value) for name, value in components.items()}


def compute_total_score(components: Dict[str, float], weights: Dict[str, float] = None) -> int:
    weights = weights or get_score_weights()
    return int(round(sum(components[name] * weights[name] for name in COMPONENT_FIELDS)))


# ── Public API ────────────────────────────────────────────────────────────────

def score_brand(brand_id: str, engine: str = None, job_id: str = None) -> Dict[str, Any]:
    """
    Score the brand over the lookback window and append a VisibilityScore row.

    `engine` restricts scoring to one model's responses; otherwise the
    score is stored as the 'aggregate' engine. Raises NoData on an empty window.
    """
    config = load_scoring_config()
    brand = get_brand(brand_id)
    samples = db.load_recent_samples(
        brand_id, days=config['lookback_days'], limit=config['max_rows'], model=engine,
        exclude_errors=True,
    )
    if not samples:
        raise NoData(f"No sample results for brand {brand_id} in the last {config['lookback_days']} days")

    competitor_mentions = count_competitor_mentions(samples, brand['competitors'])
    components = calculate_score_components(samples, brand, competitor_mentions)
    weights = get_score_weights()
    total = compute_total_score(components, weights)

    metadata = {
        'samplesAnalyzed': len(samples),
        'competitorMentions': competitor_mentions,
        'weights': weights,
        'configVersion': config.get('version'),
        'lookbackDays': config['lookback_days'],
    }
    engine_name = engine or 'aggregate'
    score_id = db.persist_score(brand_id, job_id, engine_name, components, total, metadata)
    logger.info("Brand %s scored %d (%s, %d samples)", brand_id, total, engine_name, len(samples),
                extra={'job_id': job_id, 'brand_id': brand_id})

    return {
        'scoreId': score_id,
        'engine': engine_name,
        'components': components,
        'totalScore': total,
        'samplesAnalyzed': len(samples),
        'competitorMentions': competitor_mentions,
    }


def get_score_trend(brand_id: str, engine: str = None) -> Dict[str, Any]:
    """Change between the two most recent scores."""
    history = db.get_score_history(brand_id, days=SCORING_LOOKBACK_DAYS, engine=engine)
    if not history:
        return {'current': None, 'previous': None, 'delta': 0, 'direction': 'flat'}
    current = history[-1]['total_score']
    previous = history[-2]['total_score'] if len(history) > 1 else None
    delta = current - previous if previous is not None else 0
    direction = 'up' if delta > 0 else 'down' if delta < 0 else 'flat'
    return {'current': current, 'previous': previous, 'delta': delta, 'direction': direction}


def benchmark_score(total_score: int, industry_average: int = INDUSTRY_AVERAGE_SCORE) -> Dict[str, Any]:
    gap = total_score - industry_average
    messages = []
    if gap < 0:
        messages.append(
            f"Your AI Visibility Score is {abs(gap)} points below industry average. "
            "Focus on improving brand mentions and citation quality."
        )
    if total_score < 50:
        messages.append("Consider creating more comprehensive, well-structured content "
                        "that AI models are likely to cite.")
    if total_score >= 80:
        messages.append("Excellent AI visibility! Focus on maintaining your position "
                        "and expanding to new AI engines.")
    return {
        'score': total_score,
        'industryAverage': industry_average,
        'gap': gap,
        'aboveAverage': gap >= 0,
        'recommendations': messages,
    }


# ── Stage handler ─────────────────────────────────────────────────────────────

class ScoringHandler(StageHandler):
    job_type = 'score'
    description = 'Weighted visibility score from recent sample results'
    apis = []

    def run(self, job):
        started = time.monotonic()
        payload = job.get('payload') or {}
        scored = score_brand(job['brand_id'], engine=payload.get('engine'), job_id=job['id'])
        scored['benchmark'] = benchmark_score(scored['totalScore'])
        scored['processingTimeMs'] = int((time.monotonic() - started) * 1000)
        return StageResult(result=scored, processed=scored['samplesAnalyzed'])


HANDLERS = {
    'score': ScoringHandler,
}
