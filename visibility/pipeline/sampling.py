"""
Sampling stage — fan a brand's prompts out across models and paraphrases.

  1. Budget gate: estimated spend + trailing 30-day spend must fit the
     brand's monthly budget (advisory read-then-compare, not a lock).
  2. Context: top claims, longest content and latest chunks, capped.
  3. Expansion: model × prompt template × paraphrase index.
  4. Execution: fixed-width batches run in a thread pool, with a pause
     between batches. A failed request becomes a SampleResult with `error`.
  5. Persist every result and return per-model rollups.
"""
import logging
import random
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from visibility.config import (
    SAMPLING_BATCH_SIZE, SAMPLING_BATCH_PAUSE_SECONDS, SAMPLING_DEFAULT_TEMPERATURE,
    AVERAGE_COST_PER_CALL, CUSTOM_PROFILE_COST_PER_CALL, BUDGET_WINDOW_DAYS,
)
from visibility.errors import BudgetExceeded, PipelineError
from visibility.logging_config import job_extra
from visibility.pipeline.base import StageHandler, StageResult
from visibility.pipeline.sampling_config import get_profile, get_prompt_templates
from visibility.providers import client as llm_client
from visibility.providers.registry import get_model_config
from visibility.services import db
from visibility.services.brands import get_brand

logger = logging.getLogger('pipeline.sampling')

SERVICE_KEYWORDS = ['consulting', 'development', 'design', 'marketing', 'software', 'technology']
DEFAULT_SERVICE_TYPE = 'technology'
DEFAULT_LOCATION = 'United States'
DEFAULT_COMPETITOR = 'industry leaders'

LOCATION_PATTERNS = [
    re.compile(r'(?i:in|at|located|based)\s+([A-Z][a-z]+,?\s*[A-Z]{2})\b'),
    re.compile(r'(?i:in|at|located|based)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)'),
]

# Index → (lead-in, (find, replace)). Index 0 is the template as written.
# Every lead-in is distinct, so indexes differ even when no phrase matches.
PARAPHRASE_RULES = [
    None,
    ('Quick question: ', ("What can you tell me about", "I'd like to know more about")),
    ('Asking on behalf of my team: ', ("I'm looking for", "I need information about")),
    ('Please answer candidly. ', ("What do you know about", "Can you provide details on")),
    ('Based on what you know: ', ("What is", "Tell me about")),
]

CLAIM_LIMIT = 10
CONTENT_LIMIT = 5
CONTENT_MAX_CHARS = 1000
CHUNK_LIMIT = 3


@dataclass
class SamplingRequest:
    """One (model, prompt, paraphrase) call. Built fresh per job, never stored."""
    model: str
    prompt_key: str
    paraphrase_index: int
    prompt_text: str
    intent: str = ''
    context: Dict[str, Any] = field(default_factory=dict, repr=False)


# ── Budget gate ───────────────────────────────────────────────────────────────

def estimate_sampling_cost(models: List[str], prompts: List[str], paraphrases: int,
                           profile: str = 'standard') -> float:
    per_call = CUSTOM_PROFILE_COST_PER_CALL if profile == 'custom' else AVERAGE_COST_PER_CALL
    return len(models) * len(prompts) * paraphrases * per_call


def check_budget(brand: Dict[str, Any], estimated_cost: float) -> Dict[str, float]:
    """
    Raise BudgetExceeded if trailing spend + estimate exceeds the monthly budget.

    Fails open when the spend lookup itself errors: concurrent jobs for the
    same brand can both pass this gate.
    """
    budget = float(brand['monthly_budget'])
    try:
        spend = db.get_trailing_spend(brand['id'], days=BUDGET_WINDOW_DAYS)
    except Exception:
        logger.error("Budget lookup failed for brand %s, allowing sampling", brand['id'], exc_info=True)
        return {'spend': None, 'estimated': estimated_cost, 'budget': budget}

    if spend + estimated_cost > budget:
        raise BudgetExceeded(brand['id'], spend, estimated_cost, budget)
    return {'spend': spend, 'estimated': estimated_cost, 'budget': budget}


# ── Context + prompt rendering ────────────────────────────────────────────────

def build_sampling_context(brand: Dict[str, Any]) -> Dict[str, Any]:
    """Bounded context shared by every request in one sampling job."""
    return {
        'brand': {
            'id': brand['id'],
            'name': brand['name'],
            'domain': brand['domain'],
            'description': brand.get('description', ''),
            'competitors': list(brand.get('competitors') or []),
        },
        'top_claims': db.get_top_claims(brand['id'], limit=CLAIM_LIMIT),
        'top_content': db.get_top_content(brand['id'], limit=CONTENT_LIMIT, max_chars=CONTENT_MAX_CHARS),
        'chunks': db.get_latest_chunks(brand['id'], limit=CHUNK_LIMIT),
    }


def extract_service_type(context: Dict[str, Any]) -> str:
    for claim in context.get('top_claims', []):
        text = claim['text'].lower()
        for keyword in SERVICE_KEYWORDS:
            if keyword in text:
                return keyword
    return DEFAULT_SERVICE_TYPE


def extract_location(context: Dict[str, Any]) -> str:
    for claim in context.get('top_claims', []):
        for pattern in LOCATION_PATTERNS:
            match = pattern.search(claim['text'])
            if match:
                return match.group(1).strip()
    return DEFAULT_LOCATION


def pick_competitor(context: Dict[str, Any], rng: random.Random) -> str:
    competitors = context['brand'].get('competitors') or []
    if competitors:
        return rng.choice(competitors)
    return DEFAULT_COMPETITOR


def paraphrase_prompt(text: str, index: int) -> str:
    """Deterministic rewrite: the same index always yields the same text."""
    rule = PARAPHRASE_RULES[index % len(PARAPHRASE_RULES)]
    if rule is None:
        return text
    lead_in, (find, replace) = rule
    return lead_in + text.replace(find, replace, 1)


def render_prompt(template: str, context: Dict[str, Any], rng: random.Random) -> str:
    return (
        template
        .replace('{brand_name}', context['brand']['name'])
        .replace('{service_type}', extract_service_type(context))
        .replace('{location}', extract_location(context))
        .replace('{competitor}', pick_competitor(context, rng))
    )


def generate_sampling_requests(models: List[str], prompt_keys: List[str], paraphrases: int,
                               context: Dict[str, Any],
                               rng: random.Random = None) -> List[SamplingRequest]:
    """Expand the cartesian product of models × prompts × paraphrase indexes."""
    rng = rng or random.Random()
    templates = get_prompt_templates()
    requests = []
    for model in models:
        for prompt_key in prompt_keys:
            spec = templates.get(prompt_key)
            if not spec:
                logger.warning("Unknown prompt template: %s", prompt_key)
                continue
            for index in range(paraphrases):
                text = paraphrase_prompt(render_prompt(spec['template'], context, rng), index)
                requests.append(SamplingRequest(
                    model=model,
                    prompt_key=prompt_key,
                    paraphrase_index=index,
                    prompt_text=text,
                    intent=spec.get('intent', ''),
                    context=context,
                ))
    return requests


# ── Execution ─────────────────────────────────────────────────────────────────

def execute_single_sample(request: SamplingRequest, max_tokens: int,
                          temperature: float) -> Dict[str, Any]:
    """Run one request. Failures are captured in the result, never raised."""
    base = {
        'model': request.model,
        'prompt_key': request.prompt_key,
        'paraphrase_index': request.paraphrase_index,
        'prompt_text': request.prompt_text,
        'intent': request.intent,
    }
    try:
        response = llm_client.invoke(
            request.model, request.prompt_text,
            max_tokens=max_tokens, temperature=temperature,
        )
        return {
            **base,
            'provider': response.provider,
            'response': response.content,
            'tokens': dict(response.usage),
            'cost': response.cost['total'],
            'execution_time_ms': response.execution_time_ms,
            'error': None,
        }
    except Exception as e:
        logger.warning("Sample failed for %s/%s#%d: %s",
                       request.model, request.prompt_key, request.paraphrase_index, e)
        return {
            **base,
            'provider': '',
            'response': '',
            'tokens': {'input': 0, 'output': 0, 'total': 0},
            'cost': 0.0,
            'execution_time_ms': 0,
            'error': str(e) or e.__class__.__name__,
        }


def execute_sampling_requests(requests: List[SamplingRequest], max_tokens: int,
                              temperature: float, batch_size: int = SAMPLING_BATCH_SIZE,
                              pause_seconds: float = SAMPLING_BATCH_PAUSE_SECONDS) -> List[Dict[str, Any]]:
    """Run requests in batches of `batch_size`, waiting for each batch to finish."""
    results = []
    total_batches = (len(requests) + batch_size - 1) // batch_size
    with ThreadPoolExecutor(max_workers=batch_size) as executor:
        for start in range(0, len(requests), batch_size):
            batch = requests[start:start + batch_size]
            results.extend(executor.map(
                lambda r: execute_single_sample(r, max_tokens, temperature), batch,
            ))
            logger.info("Completed batch %d/%d", start // batch_size + 1, total_batches)
            if start + batch_size < len(requests):
                time.sleep(pause_seconds)
    return results


def summarize_results(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Per-model success/failure/cost rollups. Cost counts successful calls only."""
    successful = [r for r in results if not r.get('error')]
    model_results: Dict[str, Dict[str, Any]] = {}
    for r in results:
        entry = model_results.setdefault(r['model'], {'success': 0, 'failed': 0, 'cost': 0.0})
        if r.get('error'):
            entry['failed'] += 1
        else:
            entry['success'] += 1
            entry['cost'] += r.get('cost', 0.0)

    avg_time = (
        sum(r.get('execution_time_ms', 0) for r in successful) / len(successful)
        if successful else 0
    )
    return {
        'totalRequests': len(results),
        'successful': len(successful),
        'failed': len(results) - len(successful),
        'totalCost': sum(r.get('cost', 0.0) for r in successful),
        'modelResults': model_results,
        'averageExecutionTime': avg_time,
    }


# ── Stage handler ─────────────────────────────────────────────────────────────

def resolve_sampling_settings(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Merge the job payload over its named profile."""
    profile_name = payload.get('profile', 'standard')
    profile = get_profile(profile_name)

    if profile_name == 'custom':
        models = payload.get('models') or profile.get('models') or []
        prompts = payload.get('prompt_keys') or profile.get('prompts') or []
        paraphrases = int(payload.get('paraphrases') or profile.get('paraphrases', 1))
        max_tokens = int(payload.get('max_tokens') or profile.get('max_tokens', 2000))
    else:
        models = payload.get('models') or profile['models']
        prompts = payload.get('prompt_keys') or profile['prompts']
        paraphrases = int(payload.get('paraphrases') or profile['paraphrases'])
        max_tokens = int(payload.get('max_tokens') or profile['max_tokens'])

    if not models or not prompts or paraphrases < 1:
        raise PipelineError(f"Profile '{profile_name}' resolves to an empty sampling plan")
    for model in models:
        get_model_config(model)

    return {
        'profile': profile_name,
        'models': list(models),
        'prompts': list(prompts),
        'paraphrases': paraphrases,
        'max_tokens': max_tokens,
        'temperature': float(payload.get('temperature', SAMPLING_DEFAULT_TEMPERATURE)),
    }


class SamplingHandler(StageHandler):
    job_type = 'sample'
    description = 'Prompt fan-out across models and paraphrases'
    apis = ['Anthropic', 'OpenAI', 'Google', 'xAI', 'Mistral']

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def estimate_cost(self, payload):
        settings = resolve_sampling_settings(payload)
        return estimate_sampling_cost(settings['models'], settings['prompts'],
                                      settings['paraphrases'], settings['profile'])

    def run(self, job):
        started = time.monotonic()
        payload = job.get('payload') or {}
        settings = resolve_sampling_settings(payload)
        brand = get_brand(job['brand_id'])

        estimated = estimate_sampling_cost(settings['models'], settings['prompts'],
                                           settings['paraphrases'], settings['profile'])
        budget = check_budget(brand, estimated)

        context = build_sampling_context(brand)
        logger.info("Built context with %d claims, %d content items, %d chunks",
                    len(context['top_claims']), len(context['top_content']), len(context['chunks']),
                    extra=job_extra(job))

        requests = generate_sampling_requests(
            settings['models'], settings['prompts'], settings['paraphrases'], context, self.rng,
        )
        logger.info("Executing %d sampling requests for brand %s (profile=%s)",
                    len(requests), brand['id'], settings['profile'], extra=job_extra(job))

        results = execute_sampling_requests(requests, settings['max_tokens'], settings['temperature'])
        db.persist_sample_results(brand['id'], job['id'], results)

        summary = summarize_results(results)
        summary.update({
            'profile': settings['profile'],
            'estimatedCost': estimated,
            'budget': budget,
            'contextSize': {
                'claims': len(context['top_claims']),
                'content': len(context['top_content']),
                'embeddings': len(context['chunks']),
            },
            'processingTimeMs': int((time.monotonic() - started) * 1000),
        })
        errors = [f"{r['model']}/{r['prompt_key']}#{r['paraphrase_index']}: {r['error']}"
                  for r in results if r.get('error')]
        return StageResult(
            result=summary,
            processed=summary['successful'],
            failed=summary['failed'],
            errors=errors,
            cost=summary['totalCost'],
        )


HANDLERS = {
    'sample': SamplingHandler,
}
