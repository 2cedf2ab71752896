"""
Provider Registry — static catalog of callable models.

Keyed by the public model name used in sampling profiles. Each entry carries
the provider family (which decides the request/response shape), the provider's
own model id, per-token pricing, rate limits and endpoint.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

from visibility.errors import UnknownModel


@dataclass(frozen=True)
class ModelConfig:
    name: str
    provider: str                 # credential + breaker name
    family: str                   # request/response shape: anthropic | openai | google
    model_id: str
    cost_per_input_token: float
    cost_per_output_token: float
    requests_per_minute: int = 60
    tokens_per_minute: int = 60000
    base_url: Optional[str] = None


MODEL_REGISTRY: Dict[str, ModelConfig] = {
    'claude-opus': ModelConfig(
        name='claude-opus', provider='anthropic', family='anthropic',
        model_id='claude-3-opus-20240229',
        cost_per_input_token=0.000015, cost_per_output_token=0.000075,
        requests_per_minute=50, tokens_per_minute=40000,
        base_url='https://api.anthropic.com',
    ),
    'claude-sonnet': ModelConfig(
        name='claude-sonnet', provider='anthropic', family='anthropic',
        model_id='claude-3-5-sonnet-20241022',
        cost_per_input_token=0.000003, cost_per_output_token=0.000015,
        requests_per_minute=50, tokens_per_minute=40000,
        base_url='https://api.anthropic.com',
    ),
    'gpt-4o': ModelConfig(
        name='gpt-4o', provider='openai', family='openai',
        model_id='gpt-4o',
        cost_per_input_token=0.0000025, cost_per_output_token=0.00001,
        requests_per_minute=100, tokens_per_minute=80000,
        base_url='https://api.openai.com/v1',
    ),
    'gpt-4': ModelConfig(
        name='gpt-4', provider='openai', family='openai',
        model_id='gpt-4-turbo-preview',
        cost_per_input_token=0.00001, cost_per_output_token=0.00003,
        requests_per_minute=100, tokens_per_minute=80000,
        base_url='https://api.openai.com/v1',
    ),
    'gemini-pro': ModelConfig(
        name='gemini-pro', provider='google', family='google',
        model_id='gemini-1.5-pro',
        cost_per_input_token=0.0000035, cost_per_output_token=0.0000105,
        requests_per_minute=60, tokens_per_minute=60000,
        base_url='https://generativelanguage.googleapis.com/v1beta',
    ),
    'grok-beta': ModelConfig(
        name='grok-beta', provider='xai', family='openai',
        model_id='grok-beta',
        cost_per_input_token=0.000005, cost_per_output_token=0.000015,
        requests_per_minute=30, tokens_per_minute=30000,
        base_url='https://api.x.ai/v1',
    ),
    'mistral-large': ModelConfig(
        name='mistral-large', provider='mistral', family='openai',
        model_id='mistral-large-latest',
        cost_per_input_token=0.000004, cost_per_output_token=0.000012,
        requests_per_minute=60, tokens_per_minute=60000,
        base_url='https://api.mistral.ai/v1',
    ),
    'llama-3-70b': ModelConfig(
        name='llama-3-70b', provider='openrouter', family='openai',
        model_id='meta-llama/llama-3-70b-instruct',
        cost_per_input_token=0.0000009, cost_per_output_token=0.0000009,
        requests_per_minute=60, tokens_per_minute=60000,
        base_url='https://openrouter.ai/api/v1',
    ),
    'perplexity-online': ModelConfig(
        name='perplexity-online', provider='perplexity', family='openai',
        model_id='llama-3.1-sonar-large-128k-online',
        cost_per_input_token=0.000001, cost_per_output_token=0.000001,
        requests_per_minute=50, tokens_per_minute=50000,
        base_url='https://api.perplexity.ai',
    ),
}


def get_model_config(model: str) -> ModelConfig:
    """Look up a model; raises UnknownModel if it is not registered."""
    config = MODEL_REGISTRY.get(model)
    if config is None:
        raise UnknownModel(model)
    return config


def list_models() -> List[str]:
    return sorted(MODEL_REGISTRY)


def compute_cost(config: ModelConfig, input_tokens: int, output_tokens: int) -> Dict[str, float]:
    """Token cost, identical for every provider."""
    input_cost = input_tokens * config.cost_per_input_token
    output_cost = output_tokens * config.cost_per_output_token
    return {
        'input': input_cost,
        'output': output_cost,
        'total': input_cost + output_cost,
    }
