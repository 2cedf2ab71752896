"""
LLM Invocation Client — one normalized call to one registered model.

Provider heterogeneity is contained in ProviderFamily subclasses, one per
request/response shape:

    anthropic  → anthropic SDK, Messages API
    openai     → openai SDK against any OpenAI-compatible base_url
                 (openai, xai, mistral, openrouter, perplexity)
    google     → requests against generateContent

Each family builds the request, sends it, maps transport errors onto the
Transient/Permanent split and parses content + usage. invoke() adds the
circuit breaker, the retry loop and the shared cost computation on top.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Tuple

import anthropic
import openai
import requests

from visibility.config import (
    PROVIDER_MAX_ATTEMPTS, PROVIDER_TIMEOUT_SECONDS, PROVIDER_BACKOFF_SECONDS,
)
from visibility.errors import (
    ProviderError, TransientProviderError, PermanentProviderError, ProviderTimeout,
)
from visibility.providers.credentials import get_provider_credential
from visibility.providers.registry import ModelConfig, get_model_config, compute_cost
from visibility.services.circuit_breaker import get_breaker, CircuitOpenError

logger = logging.getLogger('providers.client')


@dataclass
class InvocationResult:
    """Provider-independent response shape."""
    model: str
    provider: str
    content: str
    usage: Dict[str, int] = field(default_factory=dict)
    cost: Dict[str, float] = field(default_factory=dict)
    execution_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_status(status: Optional[int], body: Any, model: str = None) -> ProviderError:
    """Map an HTTP status to a transient (retry) or permanent (surface) error."""
    if status is None or status == 429 or status == 408 or status >= 500:
        return TransientProviderError(status, body, model=model)
    return PermanentProviderError(status, body, model=model)


# ── Provider families ────────────────────────────────────────────────────────

class ProviderFamily(ABC):
    """Request builder + transport + response parser for one API shape."""
    family: str = ''

    @abstractmethod
    def build_request(self, config: ModelConfig, prompt: str, system_prompt: Optional[str],
                      max_tokens: int, temperature: float) -> Dict[str, Any]:
        ...

    @abstractmethod
    def send(self, config: ModelConfig, request: Dict[str, Any], credential: str,
             timeout: float) -> Dict[str, Any]:
        """Perform the call and return the decoded response body."""
        ...

    @abstractmethod
    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, int, int]:
        """Return (content, input_tokens, output_tokens)."""
        ...


class _SDKFamily(ProviderFamily):
    """Shared error mapping for the openai/anthropic SDKs (same exception layout)."""
    sdk = None
    _clients: Dict[Tuple[str, str, float], Any] = {}

    def _make_client(self, config, credential, timeout):
        raise NotImplementedError

    def _client(self, config, credential, timeout):
        key = (config.provider, credential, timeout)
        if key not in self._clients:
            self._clients[key] = self._make_client(config, credential, timeout)
        return self._clients[key]

    def _call(self, fn, config, request, timeout):
        try:
            response = fn(**request)
        except self.sdk.APITimeoutError:
            raise ProviderTimeout(timeout, model=config.name)
        except self.sdk.APIStatusError as e:
            raise classify_status(e.status_code, getattr(e.response, 'text', str(e)), config.name)
        except self.sdk.APIConnectionError as e:
            raise TransientProviderError(None, str(e), model=config.name)
        return response.model_dump()


class AnthropicFamily(_SDKFamily):
    family = 'anthropic'
    sdk = anthropic
    _clients = {}

    def _make_client(self, config, credential, timeout):
        return anthropic.Anthropic(
            api_key=credential, base_url=config.base_url, timeout=timeout, max_retries=0,
        )

    def build_request(self, config, prompt, system_prompt, max_tokens, temperature):
        request = {
            'model': config.model_id,
            'max_tokens': max_tokens,
            'temperature': temperature,
            'messages': [{'role': 'user', 'content': prompt}],
        }
        if system_prompt:
            request['system'] = system_prompt
        return request

    def send(self, config, request, credential, timeout):
        client = self._client(config, credential, timeout)
        return self._call(client.messages.create, config, request, timeout)

    def parse_response(self, data):
        blocks = data.get('content') or []
        text = ''.join(b.get('text', '') for b in blocks if b.get('type', 'text') == 'text')
        usage = data.get('usage') or {}
        return text, int(usage.get('input_tokens') or 0), int(usage.get('output_tokens') or 0)


class OpenAICompatibleFamily(_SDKFamily):
    family = 'openai'
    sdk = openai
    _clients = {}

    def _make_client(self, config, credential, timeout):
        return openai.OpenAI(
            api_key=credential, base_url=config.base_url, timeout=timeout, max_retries=0,
        )

    def build_request(self, config, prompt, system_prompt, max_tokens, temperature):
        messages = []
        if system_prompt:
            messages.append({'role': 'system', 'content': system_prompt})
        messages.append({'role': 'user', 'content': prompt})
        return {
            'model': config.model_id,
            'max_tokens': max_tokens,
            'temperature': temperature,
            'messages': messages,
        }

    def send(self, config, request, credential, timeout):
        client = self._client(config, credential, timeout)
        return self._call(client.chat.completions.create, config, request, timeout)

    def parse_response(self, data):
        choices = data.get('choices') or []
        if not choices:
            raise PermanentProviderError(200, 'response has no choices')
        text = (choices[0].get('message') or {}).get('content') or ''
        usage = data.get('usage') or {}
        return text, int(usage.get('prompt_tokens') or 0), int(usage.get('completion_tokens') or 0)


class GoogleFamily(ProviderFamily):
    family = 'google'

    def build_request(self, config, prompt, system_prompt, max_tokens, temperature):
        text = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        return {
            'contents': [{'parts': [{'text': text}]}],
            'generationConfig': {
                'maxOutputTokens': max_tokens,
                'temperature': temperature,
            },
        }

    def send(self, config, request, credential, timeout):
        url = f"{config.base_url}/models/{config.model_id}:generateContent"
        try:
            resp = requests.post(url, params={'key': credential}, json=request, timeout=timeout)
        except requests.exceptions.Timeout:
            raise ProviderTimeout(timeout, model=config.name)
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(None, str(e), model=config.name)
        if not resp.ok:
            raise classify_status(resp.status_code, resp.text, config.name)
        return resp.json()

    def parse_response(self, data):
        candidates = data.get('candidates') or []
        if not candidates:
            raise PermanentProviderError(200, 'response has no candidates')
        parts = (candidates[0].get('content') or {}).get('parts') or []
        text = ''.join(p.get('text', '') for p in parts)
        usage = data.get('usageMetadata') or {}
        return (text, int(usage.get('promptTokenCount') or 0),
                int(usage.get('candidatesTokenCount') or 0))


FAMILIES: Dict[str, ProviderFamily] = {
    'anthropic': AnthropicFamily(),
    'openai': OpenAICompatibleFamily(),
    'google': GoogleFamily(),
}


def get_family(name: str) -> ProviderFamily:
    family = FAMILIES.get(name)
    if family is None:
        raise ValueError(f"No provider family registered for '{name}'")
    return family


# ── Public API ────────────────────────────────────────────────────────────────

def invoke(model: str, prompt_text: str, system_prompt: str = None, max_tokens: int = 1000,
           temperature: float = 0.7, timeout: float = PROVIDER_TIMEOUT_SECONDS,
           max_attempts: int = PROVIDER_MAX_ATTEMPTS) -> InvocationResult:
    """
    Call one model once (with retries) and return normalized content, usage and cost.

    Raises UnknownModel for unregistered models, PermanentProviderError on 4xx
    (never retried) and TransientProviderError/ProviderTimeout once the
    attempts are exhausted.
    """
    config = get_model_config(model)
    family = get_family(config.family)
    credential = get_provider_credential(config.provider)
    request = family.build_request(config, prompt_text, system_prompt, max_tokens, temperature)
    breaker = get_breaker(config.provider)

    last_error = None
    for attempt in range(1, max_attempts + 1):
        started = time.monotonic()
        try:
            data = breaker.call(family.send, config, request, credential, timeout)
            content, input_tokens, output_tokens = family.parse_response(data)
        except CircuitOpenError as e:
            last_error = TransientProviderError(503, str(e), model=model)
        except TransientProviderError as e:
            last_error = e
        else:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            usage = {
                'input': input_tokens,
                'output': output_tokens,
                'total': input_tokens + output_tokens,
            }
            logger.debug("%s responded in %dms (%d tokens)", model, elapsed_ms, usage['total'])
            return InvocationResult(
                model=model,
                provider=config.provider,
                content=content,
                usage=usage,
                cost=compute_cost(config, input_tokens, output_tokens),
                execution_time_ms=elapsed_ms,
            )

        if attempt < max_attempts:
            delay = PROVIDER_BACKOFF_SECONDS[min(attempt - 1, len(PROVIDER_BACKOFF_SECONDS) - 1)]
            logger.warning("%s attempt %d/%d failed (%s), retrying in %ds",
                           model, attempt, max_attempts, last_error, delay)
            time.sleep(delay)

    logger.error("%s failed after %d attempts: %s", model, max_attempts, last_error)
    raise last_error
