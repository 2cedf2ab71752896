"""Tests for visibility.providers.client — request shapes, parsing, retries, breakers."""
import os
import time

import pytest
from unittest.mock import MagicMock, patch

from visibility.errors import (
    PermanentProviderError, TransientProviderError, UnknownModel,
)
from visibility.providers import client
from visibility.providers.client import (
    AnthropicFamily, GoogleFamily, OpenAICompatibleFamily, classify_status, invoke,
)
from visibility.providers.registry import get_model_config
from visibility.services.circuit_breaker import OPEN, get_breaker


OPENAI_BODY = {
    'choices': [{'message': {'role': 'assistant', 'content': 'Acme is a software firm.'}}],
    'usage': {'prompt_tokens': 100, 'completion_tokens': 50},
}


@pytest.fixture
def credentials():
    with patch.dict(os.environ, {
        'OPENAI_API_KEY': 'sk-test', 'ANTHROPIC_API_KEY': 'ak-test', 'GOOGLE_API_KEY': 'g-test',
        'XAI_API_KEY': 'x-test',
    }):
        yield


@pytest.fixture
def no_sleep():
    with patch('visibility.providers.client.time.sleep') as sleep:
        yield sleep


class TestClassifyStatus:

    @pytest.mark.parametrize('status', [None, 408, 429, 500, 503])
    def test_transient(self, status):
        assert isinstance(classify_status(status, 'x'), TransientProviderError)

    @pytest.mark.parametrize('status', [400, 401, 403, 404])
    def test_permanent(self, status):
        error = classify_status(status, 'x')
        assert isinstance(error, PermanentProviderError)
        assert error.retryable is False


class TestRequestShapes:

    def test_anthropic_system_prompt_is_top_level(self):
        request = AnthropicFamily().build_request(
            get_model_config('claude-opus'), 'hi', 'be brief', 100, 0.2)
        assert request['model'] == 'claude-3-opus-20240229'
        assert request['system'] == 'be brief'
        assert request['messages'] == [{'role': 'user', 'content': 'hi'}]

    def test_openai_system_prompt_is_first_message(self):
        request = OpenAICompatibleFamily().build_request(
            get_model_config('grok-beta'), 'hi', 'be brief', 100, 0.2)
        assert request['messages'][0] == {'role': 'system', 'content': 'be brief'}
        assert request['model'] == 'grok-beta'

    def test_google_generation_config(self):
        request = GoogleFamily().build_request(
            get_model_config('gemini-pro'), 'hi', None, 321, 0.5)
        assert request['contents'][0]['parts'][0]['text'] == 'hi'
        assert request['generationConfig'] == {'maxOutputTokens': 321, 'temperature': 0.5}


class TestParseResponse:

    def test_anthropic_joins_text_blocks(self):
        text, tokens_in, tokens_out = AnthropicFamily().parse_response({
            'content': [{'type': 'text', 'text': 'Hello '}, {'type': 'text', 'text': 'world'}],
            'usage': {'input_tokens': 12, 'output_tokens': 3},
        })
        assert (text, tokens_in, tokens_out) == ('Hello world', 12, 3)

    def test_openai(self):
        assert OpenAICompatibleFamily().parse_response(OPENAI_BODY) == \
            ('Acme is a software firm.', 100, 50)

    def test_openai_no_choices(self):
        with pytest.raises(PermanentProviderError):
            OpenAICompatibleFamily().parse_response({'choices': []})

    def test_google(self):
        text, tokens_in, tokens_out = GoogleFamily().parse_response({
            'candidates': [{'content': {'parts': [{'text': 'Gemini says hi'}]}}],
            'usageMetadata': {'promptTokenCount': 7, 'candidatesTokenCount': 4},
        })
        assert (text, tokens_in, tokens_out) == ('Gemini says hi', 7, 4)

    def test_missing_usage_counts_zero(self):
        _, tokens_in, tokens_out = OpenAICompatibleFamily().parse_response(
            {'choices': [{'message': {'content': 'x'}}]})
        assert (tokens_in, tokens_out) == (0, 0)


class TestTransports:

    def test_google_rate_limit_is_transient(self):
        resp = MagicMock(ok=False, status_code=429, text='quota')
        with patch('visibility.providers.client.requests.post', return_value=resp):
            with pytest.raises(TransientProviderError):
                GoogleFamily().send(get_model_config('gemini-pro'), {}, 'key', 30)

    def test_google_posts_to_generate_content(self):
        resp = MagicMock(ok=True)
        resp.json.return_value = {'candidates': []}
        with patch('visibility.providers.client.requests.post', return_value=resp) as post:
            GoogleFamily().send(get_model_config('gemini-pro'), {'contents': []}, 'key', 30)
        assert post.call_args.args[0].endswith('/models/gemini-1.5-pro:generateContent')
        assert post.call_args.kwargs['params'] == {'key': 'key'}

    def test_anthropic_sdk_client_disables_sdk_retries(self):
        sdk_client = MagicMock()
        sdk_client.messages.create.return_value.model_dump.return_value = {'content': []}
        with patch('visibility.providers.client.anthropic.Anthropic', return_value=sdk_client) as ctor:
            data = AnthropicFamily().send(get_model_config('claude-opus'), {'model': 'x'}, 'ak', 30)
        assert data == {'content': []}
        assert ctor.call_args.kwargs['max_retries'] == 0
        assert ctor.call_args.kwargs['timeout'] == 30

    def test_openai_client_cached_per_provider(self):
        sdk_client = MagicMock()
        sdk_client.chat.completions.create.return_value.model_dump.return_value = OPENAI_BODY
        family = OpenAICompatibleFamily()
        with patch('visibility.providers.client.openai.OpenAI', return_value=sdk_client) as ctor:
            family.send(get_model_config('gpt-4'), {}, 'sk', 30)
            family.send(get_model_config('gpt-4o'), {}, 'sk', 30)
        assert ctor.call_count == 1


class TestInvoke:

    def test_success_normalizes_usage_and_cost(self, credentials):
        with patch.object(OpenAICompatibleFamily, 'send', return_value=OPENAI_BODY):
            result = invoke('gpt-4', 'Tell me about Acme')
        assert result.model == 'gpt-4'
        assert result.provider == 'openai'
        assert result.content == 'Acme is a software firm.'
        assert result.usage == {'input': 100, 'output': 50, 'total': 150}
        assert result.cost['total'] == pytest.approx(result.cost['input'] + result.cost['output'])
        assert result.cost['total'] == pytest.approx(100 * 0.00001 + 50 * 0.00003)

    def test_transient_error_retried(self, credentials, no_sleep):
        send = MagicMock(side_effect=[TransientProviderError(503, 'busy'), OPENAI_BODY])
        with patch.object(OpenAICompatibleFamily, 'send', send):
            result = invoke('gpt-4', 'hi')
        assert result.content == 'Acme is a software firm.'
        assert send.call_count == 2
        no_sleep.assert_called_once_with(2)

    def test_transient_exhausts_attempts(self, credentials, no_sleep):
        send = MagicMock(side_effect=TransientProviderError(500, 'down'))
        with patch.object(OpenAICompatibleFamily, 'send', send):
            with pytest.raises(TransientProviderError):
                invoke('gpt-4', 'hi')
        assert send.call_count == 3
        assert [c.args[0] for c in no_sleep.call_args_list] == [2, 4]

    def test_permanent_error_not_retried(self, credentials, no_sleep):
        send = MagicMock(side_effect=PermanentProviderError(401, 'bad key'))
        with patch.object(OpenAICompatibleFamily, 'send', send):
            with pytest.raises(PermanentProviderError):
                invoke('gpt-4', 'hi')
        assert send.call_count == 1
        no_sleep.assert_not_called()

    def test_unknown_model(self):
        with pytest.raises(UnknownModel):
            invoke('gpt-99', 'hi')

    def test_missing_credential(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(PermanentProviderError) as exc:
                invoke('claude-opus', 'hi')
        assert exc.value.status == 401

    def test_open_breaker_short_circuits(self, credentials, no_sleep, fake_redis):
        breaker = get_breaker('openai')
        fake_redis.hset(breaker.key, mapping={'state': OPEN, 'opened_at': str(time.time())})
        send = MagicMock(return_value=OPENAI_BODY)
        with patch.object(OpenAICompatibleFamily, 'send', send):
            with pytest.raises(TransientProviderError) as exc:
                invoke('gpt-4', 'hi')
        send.assert_not_called()
        assert exc.value.status == 503

    def test_failures_count_against_provider_breaker(self, credentials, no_sleep):
        send = MagicMock(side_effect=TransientProviderError(500, 'down'))
        with patch.object(OpenAICompatibleFamily, 'send', send):
            with pytest.raises(TransientProviderError):
                invoke('grok-beta', 'hi', max_attempts=3)
        # xai breaker threshold is 3
        assert get_breaker('xai').state == OPEN
        assert get_breaker('openai').failure_count == 0

    def test_result_to_dict(self, credentials):
        with patch.object(OpenAICompatibleFamily, 'send', return_value=OPENAI_BODY):
            data = invoke('gpt-4', 'hi').to_dict()
        assert set(data) == {'model', 'provider', 'content', 'usage', 'cost', 'execution_time_ms'}
