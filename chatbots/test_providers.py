import time

import httpx
import openai
from django.test import SimpleTestCase, override_settings
from google.api_core import exceptions as google_exceptions
from langchain_core.messages import AIMessageChunk, HumanMessage, SystemMessage
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from .llm_providers import (
    CustomOpenAICompatibleProvider,
    GeminiProvider,
    LLMAuthenticationError,
    LLMInvalidRequestError,
    LLMMalformedResponseError,
    LLMRateLimitError,
    LLMServiceUnavailableError,
    LLMTimeoutError,
    OpenAIProvider,
    ProviderRegistry,
)
from .resilience import reset_circuit_breakers

MESSAGES = [
    {'role': 'system', 'content': 'You are a helpful assistant.'},
    {'role': 'user', 'content': 'Hello'},
]
OPENAI_URL = "https://api.openai.com/v1/chat/completions"


def openai_request():
    return httpx.Request("POST", OPENAI_URL)


def sse_response(lines, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.iter_lines.return_value = iter(lines)
    return response


class OpenAIProviderTests(SimpleTestCase):
    def setUp(self):
        reset_circuit_breakers()

    @patch('chatbots.llm_providers.ChatOpenAI')
    def test_streams_text_fragments_and_skips_empty_chunks(self, mock_chat):
        mock_chat.return_value.stream.return_value = iter([
            AIMessageChunk(content="Hel"), AIMessageChunk(content=""), AIMessageChunk(content="lo"),
        ])
        provider = OpenAIProvider(api_key="sk-test", max_attempts=1)

        fragments = list(provider.stream_chat(MESSAGES, model="gpt-4o-mini", max_tokens=200, temperature=0.4))

        self.assertEqual(fragments, ["Hel", "lo"])
        kwargs = mock_chat.call_args.kwargs
        self.assertEqual(kwargs['model'], "gpt-4o-mini")
        self.assertEqual(kwargs['max_tokens'], 200)
        self.assertEqual(kwargs['temperature'], 0.4)
        self.assertEqual(kwargs['max_retries'], 0)
        lc_messages = mock_chat.return_value.stream.call_args.args[0]
        self.assertIsInstance(lc_messages[0], SystemMessage)
        self.assertIsInstance(lc_messages[1], HumanMessage)

    @patch('chatbots.llm_providers.ChatOpenAI')
    def test_reasoning_models_do_not_receive_temperature(self, mock_chat):
        mock_chat.return_value.stream.return_value = iter([AIMessageChunk(content="ok")])
        provider = OpenAIProvider(api_key="sk-test", max_attempts=1)

        list(provider.stream_chat(MESSAGES, model="gpt-5", max_tokens=64, temperature=0.7))

        self.assertNotIn('temperature', mock_chat.call_args.kwargs)
        self.assertEqual(mock_chat.call_args.kwargs['max_tokens'], 64)

    @override_settings(OPENAI_API_KEY=None)
    def test_missing_api_key_is_an_authentication_error(self):
        provider = OpenAIProvider(api_key=None, max_attempts=1)

        with self.assertRaises(LLMAuthenticationError):
            provider.stream_chat(MESSAGES, model="gpt-4o-mini", max_tokens=64)

    @patch('chatbots.llm_providers.ChatOpenAI')
    def test_authentication_errors_are_translated_and_not_retried(self, mock_chat):
        mock_chat.return_value.stream.side_effect = openai.AuthenticationError(
            "Incorrect API key provided", response=httpx.Response(401, request=openai_request()), body=None
        )
        provider = OpenAIProvider(api_key="sk-bad", max_attempts=3)

        with self.assertRaises(LLMAuthenticationError) as ctx:
            provider.stream_chat(MESSAGES, model="gpt-4o-mini", max_tokens=64)

        self.assertIn("Incorrect API key", ctx.exception.backend_message)
        self.assertEqual(mock_chat.return_value.stream.call_count, 1)

    @patch('chatbots.resilience.time.sleep')
    @patch('chatbots.llm_providers.ChatOpenAI')
    def test_connection_errors_are_retried_before_first_fragment(self, mock_chat, mock_sleep):
        mock_chat.return_value.stream.side_effect = [
            openai.APIConnectionError(request=openai_request()),
            iter([AIMessageChunk(content="recovered")]),
        ]
        provider = OpenAIProvider(api_key="sk-test", max_attempts=2)

        fragments = list(provider.stream_chat(MESSAGES, model="gpt-4o-mini", max_tokens=64))

        self.assertEqual(fragments, ["recovered"])
        self.assertEqual(mock_sleep.call_count, 1)

    @patch('chatbots.llm_providers.ChatOpenAI')
    def test_rate_limit_error_is_translated(self, mock_chat):
        mock_chat.return_value.stream.side_effect = openai.RateLimitError(
            "Rate limit reached", response=httpx.Response(429, request=openai_request()), body=None
        )
        provider = OpenAIProvider(api_key="sk-test", max_attempts=1)

        with self.assertRaises(LLMRateLimitError):
            provider.stream_chat(MESSAGES, model="gpt-4o-mini", max_tokens=64)

    @patch('chatbots.llm_providers.ChatOpenAI')
    def test_mid_stream_failure_surfaces_after_delivered_fragments(self, mock_chat):
        def chunks():
            yield AIMessageChunk(content="partial")
            raise openai.APIConnectionError(request=openai_request())

        mock_chat.return_value.stream.return_value = chunks()
        provider = OpenAIProvider(api_key="sk-test", max_attempts=1)

        fragments = provider.stream_chat(MESSAGES, model="gpt-4o-mini", max_tokens=64)

        self.assertEqual(next(fragments), "partial")
        with self.assertRaises(LLMServiceUnavailableError):
            next(fragments)

    @patch('chatbots.llm_providers.ChatOpenAI')
    def test_stream_ceiling_raises_timeout_and_closes_backend(self, mock_chat):
        closed = []

        def slow_chunks():
            try:
                yield AIMessageChunk(content="first")
                # Simulate a stalled backend by letting the ceiling pass.
                time.sleep(0.2)
                yield AIMessageChunk(content="late")
            finally:
                closed.append(True)

        mock_chat.return_value.stream.return_value = slow_chunks()
        provider = OpenAIProvider(api_key="sk-test", timeout=0.05, max_attempts=1)

        fragments = provider.stream_chat(MESSAGES, model="gpt-4o-mini", max_tokens=64)

        self.assertEqual(next(fragments), "first")
        with self.assertRaises(LLMTimeoutError):
            next(fragments)
        self.assertEqual(closed, [True])


class GeminiProviderTests(SimpleTestCase):
    def setUp(self):
        reset_circuit_breakers()

    @patch('chatbots.llm_providers.ChatGoogleGenerativeAI')
    def test_flattens_list_content_parts(self, mock_chat):
        mock_chat.return_value.stream.return_value = iter([
            SimpleNamespace(content=[{'type': 'text', 'text': 'Hola'}, ' ']),
            SimpleNamespace(content="mundo"),
            SimpleNamespace(content=[]),
        ])
        provider = GeminiProvider(api_key="g-test", max_attempts=1)

        fragments = list(provider.stream_chat(MESSAGES, model="gemini-2.0-flash", max_tokens=128, temperature=0.2))

        self.assertEqual(fragments, ["Hola ", "mundo"])
        kwargs = mock_chat.call_args.kwargs
        self.assertEqual(kwargs['model'], "gemini-2.0-flash")
        self.assertEqual(kwargs['google_api_key'], "g-test")
        self.assertEqual(kwargs['max_output_tokens'], 128)
        self.assertEqual(kwargs['temperature'], 0.2)

    @patch('chatbots.llm_providers.ChatGoogleGenerativeAI')
    def test_quota_errors_become_rate_limit_errors(self, mock_chat):
        mock_chat.return_value.stream.side_effect = RuntimeError("429 Resource exhausted: quota exceeded")
        provider = GeminiProvider(api_key="g-test", max_attempts=1)

        with self.assertRaises(LLMRateLimitError) as ctx:
            provider.stream_chat(MESSAGES, model="gemini-2.0-flash", max_tokens=128)

        self.assertIn("Resource exhausted", ctx.exception.backend_message)

    @patch('chatbots.llm_providers.ChatGoogleGenerativeAI')
    def test_invalid_key_becomes_authentication_error(self, mock_chat):
        mock_chat.return_value.stream.side_effect = ValueError("API key not valid. Please pass a valid API key.")
        provider = GeminiProvider(api_key="g-bad", max_attempts=1)

        with self.assertRaises(LLMAuthenticationError):
            provider.stream_chat(MESSAGES, model="gemini-2.0-flash", max_tokens=128)

    @patch('chatbots.resilience.time.sleep')
    @patch('chatbots.llm_providers.ChatGoogleGenerativeAI')
    def test_invalid_argument_is_not_mistaken_for_server_error(self, mock_chat, mock_sleep):
        mock_chat.return_value.stream.side_effect = google_exceptions.InvalidArgument(
            "Request contains 1500 tokens, more than the model allows."
        )
        provider = GeminiProvider(api_key="g-test", max_attempts=2)

        with self.assertRaises(LLMInvalidRequestError) as ctx:
            provider.stream_chat(MESSAGES, model="gemini-2.0-flash", max_tokens=128)

        self.assertIn("1500 tokens", ctx.exception.backend_message)
        self.assertEqual(mock_chat.return_value.stream.call_count, 1)
        mock_sleep.assert_not_called()

    @patch('chatbots.resilience.time.sleep')
    @patch('chatbots.llm_providers.ChatGoogleGenerativeAI')
    def test_wrapped_google_errors_are_translated_by_type(self, mock_chat, mock_sleep):
        def raise_wrapped(*args, **kwargs):
            try:
                raise google_exceptions.ResourceExhausted("Quota exceeded for model")
            except google_exceptions.ResourceExhausted as exc:
                raise RuntimeError("Error calling model") from exc

        mock_chat.return_value.stream.side_effect = raise_wrapped
        provider = GeminiProvider(api_key="g-test", max_attempts=2)

        with self.assertRaises(LLMRateLimitError):
            provider.stream_chat(MESSAGES, model="gemini-2.0-flash", max_tokens=128)

        self.assertEqual(mock_chat.return_value.stream.call_count, 2)

    @patch('chatbots.llm_providers.ChatGoogleGenerativeAI')
    def test_google_error_types_map_to_taxonomy(self, mock_chat):
        cases = [
            (google_exceptions.PermissionDenied("denied"), LLMAuthenticationError),
            (google_exceptions.DeadlineExceeded("slow"), LLMTimeoutError),
            (google_exceptions.ServiceUnavailable("overloaded"), LLMServiceUnavailableError),
            (google_exceptions.NotFound("models/gemini-x is not found"), LLMInvalidRequestError),
        ]
        for error, error_class in cases:
            reset_circuit_breakers()
            mock_chat.return_value.stream.side_effect = error
            provider = GeminiProvider(api_key="g-test", max_attempts=1)

            with self.assertRaises(error_class):
                provider.stream_chat(MESSAGES, model="gemini-2.0-flash", max_tokens=128)


class CustomProviderTests(SimpleTestCase):
    def setUp(self):
        reset_circuit_breakers()

    @patch('chatbots.llm_providers.requests.post')
    def test_parses_event_stream_until_done(self, mock_post):
        mock_post.return_value = sse_response([
            'data: {"choices":[{"delta":{"role":"assistant"}}]}',
            '',
            ': keep-alive',
            'data: {"choices":[{"delta":{"content":"Hi"}}]}',
            b'data: {"choices":[{"delta":{"content":" \xc3\xa1"}}]}',
            'data: {"choices":[]}',
            'data: [DONE]',
            'data: {"choices":[{"delta":{"content":"ignored"}}]}',
        ])
        provider = CustomOpenAICompatibleProvider(endpoint="http://llm.local:8080/v1/", max_attempts=1)

        fragments = list(provider.stream_chat(MESSAGES, model="llama3", max_tokens=100, temperature=0.5))

        self.assertEqual(fragments, ["Hi", " á"])
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "http://llm.local:8080/v1/chat/completions")
        self.assertNotIn('Authorization', kwargs['headers'])
        self.assertEqual(kwargs['json']['model'], "llama3")
        self.assertTrue(kwargs['json']['stream'])
        self.assertEqual(kwargs['json']['max_tokens'], 100)
        self.assertEqual(kwargs['json']['temperature'], 0.5)
        self.assertTrue(kwargs['stream'])
        mock_post.return_value.close.assert_called()

    @patch('chatbots.llm_providers.requests.post')
    def test_full_completions_url_and_bearer_key(self, mock_post):
        mock_post.return_value = sse_response(['data: {"choices":[{"delta":{"content":"ok"}}]}', 'data: [DONE]'])
        provider = CustomOpenAICompatibleProvider(
            endpoint="https://llm.example.com/v1/chat/completions", api_key="local-key", max_attempts=1
        )

        list(provider.stream_chat(MESSAGES, model="mistral", max_tokens=10))

        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://llm.example.com/v1/chat/completions")
        self.assertEqual(kwargs['headers']['Authorization'], "Bearer local-key")
        self.assertNotIn('temperature', kwargs['json'])

    @patch('chatbots.llm_providers.requests.post')
    def test_http_errors_map_to_taxonomy(self, mock_post):
        cases = [
            (401, LLMAuthenticationError),
            (429, LLMRateLimitError),
            (404, LLMInvalidRequestError),
            (502, LLMServiceUnavailableError),
        ]
        for status_code, error_class in cases:
            reset_circuit_breakers()
            response = sse_response([], status_code=status_code)
            response.json.return_value = {'error': {'message': f'backend said {status_code}'}}
            mock_post.return_value = response
            provider = CustomOpenAICompatibleProvider(endpoint="http://llm.local/v1", max_attempts=1)

            with self.assertRaises(error_class) as ctx:
                provider.stream_chat(MESSAGES, model="llama3", max_tokens=10)
            self.assertIn(f'backend said {status_code}', ctx.exception.backend_message)

    @patch('chatbots.llm_providers.requests.post')
    def test_unparsable_data_line_is_malformed_response(self, mock_post):
        mock_post.return_value = sse_response(['data: {not json'])
        provider = CustomOpenAICompatibleProvider(endpoint="http://llm.local/v1", max_attempts=1)

        with self.assertRaises(LLMMalformedResponseError):
            provider.stream_chat(MESSAGES, model="llama3", max_tokens=10)

    @patch('chatbots.llm_providers.requests.post')
    def test_choice_that_is_not_an_object_is_malformed_response(self, mock_post):
        mock_post.return_value = sse_response(['data: {"choices":["oops"]}', 'data: [DONE]'])
        provider = CustomOpenAICompatibleProvider(endpoint="http://llm.local/v1", max_attempts=1)

        fragments = provider.stream_chat(MESSAGES, model="llama3", max_tokens=10)

        with self.assertRaises(LLMMalformedResponseError):
            next(fragments)
        mock_post.return_value.close.assert_called()

    @patch('chatbots.llm_providers.requests.post')
    def test_delta_that_is_not_an_object_fails_after_delivered_text(self, mock_post):
        mock_post.return_value = sse_response([
            'data: {"choices":[{"delta":{"content":"Hi"}}]}',
            'data: {"choices":[{"delta":"broken"}]}',
            'data: [DONE]',
        ])
        provider = CustomOpenAICompatibleProvider(endpoint="http://llm.local/v1", max_attempts=1)

        fragments = provider.stream_chat(MESSAGES, model="llama3", max_tokens=10)

        self.assertEqual(next(fragments), "Hi")
        with self.assertRaises(LLMMalformedResponseError):
            next(fragments)
        mock_post.return_value.close.assert_called()

    @patch('chatbots.llm_providers.requests.post')
    def test_invalid_endpoint_is_rejected_without_network_call(self, mock_post):
        provider = CustomOpenAICompatibleProvider(endpoint="not a url", max_attempts=1)

        with self.assertRaises(LLMInvalidRequestError):
            provider.stream_chat(MESSAGES, model="llama3", max_tokens=10)
        mock_post.assert_not_called()

    @patch('chatbots.llm_providers.requests.post')
    def test_circuit_opens_after_repeated_failures(self, mock_post):
        response = sse_response([], status_code=503)
        response.json.return_value = {'error': 'overloaded'}
        mock_post.return_value = response
        provider = CustomOpenAICompatibleProvider(endpoint="http://flaky.local/v1", max_attempts=1)

        for _ in range(5):
            with self.assertRaises(LLMServiceUnavailableError):
                provider.stream_chat(MESSAGES, model="llama3", max_tokens=10)
        with self.assertRaises(LLMServiceUnavailableError) as ctx:
            provider.stream_chat(MESSAGES, model="llama3", max_tokens=10)

        self.assertIn("open", ctx.exception.backend_message)
        self.assertEqual(mock_post.call_count, 5)


class ProviderRegistryTests(SimpleTestCase):
    def setUp(self):
        self.openai_provider = MagicMock(name='openai')
        self.gemini_provider = MagicMock(name='gemini')
        self.registry = ProviderRegistry(self.openai_provider, self.gemini_provider)

    def _chatbot(self, **overrides):
        fields = {
            'id': 1,
            'ai_provider': 'openai',
            'ai_model': 'gpt-4o-mini',
            'custom_endpoint': None,
            'custom_api_key': None,
            'custom_model_name': None,
        }
        fields.update(overrides)
        return SimpleNamespace(**fields)

    def test_hosted_providers_are_shared(self):
        selection = self.registry.for_chatbot(self._chatbot())
        self.assertIs(selection.provider, self.openai_provider)
        self.assertEqual(selection.model, 'gpt-4o-mini')

        selection = self.registry.for_chatbot(self._chatbot(ai_provider='gemini', ai_model='gemini-1.5-pro'))
        self.assertIs(selection.provider, self.gemini_provider)
        self.assertEqual(selection.model, 'gemini-1.5-pro')

    @override_settings(DEFAULT_GEMINI_MODEL='gemini-2.0-flash')
    def test_gemini_with_non_gemini_model_uses_default(self):
        selection = self.registry.for_chatbot(self._chatbot(ai_provider='gemini', ai_model='gpt-5'))
        self.assertEqual(selection.model, 'gemini-2.0-flash')

    def test_unknown_provider_falls_back_to_openai(self):
        selection = self.registry.for_chatbot(self._chatbot(ai_provider='anthropic'))
        self.assertIs(selection.provider, self.openai_provider)
        self.assertEqual(selection.provider_key, 'openai')

    def test_custom_provider_is_built_per_chatbot(self):
        selection = self.registry.for_chatbot(self._chatbot(
            ai_provider='custom',
            custom_endpoint='http://llm.local/v1',
            custom_api_key='k',
            custom_model_name='llama3',
        ))
        self.assertIsInstance(selection.provider, CustomOpenAICompatibleProvider)
        self.assertEqual(selection.provider.completions_url, 'http://llm.local/v1/chat/completions')
        self.assertEqual(selection.provider.api_key, 'k')
        self.assertEqual(selection.model, 'llama3')

        selection = self.registry.for_chatbot(self._chatbot(ai_provider='custom', custom_endpoint='http://llm.local/v1'))
        self.assertEqual(selection.model, 'gpt-4o-mini')
