import abc
import json
import logging
import re
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlparse

import backoff
import openai
import requests
from django.conf import settings
from google.api_core import exceptions as google_exceptions
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from .resilience import CircuitBreakerOpenError, call_with_resilience, close_connections_before_io

logger = logging.getLogger(__name__)

# --- Custom Exceptions ---


class LLMProviderError(Exception):
    """Base exception for every failure of a provider call, whatever the backend."""

    kind = "provider"

    def __init__(self, message, status_code=502, backend_message=None):
        super().__init__(message)
        self.status_code = status_code
        self.backend_message = backend_message or message


class LLMAuthenticationError(LLMProviderError):
    """The backend rejected the platform or tenant credentials."""

    kind = "auth"

    def __init__(self, message="Authentication failed", backend_message=None):
        super().__init__(message, status_code=502, backend_message=backend_message)


class LLMRateLimitError(LLMProviderError):
    """The backend rate limit or quota was exceeded."""

    kind = "rate_limit"

    def __init__(self, message="Rate limit exceeded", backend_message=None):
        super().__init__(message, status_code=503, backend_message=backend_message)


class LLMServiceUnavailableError(LLMProviderError):
    """Network failure or 5xx from the backend."""

    kind = "network"

    def __init__(self, message="Service unavailable", backend_message=None):
        super().__init__(message, status_code=503, backend_message=backend_message)


class LLMTimeoutError(LLMProviderError):
    """The backend did not finish within the platform ceiling."""

    kind = "timeout"

    def __init__(self, message="Provider timed out", backend_message=None):
        super().__init__(message, status_code=504, backend_message=backend_message)


class LLMMalformedResponseError(LLMProviderError):
    """The backend answered with a stream we could not parse."""

    kind = "malformed_response"

    def __init__(self, message="Malformed provider response", backend_message=None):
        super().__init__(message, status_code=502, backend_message=backend_message)


class LLMInvalidRequestError(LLMProviderError):
    """The backend refused the request (bad endpoint, unknown model, ...)."""

    kind = "invalid_request"

    def __init__(self, message="Invalid provider request", backend_message=None):
        super().__init__(message, status_code=502, backend_message=backend_message)


# Only these are worth a second attempt before the first fragment is handed out.
RETRYABLE_ERRORS = (LLMServiceUnavailableError, LLMRateLimitError)

# --- Configuration ---
LLM_STREAM_TIMEOUT = getattr(settings, "LLM_STREAM_TIMEOUT", 120.0)
LLM_CONNECT_TIMEOUT = getattr(settings, "LLM_CONNECT_TIMEOUT", 10.0)
LLM_MAX_ATTEMPTS = getattr(settings, "LLM_MAX_ATTEMPTS", 2)
CUSTOM_ENDPOINT_MAX_RETRIES = getattr(settings, "CUSTOM_ENDPOINT_MAX_RETRIES", 2)

_END = object()

# --- Helper Functions ---


def _is_reasoning_model(model: str) -> bool:
    """Check if model is a reasoning model (o1, etc) with restricted params."""
    return model.lower().startswith(("o1", "o3", "gpt-5"))


def to_langchain_messages(messages: List[Dict[str, Any]]) -> List[BaseMessage]:
    lc_messages = []
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content") or ""
        if role == "system":
            lc_messages.append(SystemMessage(content=content))
        elif role == "user":
            lc_messages.append(HumanMessage(content=content))
        elif role == "assistant":
            lc_messages.append(AIMessage(content=content))
    return lc_messages


_AUTH_MARKERS = re.compile(r"api[ _]key|permission|unauthenticated|unauthorized|\b40[13]\b")
_RATE_LIMIT_MARKERS = re.compile(r"\b429\b|quota|resource ?exhausted|rate limit")
_UNAVAILABLE_MARKERS = re.compile(r"connection|unavailable|internal ?(server ?)?error|\b50[0234]\b")


def classify_backend_error(exc: BaseException, backend: str) -> LLMProviderError:
    """Best-effort translation of an untyped backend exception into the provider taxonomy."""
    detail = f"{type(exc).__name__}: {exc}"
    lowered = detail.lower()
    if isinstance(exc, TimeoutError) or "timeout" in lowered or "timed out" in lowered or "deadline" in lowered:
        return LLMTimeoutError(f"{backend} request timed out", backend_message=detail)
    if _AUTH_MARKERS.search(lowered):
        return LLMAuthenticationError(f"{backend} rejected the credentials", backend_message=detail)
    if _RATE_LIMIT_MARKERS.search(lowered):
        return LLMRateLimitError(f"{backend} rate limit exceeded", backend_message=detail)
    if isinstance(exc, ConnectionError) or _UNAVAILABLE_MARKERS.search(lowered):
        return LLMServiceUnavailableError(f"{backend} is unavailable", backend_message=detail)
    return LLMProviderError(f"{backend} request failed", backend_message=detail)


# --- Base Provider Class ---


class BaseLLMProvider(abc.ABC):
    """
    Uniform streaming interface over one chat-completion backend.

    `stream_chat` opens the backend stream, pulling the first native chunk behind
    the retry/circuit-breaker layer, and returns a lazy, finite, single-use iterator
    of text fragments. Every backend failure leaves this class as an LLMProviderError.
    """

    service_name = "llm"
    display_name = "LLM"

    def __init__(self, timeout: Optional[float] = None, max_attempts: Optional[int] = None):
        self.timeout = timeout or LLM_STREAM_TIMEOUT
        self.max_attempts = max_attempts or LLM_MAX_ATTEMPTS

    @abc.abstractmethod
    def _open_stream(
        self, messages: List[Dict[str, Any]], model: str, max_tokens: int, temperature: Optional[float]
    ) -> Iterator[Any]:
        """Start the backend call and return an iterator over its native chunks."""
        raise NotImplementedError

    @abc.abstractmethod
    def _chunk_text(self, chunk: Any) -> str:
        """Extract the text carried by one native chunk ('' when it carries none)."""
        raise NotImplementedError

    def _translate_error(self, exc: BaseException) -> LLMProviderError:
        return classify_backend_error(exc, self.display_name)

    def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> Iterator[str]:
        deadline = time.monotonic() + self.timeout

        def open_primed():
            try:
                chunks = self._open_stream(messages, model, max_tokens, temperature)
                first = next(chunks, _END)
            except LLMProviderError:
                raise
            except Exception as exc:
                raise self._translate_error(exc) from exc
            return chunks, first

        close_connections_before_io(f"{self.display_name} chat stream")
        try:
            chunks, first = call_with_resilience(
                open_primed,
                service=self.service_name,
                retry_on=RETRYABLE_ERRORS,
                max_attempts=self.max_attempts,
            )
        except CircuitBreakerOpenError as exc:
            raise LLMServiceUnavailableError(
                f"{self.display_name} is temporarily unavailable", backend_message=str(exc)
            ) from exc
        logger.info("%s stream opened for model %s.", self.display_name, model)
        return self._fragments(chunks, first, deadline)

    def _fragments(self, chunks: Iterator[Any], first: Any, deadline: float) -> Iterator[str]:
        chunk = first
        try:
            while chunk is not _END:
                if time.monotonic() > deadline:
                    raise LLMTimeoutError(
                        f"{self.display_name} did not finish within {self.timeout:.0f}s",
                        backend_message="platform stream ceiling exceeded",
                    )
                try:
                    text = self._chunk_text(chunk)
                except LLMProviderError:
                    raise
                except Exception as exc:
                    raise self._translate_error(exc) from exc
                if text:
                    yield text
                try:
                    chunk = next(chunks, _END)
                except LLMProviderError:
                    raise
                except Exception as exc:
                    raise self._translate_error(exc) from exc
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()


# --- OpenAI Provider ---


class OpenAIProvider(BaseLLMProvider):
    """Hosted OpenAI chat completions through LangChain's ChatOpenAI."""

    service_name = "openai_chat_stream"
    display_name = "OpenAI"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key or getattr(settings, "OPENAI_API_KEY", None)
        self.base_url = base_url or getattr(settings, "OPENAI_BASE_URL", None)

    def _build_llm(self, model: str, max_tokens: int, temperature: Optional[float]) -> ChatOpenAI:
        if not self.api_key:
            raise LLMAuthenticationError("OpenAI API key is not configured.")
        params = {
            "api_key": self.api_key,
            "model": model,
            "max_tokens": max_tokens,
            "timeout": self.timeout,
            "max_retries": 0,
        }
        if self.base_url:
            params["base_url"] = self.base_url
        # Reasoning models reject sampling controls.
        if temperature is not None and not _is_reasoning_model(model):
            params["temperature"] = temperature
        return ChatOpenAI(**params)

    def _open_stream(self, messages, model, max_tokens, temperature):
        llm = self._build_llm(model, max_tokens, temperature)
        return iter(llm.stream(to_langchain_messages(messages)))

    def _chunk_text(self, chunk: Any) -> str:
        content = getattr(chunk, "content", "")
        return content if isinstance(content, str) else ""

    def _translate_error(self, exc: BaseException) -> LLMProviderError:
        detail = str(exc)
        if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return LLMAuthenticationError("OpenAI rejected the credentials", backend_message=detail)
        if isinstance(exc, openai.APITimeoutError):
            return LLMTimeoutError("OpenAI request timed out", backend_message=detail)
        if isinstance(exc, openai.RateLimitError):
            return LLMRateLimitError("OpenAI rate limit exceeded", backend_message=detail)
        if isinstance(exc, openai.APIConnectionError):
            return LLMServiceUnavailableError("Could not reach OpenAI", backend_message=detail)
        if isinstance(exc, (openai.BadRequestError, openai.NotFoundError)):
            return LLMInvalidRequestError("OpenAI refused the request", backend_message=detail)
        if isinstance(exc, openai.APIStatusError) and exc.status_code >= 500:
            return LLMServiceUnavailableError("OpenAI is unavailable", backend_message=detail)
        return super()._translate_error(exc)


# --- Gemini Provider ---


class GeminiProvider(BaseLLMProvider):
    """Hosted Gemini chat through LangChain's ChatGoogleGenerativeAI."""

    service_name = "gemini_chat_stream"
    display_name = "Gemini"

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key or getattr(settings, "GOOGLE_API_KEY", None)

    def _build_llm(self, model: str, max_tokens: int, temperature: Optional[float]) -> ChatGoogleGenerativeAI:
        if not self.api_key:
            raise LLMAuthenticationError("Google API key is not configured.")
        params = {
            "model": model,
            "google_api_key": self.api_key,
            "max_output_tokens": max_tokens,
            "timeout": self.timeout,
            "max_retries": 0,
        }
        if temperature is not None:
            params["temperature"] = temperature
        return ChatGoogleGenerativeAI(**params)

    def _open_stream(self, messages, model, max_tokens, temperature):
        llm = self._build_llm(model, max_tokens, temperature)
        return iter(llm.stream(to_langchain_messages(messages)))

    def _chunk_text(self, chunk: Any) -> str:
        # Gemini chunks carry either a string or a list of content parts.
        content = getattr(chunk, "content", "")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = []
            for part in content:
                if isinstance(part, str):
                    parts.append(part)
                elif isinstance(part, dict) and part.get("type", "text") == "text":
                    parts.append(part.get("text") or "")
            return "".join(parts)
        return ""

    def _translate_error(self, exc: BaseException) -> LLMProviderError:
        # LangChain wraps some Google API errors in its own exception; look through the chain.
        visited = set()
        current = exc
        while current is not None and id(current) not in visited:
            if isinstance(current, google_exceptions.GoogleAPICallError):
                return self._translate_api_error(current)
            visited.add(id(current))
            current = current.__cause__ or current.__context__
        return super()._translate_error(exc)

    def _translate_api_error(self, exc: google_exceptions.GoogleAPICallError) -> LLMProviderError:
        detail = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
            return LLMAuthenticationError("Gemini rejected the credentials", backend_message=detail)
        if isinstance(exc, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
            return LLMRateLimitError("Gemini rate limit exceeded", backend_message=detail)
        if isinstance(exc, (google_exceptions.DeadlineExceeded, google_exceptions.GatewayTimeout)):
            return LLMTimeoutError("Gemini request timed out", backend_message=detail)
        if isinstance(exc, google_exceptions.ServerError):
            return LLMServiceUnavailableError("Gemini is unavailable", backend_message=detail)
        if isinstance(exc, google_exceptions.ClientError):
            return LLMInvalidRequestError("Gemini refused the request", backend_message=detail)
        return LLMProviderError("Gemini request failed", backend_message=detail)


# --- Self-hosted (OpenAI-compatible) Provider ---


def _raise_for_status(response: requests.Response) -> None:
    status_code = response.status_code
    if status_code < 400:
        return
    try:
        error_data = response.json()
        error = error_data.get("error", error_data.get("message", response.text))
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
    except ValueError:
        message = response.text or f"HTTP {status_code}"
    response.close()

    backend_message = f"HTTP {status_code}: {message}"
    if status_code == 429:
        raise LLMRateLimitError("Custom endpoint rate limit exceeded", backend_message=backend_message)
    if status_code in (401, 403):
        raise LLMAuthenticationError("Custom endpoint rejected the credentials", backend_message=backend_message)
    if status_code >= 500:
        raise LLMServiceUnavailableError("Custom endpoint is unavailable", backend_message=backend_message)
    raise LLMInvalidRequestError("Custom endpoint refused the request", backend_message=backend_message)


@backoff.on_exception(backoff.expo,
                      requests.exceptions.ConnectionError,
                      max_tries=CUSTOM_ENDPOINT_MAX_RETRIES,
                      jitter=backoff.full_jitter)
def open_custom_stream(url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout) -> requests.Response:
    """POST a streaming chat completion to a self-hosted server, retrying refused connections."""
    response = requests.post(url, json=payload, headers=headers, stream=True, timeout=timeout)
    _raise_for_status(response)
    return response


def iter_event_stream_chunks(response: requests.Response) -> Iterator[Any]:
    """Yield the decoded JSON payload of every `data:` line until `[DONE]`."""
    # text/event-stream without a charset would otherwise be decoded as latin-1.
    response.encoding = "utf-8"
    try:
        for line in response.iter_lines(decode_unicode=True):
            if isinstance(line, bytes):
                line = line.decode("utf-8")
            if not line or not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                return
            try:
                yield json.loads(data)
            except ValueError as exc:
                raise LLMMalformedResponseError(
                    "Custom endpoint sent an unreadable chunk", backend_message=f"{exc}: {data[:200]}"
                ) from exc
    finally:
        response.close()


class CustomOpenAICompatibleProvider(BaseLLMProvider):
    """Tenant-supplied server speaking the OpenAI chat-completions streaming protocol."""

    display_name = "Custom endpoint"

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.endpoint = (endpoint or "").strip()
        self.api_key = api_key or None
        self.connect_timeout = connect_timeout or LLM_CONNECT_TIMEOUT
        # One breaker per host so a single broken tenant server does not trip the others.
        self.service_name = f"custom_chat_stream:{urlparse(self.endpoint).netloc or 'unknown'}"

    @classmethod
    def from_chatbot(cls, chatbot) -> "CustomOpenAICompatibleProvider":
        return cls(endpoint=chatbot.custom_endpoint, api_key=chatbot.custom_api_key)

    @property
    def completions_url(self) -> str:
        url = self.endpoint.rstrip("/")
        if url.endswith("/chat/completions"):
            return url
        return f"{url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _open_stream(self, messages, model, max_tokens, temperature):
        parsed = urlparse(self.endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise LLMInvalidRequestError(
                "Custom endpoint URL is invalid", backend_message=f"endpoint={self.endpoint!r}"
            )
        payload = {
            "model": model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "stream": True,
            "max_tokens": max_tokens,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        response = open_custom_stream(
            self.completions_url, payload, self._headers(), timeout=(self.connect_timeout, self.timeout)
        )
        return iter_event_stream_chunks(response)

    def _chunk_text(self, chunk: Any) -> str:
        if not isinstance(chunk, dict):
            raise LLMMalformedResponseError(
                "Custom endpoint sent an unexpected chunk", backend_message=repr(chunk)[:200]
            )
        if chunk.get("error"):
            raise LLMServiceUnavailableError(
                "Custom endpoint reported an error mid-stream", backend_message=str(chunk["error"])[:500]
            )
        choices = chunk.get("choices") or []
        if not isinstance(choices, list):
            raise LLMMalformedResponseError(
                "Custom endpoint sent an unexpected chunk", backend_message=repr(chunk)[:200]
            )
        if not choices:
            return ""
        choice = choices[0]
        delta = (choice.get("delta") or {}) if isinstance(choice, dict) else None
        if not isinstance(delta, dict):
            raise LLMMalformedResponseError(
                "Custom endpoint sent an unexpected chunk", backend_message=repr(chunk)[:200]
            )
        content = delta.get("content")
        return content if isinstance(content, str) else ""

    def _translate_error(self, exc: BaseException) -> LLMProviderError:
        detail = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, requests.exceptions.Timeout):
            return LLMTimeoutError("Custom endpoint timed out", backend_message=detail)
        if isinstance(exc, (requests.exceptions.MissingSchema, requests.exceptions.InvalidURL, requests.exceptions.InvalidSchema)):
            return LLMInvalidRequestError("Custom endpoint URL is invalid", backend_message=detail)
        if isinstance(exc, requests.exceptions.RequestException):
            return LLMServiceUnavailableError("Could not reach the custom endpoint", backend_message=detail)
        return super()._translate_error(exc)


# --- Provider selection ---


@dataclass
class ProviderSelection:
    provider: BaseLLMProvider
    model: str
    provider_key: str


class ProviderRegistry:
    """
    Maps `chatbot.ai_provider` to an adapter. Hosted adapters are built once per
    process; the custom adapter is built per request from the tenant's fields.
    """

    def __init__(self, openai_provider: BaseLLMProvider, gemini_provider: BaseLLMProvider, custom_factory=None):
        self.openai_provider = openai_provider
        self.gemini_provider = gemini_provider
        self.custom_factory = custom_factory or CustomOpenAICompatibleProvider.from_chatbot

    @classmethod
    def from_settings(cls) -> "ProviderRegistry":
        return cls(openai_provider=OpenAIProvider(), gemini_provider=GeminiProvider())

    def for_chatbot(self, chatbot) -> ProviderSelection:
        provider_key = (chatbot.ai_provider or "openai").strip().lower()

        if provider_key == "custom":
            model = chatbot.custom_model_name or chatbot.ai_model
            return ProviderSelection(self.custom_factory(chatbot), model, "custom")

        if provider_key == "gemini":
            model = chatbot.ai_model or ""
            if not model.lower().startswith("gemini"):
                model = getattr(settings, "DEFAULT_GEMINI_MODEL", "gemini-2.0-flash")
            return ProviderSelection(self.gemini_provider, model, "gemini")

        if provider_key != "openai":
            logger.warning("Unknown ai_provider '%s' on chatbot %s; using OpenAI.", chatbot.ai_provider, chatbot.id)
        model = chatbot.ai_model or getattr(settings, "DEFAULT_OPENAI_MODEL", "gpt-5")
        return ProviderSelection(self.openai_provider, model, "openai")


@lru_cache
def get_provider_registry() -> ProviderRegistry:
    """Process-wide registry configured from settings at first use."""
    return ProviderRegistry.from_settings()
