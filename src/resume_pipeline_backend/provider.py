"""
Client for the external text-generation provider.

One call turns one prompt into one JSON object. The client owns the parts of
talking to the provider that do not depend on which provider it is:

- Retry with capped exponential backoff (tenacity), for transient failures only
- Credential rotation on rate limits, through an injected KeyManager
- Classification of HTTP failures into transient and permanent errors
- Sanitizing the returned text (markdown fences) and parsing it as JSON

Provider specifics (URL, auth header, request body, where the text sits in
the response, how a safety block is reported) live in the backend classes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import (
    ContentBlockedError,
    InputTooLargeError,
    ProviderError,
    ProviderNetworkError,
    ProviderRequestError,
    ProviderServerError,
    RateLimitError,
    ResponseParseError,
    TransientProviderError,
)
from .key_manager import KeyManager

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"

_TOO_LARGE_MARKERS = (
    "context length",
    "context window",
    "too long",
    "too large",
    "exceeds",
    "token count",
    "too many tokens",
)
_BLOCKED_MARKERS = ("safety", "blocked", "content policy", "content_filter")


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float = 0.0
    max_output_tokens: int = 8192
    json_mode: bool = True


class ProviderBackend(Protocol):
    """What the client needs to know about one provider's HTTP API."""

    name: str

    def build_request(
        self, prompt: str, api_key: str, options: GenerationOptions
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]: ...

    def extract_text(self, payload: Dict[str, Any]) -> str: ...


class GeminiBackend:
    """Google Gemini ``generateContent``."""

    name = "gemini"

    def __init__(self, model: str = "gemini-1.5-flash", base_url: str = GEMINI_BASE_URL):
        self.model = model
        self.base_url = base_url.rstrip("/")

    def build_request(
        self, prompt: str, api_key: str, options: GenerationOptions
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}
        generation_config: Dict[str, Any] = {
            "temperature": options.temperature,
            "maxOutputTokens": options.max_output_tokens,
        }
        if options.json_mode:
            generation_config["responseMimeType"] = "application/json"
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        return url, headers, body

    def extract_text(self, payload: Dict[str, Any]) -> str:
        block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ContentBlockedError(f"Prompt blocked by provider: {block_reason}")

        candidates = payload.get("candidates") or []
        if not candidates:
            raise ResponseParseError("Provider response contained no candidates")
        candidate = candidates[0]
        if candidate.get("finishReason") in ("SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST"):
            raise ContentBlockedError(f"Generation blocked: {candidate['finishReason']}")

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        if not text:
            raise ResponseParseError("Provider response contained no text")
        return text


class OpenRouterBackend:
    """OpenRouter chat completions (OpenAI-compatible)."""

    name = "openrouter"

    def __init__(self, model: str = "openai/gpt-4o", url: str = OPENROUTER_URL, app_title: str = "resume-pipeline"):
        self.model = model
        self.url = url
        self.app_title = app_title

    def build_request(
        self, prompt: str, api_key: str, options: GenerationOptions
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "X-Title": self.app_title,
        }
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature,
            "max_tokens": options.max_output_tokens,
        }
        if options.json_mode:
            body["response_format"] = {"type": "json_object"}
        return self.url, headers, body

    def extract_text(self, payload: Dict[str, Any]) -> str:
        choices = payload.get("choices") or []
        if not choices:
            raise ResponseParseError("Invalid response structure from provider: no choices")
        choice = choices[0]
        if choice.get("finish_reason") == "content_filter":
            raise ContentBlockedError("Generation blocked: content filter")
        text = (choice.get("message") or {}).get("content")
        if not text:
            raise ResponseParseError("Invalid response structure from provider: empty message")
        return text


def build_backend(name: str, model: str) -> ProviderBackend:
    if name == "gemini":
        return GeminiBackend(model=model)
    if name == "openrouter":
        return OpenRouterBackend(model=model)
    raise ValueError(f"Unknown provider backend: {name}")


def strip_code_fences(raw_text: str) -> str:
    """
    Remove a surrounding markdown code fence (```json ... ```) if present.

    Models wrap JSON in fences now and then even when told not to.
    """
    content = raw_text.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]
    return content.strip()


def parse_json_payload(raw_text: str) -> Dict[str, Any]:
    """
    Parse provider text into a JSON object.

    Raises:
        ResponseParseError: If the text is not valid JSON or not an object
    """
    content = strip_code_fences(raw_text)
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ResponseParseError(f"JSON Parse Error: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.text[:500]


def classify_response(response: httpx.Response) -> Optional[ProviderError]:
    """
    Map an HTTP response to the error it represents, or None for success.

    429 and 5xx are transient; a 400 that talks about context size is
    "input too large"; a safety refusal is "content blocked"; any other 4xx is
    a permanent request error.
    """
    status = response.status_code
    if status < 400:
        return None
    message = _error_message(response)
    if status == 429:
        return RateLimitError(f"Rate limited: {message}", status)
    if status >= 500:
        return ProviderServerError(f"Provider server error ({status}): {message}", status)

    lowered = message.lower()
    if any(marker in lowered for marker in _BLOCKED_MARKERS):
        return ContentBlockedError(f"Generation blocked: {message}", status)
    if status in (400, 413) and any(marker in lowered for marker in _TOO_LARGE_MARKERS):
        return InputTooLargeError(f"Input too long for the provider: {message}", status)
    return ProviderRequestError(f"Provider rejected the request ({status}): {message}", status)


class ProviderClient:
    """
    Generate one structured JSON object per prompt, with retries.

    Attributes:
        max_retries: Retries after the first attempt (so at most max_retries + 1 calls)
        backoff_base: Delay multiplier; the n-th retry waits base * 2**(n-1) seconds
        backoff_max: Ceiling on any single delay
    """

    def __init__(
        self,
        keys: KeyManager,
        backend: ProviderBackend,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 60.0,
        max_retries: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        options: Optional[GenerationOptions] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.keys = keys
        self.backend = backend
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.options = options or GenerationOptions()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds, connect=10.0))
        self._sleep = sleep

    async def generate(self, prompt: str) -> Dict[str, Any]:
        """
        Run one prompt through the provider and return the parsed JSON object.

        Raises:
            TransientProviderError: The retry budget ran out on transient failures
            PermanentProviderError: A non-retryable failure (raised on first sight)
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call_once(prompt)
        raise ProviderError("Provider retry loop ended without a result")  # pragma: no cover

    async def _call_once(self, prompt: str) -> Dict[str, Any]:
        api_key = self.keys.current()
        url, headers, body = self.backend.build_request(prompt, api_key, self.options)
        try:
            response = await self._http.post(url, headers=headers, json=body)
        except httpx.TransportError as exc:
            raise ProviderNetworkError(f"Network error talking to {self.backend.name}: {exc}") from exc

        error = classify_response(response)
        if isinstance(error, RateLimitError):
            self.keys.rotate(seen=api_key)
        if error is not None:
            raise error

        try:
            payload = response.json()
        except ValueError as exc:
            raise ResponseParseError(f"Provider returned a non-JSON body: {exc}") from exc
        return parse_json_payload(self.backend.extract_text(payload))

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"[{self.backend.name}] {type(error).__name__}: {error}. "
            f"Retrying in {delay:.1f}s (attempt {retry_state.attempt_number + 1}/{self.max_retries + 1})"
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
