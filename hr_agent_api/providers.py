"""LLM provider clients (Gemini and OpenAI-compatible) with streaming support.

Each client performs exactly one upstream call per operation and maps
transport failures onto a small error taxonomy, so callers branch on
`ProviderError.kind` rather than on upstream error text.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

import httpx
import structlog

from hr_agent_api.config import get_settings

logger = structlog.get_logger()


# =============================================================================
# Types
# =============================================================================


class ProviderName(str, Enum):
    """Supported upstream providers."""

    GEMINI = "gemini"
    OPENAI = "openai"


@dataclass(frozen=True)
class ConversationTurn:
    """A single turn of dialogue, in chronological order."""

    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class GenerationParams:
    """Sampling parameters, passed to the upstream API unmodified."""

    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 40
    max_output_tokens: int = 8192


Payload = str | Sequence[ConversationTurn]


# =============================================================================
# Errors
# =============================================================================


class ErrorKind(str, Enum):
    """Classification of an upstream failure."""

    UNAVAILABLE = "unavailable"
    NOT_FOUND = "not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN = "unknown"


class ProviderError(Exception):
    """Base exception for provider client errors (unclassified failures)."""

    kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        model: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.model = model


class ProviderUnavailableError(ProviderError):
    """Raised when the upstream is overloaded or unreachable."""

    kind = ErrorKind.UNAVAILABLE


class ProviderNotFoundError(ProviderError):
    """Raised when the model identifier is unknown or deprecated."""

    kind = ErrorKind.NOT_FOUND


class ProviderQuotaError(ProviderError):
    """Raised when a rate or quota limit is hit."""

    kind = ErrorKind.QUOTA_EXCEEDED


class ProviderUnauthorizedError(ProviderError):
    """Raised when the credential is missing or rejected."""

    kind = ErrorKind.UNAUTHORIZED


_ERROR_TYPES: dict[ErrorKind, type[ProviderError]] = {
    ErrorKind.UNAVAILABLE: ProviderUnavailableError,
    ErrorKind.NOT_FOUND: ProviderNotFoundError,
    ErrorKind.QUOTA_EXCEEDED: ProviderQuotaError,
    ErrorKind.UNAUTHORIZED: ProviderUnauthorizedError,
    ErrorKind.UNKNOWN: ProviderError,
}

# Provider error codes take precedence over the HTTP status
# (Gemini reports a bad key as 400 INVALID_ARGUMENT + API_KEY_INVALID)
_REASON_KINDS: dict[str, ErrorKind] = {
    # Gemini / Google RPC status and ErrorInfo reasons
    "UNAVAILABLE": ErrorKind.UNAVAILABLE,
    "INTERNAL": ErrorKind.UNAVAILABLE,
    "DEADLINE_EXCEEDED": ErrorKind.UNAVAILABLE,
    "NOT_FOUND": ErrorKind.NOT_FOUND,
    "RESOURCE_EXHAUSTED": ErrorKind.QUOTA_EXCEEDED,
    "RATE_LIMIT_EXCEEDED": ErrorKind.QUOTA_EXCEEDED,
    "UNAUTHENTICATED": ErrorKind.UNAUTHORIZED,
    "PERMISSION_DENIED": ErrorKind.UNAUTHORIZED,
    "API_KEY_INVALID": ErrorKind.UNAUTHORIZED,
    # OpenAI-compatible error codes / types
    "server_error": ErrorKind.UNAVAILABLE,
    "model_not_found": ErrorKind.NOT_FOUND,
    "insufficient_quota": ErrorKind.QUOTA_EXCEEDED,
    "rate_limit_exceeded": ErrorKind.QUOTA_EXCEEDED,
    "invalid_api_key": ErrorKind.UNAUTHORIZED,
    "authentication_error": ErrorKind.UNAUTHORIZED,
}

_STATUS_KINDS: dict[int, ErrorKind] = {
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.UNAUTHORIZED,
    404: ErrorKind.NOT_FOUND,
    429: ErrorKind.QUOTA_EXCEEDED,
    500: ErrorKind.UNAVAILABLE,
    502: ErrorKind.UNAVAILABLE,
    503: ErrorKind.UNAVAILABLE,
    504: ErrorKind.UNAVAILABLE,
}


def _error_reasons(error: dict[str, Any]) -> list[str]:
    """Collect the machine-readable codes from an upstream error object."""
    reasons = [str(error[key]) for key in ("status", "code", "type") if error.get(key)]
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("reason"):
            reasons.append(str(detail["reason"]))
    return reasons


def classify_error(status_code: int, body: Any = None) -> ErrorKind:
    """Map an HTTP status and error payload to an ErrorKind.

    Args:
        status_code: HTTP status of the upstream response.
        body: Decoded JSON body, if any. Both `{"error": {...}}` and
            a list wrapping it (Gemini streaming) are accepted.

    Returns:
        The classified error kind.
    """
    if isinstance(body, list) and body:
        body = body[0]
    error = body.get("error") if isinstance(body, dict) else None

    if isinstance(error, dict):
        reasons = _error_reasons(error)
        # Specific reasons first; generic RPC status last
        for reason in reversed(reasons):
            if reason in _REASON_KINDS:
                return _REASON_KINDS[reason]

    return _STATUS_KINDS.get(status_code, ErrorKind.UNKNOWN)


def error_from_response(response: httpx.Response, model: str) -> ProviderError:
    """Build the classified exception for a failed upstream response."""
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = None

    error = body[0] if isinstance(body, list) and body else body
    detail = None
    if isinstance(error, dict) and isinstance(error.get("error"), dict):
        detail = error["error"].get("message")
    detail = detail or response.reason_phrase or f"HTTP {status}"

    kind = classify_error(status, body)
    logger.warning("Provider API error", status=status, kind=kind.value, model=model, detail=detail)
    return _ERROR_TYPES[kind](f"API error ({status}): {detail}", status_code=status, model=model)


# Raised while decoding a success body that is not the documented shape
_MALFORMED_BODY_ERRORS = (KeyError, IndexError, TypeError, ValueError, AttributeError)


def _malformed_response(error: Exception, model: str) -> ProviderError:
    logger.warning("Malformed provider response", model=model, error=repr(error))
    return ProviderError(f"Malformed response: {error!r}", model=model)


# =============================================================================
# Base client
# =============================================================================


class ProviderClient(ABC):
    """Async client for a single upstream text-generation API.

    The shared HTTP handle carries no credential; the key is resolved per call
    (explicit override first, then the configured default), so one instance can
    serve concurrent invocations for different callers.
    """

    name: ProviderName
    supports_chat: bool

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize the client.

        Args:
            api_key: Default credential. Defaults to config value.
            base_url: API base URL. Defaults to config value.
            timeout: Read timeout in seconds. Defaults to config value.
        """
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.api_key_for(self.name.value)
        self._base_url = base_url or settings.base_url_for(self.name.value)
        self._timeout = timeout or settings.llm_timeout_seconds
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "ProviderClient":
        """Enter async context."""
        await self.connect()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        """Exit async context."""
        await self.close()

    @property
    def is_configured(self) -> bool:
        """Check if a default credential is available."""
        return bool(self._api_key)

    async def connect(self) -> None:
        """Create the HTTP client.

        In mock mode (MOCK_LLM=true) without a credential, skips creating a real
        HTTP client since all requests will be served by mock handlers.
        """
        if not self.is_configured and get_settings().mock_llm:
            logger.info("Provider client in mock mode, skipping HTTP client creation", provider=self.name.value)
            return

        self._open()

    def _open(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(self._timeout, connect=10.0),
        )
        logger.info("Provider client connected", provider=self.name.value)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Provider client closed", provider=self.name.value)

    def _resolve_key(self, api_key: str | None) -> str | None:
        """Return the credential for a call, or None when mock mode applies.

        Raises:
            ProviderUnauthorizedError: If no credential is available and mock
                mode is disabled.
        """
        key = api_key or self._api_key
        if key:
            return key
        if get_settings().mock_llm:
            logger.info("MOCK_LLM=true: Using mock LLM response", provider=self.name.value)
            return None
        error_msg = (
            f"FATAL: {self.name.value} API key not configured with MOCK_LLM=false. "
            f"Either set {self.name.value.upper()}_API_KEY or set MOCK_LLM=true for testing."
        )
        logger.error(error_msg)
        raise ProviderUnauthorizedError(error_msg)

    async def generate(
        self,
        model: str,
        payload: Payload,
        params: GenerationParams,
        *,
        system_instruction: str | None = None,
        api_key: str | None = None,
    ) -> str:
        """Perform one non-streaming generation call.

        Args:
            model: Upstream model identifier.
            payload: Serialized prompt, or role-tagged turns for chat-native providers.
            params: Sampling parameters.
            system_instruction: Optional system instruction (separate channel).
            api_key: Optional credential override for this call.

        Returns:
            Raw (unsanitized) response text.

        Raises:
            ProviderError: Classified upstream failure.
        """
        key = self._resolve_key(api_key)
        if key is None:
            return await self._mock_generate(payload)

        # A per-call key needs a real handle even when connect() ran in mock mode
        if not self._client:
            self._open()

        try:
            text = await self._generate(model, payload, params, system_instruction, key)
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"Transport error: {e}", model=model) from e
        except _MALFORMED_BODY_ERRORS as e:
            raise _malformed_response(e, model) from e

        logger.debug("LLM response received", provider=self.name.value, model=model, chars=len(text))
        return text

    async def generate_stream(
        self,
        model: str,
        payload: Payload,
        params: GenerationParams,
        *,
        system_instruction: str | None = None,
        api_key: str | None = None,
    ) -> AsyncIterator[str]:
        """Perform one streaming generation call.

        Yields:
            Raw text fragments in arrival order.

        Raises:
            ProviderError: Classified upstream failure.
        """
        key = self._resolve_key(api_key)
        if key is None:
            async for fragment in self._mock_stream(payload):
                yield fragment
            return

        if not self._client:
            self._open()

        try:
            async for fragment in self._stream(model, payload, params, system_instruction, key):
                yield fragment
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"Transport error: {e}", model=model) from e
        except _MALFORMED_BODY_ERRORS as e:
            raise _malformed_response(e, model) from e

        logger.debug("Streaming response completed", provider=self.name.value, model=model)

    @abstractmethod
    async def _generate(
        self,
        model: str,
        payload: Payload,
        params: GenerationParams,
        system_instruction: str | None,
        api_key: str,
    ) -> str: ...

    @abstractmethod
    def _stream(
        self,
        model: str,
        payload: Payload,
        params: GenerationParams,
        system_instruction: str | None,
        api_key: str,
    ) -> AsyncIterator[str]: ...

    async def _sse_data(self, response: httpx.Response) -> AsyncIterator[Any]:
        """Yield decoded `data:` payloads from a server-sent event stream."""
        async for line in response.aiter_lines():
            if not line or not line.startswith("data: "):
                continue

            data_str = line[6:]  # Remove "data: " prefix
            if data_str == "[DONE]":
                break

            try:
                yield json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse streaming chunk", provider=self.name.value, line=line)

    async def _mock_generate(self, payload: Payload) -> str:
        """Return mock LLM response for testing."""
        preview = _payload_preview(payload)
        return (
            f"This is a mock LLM response (MOCK_LLM=true) from {self.name.value}. "
            f"In production, this would be a real AI response to: '{preview}...'. "
            f"Set {self.name.value.upper()}_API_KEY to enable real LLM responses."
        )

    async def _mock_stream(self, payload: Payload) -> AsyncIterator[str]:
        """Return mock streaming LLM response for testing."""
        words = (await self._mock_generate(payload)).split()
        for i, word in enumerate(words):
            await asyncio.sleep(0.01)  # Simulate network latency
            yield word + (" " if i < len(words) - 1 else "")


def _payload_preview(payload: Payload) -> str:
    if isinstance(payload, str):
        return payload[:50]
    return payload[-1].content[:50] if payload else ""


# =============================================================================
# Gemini
# =============================================================================


class GeminiClient(ProviderClient):
    """Google Generative Language API client.

    Multi-turn history is not sent natively: the caller serializes the
    conversation into a single prompt.
    """

    name = ProviderName.GEMINI
    supports_chat = False

    def _build_body(
        self,
        payload: Payload,
        params: GenerationParams,
        system_instruction: str | None,
    ) -> dict[str, Any]:
        if not isinstance(payload, str):
            raise TypeError("GeminiClient expects a serialized prompt string")

        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": payload}]}],
            "generationConfig": {
                "temperature": params.temperature,
                "topP": params.top_p,
                "topK": params.top_k,
                "maxOutputTokens": params.max_output_tokens,
            },
        }
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        return body

    @staticmethod
    def _extract_text(data: dict[str, Any], model: str) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise ProviderError(f"Prompt blocked by provider: {block_reason}", model=model)
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    async def _generate(
        self,
        model: str,
        payload: Payload,
        params: GenerationParams,
        system_instruction: str | None,
        api_key: str,
    ) -> str:
        response = await self._client.post(
            f"/models/{model}:generateContent",
            json=self._build_body(payload, params, system_instruction),
            headers={"x-goog-api-key": api_key},
        )
        if response.is_error:
            raise error_from_response(response, model)

        return self._extract_text(response.json(), model)

    async def _stream(
        self,
        model: str,
        payload: Payload,
        params: GenerationParams,
        system_instruction: str | None,
        api_key: str,
    ) -> AsyncIterator[str]:
        async with self._client.stream(
            "POST",
            f"/models/{model}:streamGenerateContent",
            params={"alt": "sse"},
            json=self._build_body(payload, params, system_instruction),
            headers={"x-goog-api-key": api_key},
        ) as response:
            if response.is_error:
                await response.aread()
                raise error_from_response(response, model)

            async for data in self._sse_data(response):
                text = self._extract_text(data, model)
                if text:
                    yield text


# =============================================================================
# OpenAI-compatible
# =============================================================================


class OpenAIClient(ProviderClient):
    """OpenAI-compatible /chat/completions client.

    Role-tagged turns are sent as messages; the system instruction is a
    separate leading system message.
    """

    name = ProviderName.OPENAI
    supports_chat = True

    @staticmethod
    def _build_messages(payload: Payload, system_instruction: str | None) -> list[dict[str, str]]:
        messages = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})

        if isinstance(payload, str):
            messages.append({"role": "user", "content": payload})
        else:
            messages.extend({"role": turn.role, "content": turn.content} for turn in payload)
        return messages

    def _build_body(
        self,
        model: str,
        payload: Payload,
        params: GenerationParams,
        system_instruction: str | None,
        stream: bool,
    ) -> dict[str, Any]:
        # The chat completions API has no top_k
        return {
            "model": model,
            "messages": self._build_messages(payload, system_instruction),
            "temperature": params.temperature,
            "top_p": params.top_p,
            "max_tokens": params.max_output_tokens,
            "stream": stream,
        }

    async def _generate(
        self,
        model: str,
        payload: Payload,
        params: GenerationParams,
        system_instruction: str | None,
        api_key: str,
    ) -> str:
        response = await self._client.post(
            "/chat/completions",
            json=self._build_body(model, payload, params, system_instruction, stream=False),
            headers={"Authorization": f"Bearer {api_key}"},
        )
        if response.is_error:
            raise error_from_response(response, model)

        data = response.json()
        return data["choices"][0]["message"].get("content") or ""

    async def _stream(
        self,
        model: str,
        payload: Payload,
        params: GenerationParams,
        system_instruction: str | None,
        api_key: str,
    ) -> AsyncIterator[str]:
        async with self._client.stream(
            "POST",
            "/chat/completions",
            json=self._build_body(model, payload, params, system_instruction, stream=True),
            headers={"Authorization": f"Bearer {api_key}"},
        ) as response:
            if response.is_error:
                await response.aread()
                raise error_from_response(response, model)

            async for data in self._sse_data(response):
                if "error" in data:
                    raise _ERROR_TYPES[classify_error(0, data)](
                        f"Stream error: {data['error'].get('message', 'unknown')}", model=model
                    )
                choices = data.get("choices") or [{}]
                content = (choices[0].get("delta") or {}).get("content")
                if content:
                    yield content


# =============================================================================
# Shared clients
# =============================================================================

_CLIENT_TYPES: dict[ProviderName, type[ProviderClient]] = {
    ProviderName.GEMINI: GeminiClient,
    ProviderName.OPENAI: OpenAIClient,
}

# Global client instances, one per provider
_provider_clients: dict[ProviderName, ProviderClient] = {}


async def get_provider_client(name: ProviderName | str) -> ProviderClient:
    """Get or create the global client instance for a provider."""
    provider = ProviderName(name)
    client = _provider_clients.get(provider)
    if client is None:
        client = _CLIENT_TYPES[provider]()
        await client.connect()
        _provider_clients[provider] = client
    return client


async def close_provider_clients() -> None:
    """Close all global provider clients."""
    for client in list(_provider_clients.values()):
        await client.close()
    _provider_clients.clear()


def reset_provider_clients() -> None:
    """Reset the global provider clients (for testing)."""
    _provider_clients.clear()
