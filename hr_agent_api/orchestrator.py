"""LLM invocation orchestration: bounded retry, ordered model fallback, streaming.

Every invocation runs the same state machine:

    ATTEMPTING --(unavailable, attempt < max)--> wait attempt * base --> ATTEMPTING
    ATTEMPTING --(unavailable at max | not found)--> FALLBACK_SEARCH
    ATTEMPTING --(quota | credential)--> FAILED
    ATTEMPTING --(unknown, attempt < max)--> ATTEMPTING
    ATTEMPTING --(unknown at max)--> FAILED
    FALLBACK_SEARCH --(first fallback success)--> DONE
    FALLBACK_SEARCH --(quota | credential)--> FAILED
    FALLBACK_SEARCH --(all fallbacks failed)--> FAILED

Sampling parameters and the provider are fixed at entry; fallback only changes
the model identifier. Callers see either a sanitized GenerationResult or a
single GenerationError.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from hr_agent_api.config import get_settings
from hr_agent_api.observability import (
    llm_markers_scrubbed_total,
    log_llm_request,
    log_llm_response,
    record_attempt,
)
from hr_agent_api.providers import (
    ConversationTurn,
    ErrorKind,
    GenerationParams,
    Payload,
    ProviderClient,
    ProviderError,
    ProviderName,
    get_provider_client,
)
from hr_agent_api.sanitizer import StreamScrubber, scrub

logger = structlog.get_logger()

ROLE_LABELS = {"user": "User", "assistant": "Assistant"}


# =============================================================================
# Request / result types
# =============================================================================


@dataclass(frozen=True)
class GenerationRequest:
    """A single invocation: either a prompt or a conversation."""

    prompt: str | None = None
    turns: tuple[ConversationTurn, ...] | None = None
    system_instruction: str | None = None
    params: GenerationParams = field(default_factory=GenerationParams)
    provider: ProviderName = ProviderName.GEMINI
    credentials: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if (self.prompt is None) == (self.turns is None):
            raise ValueError("GenerationRequest needs exactly one of prompt or turns")


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_ERROR = "retryable_error"
    FATAL_ERROR = "fatal_error"


@dataclass(frozen=True)
class ProviderAttempt:
    """One upstream call made during an invocation."""

    model: str
    attempt_number: int
    outcome: AttemptOutcome


@dataclass(frozen=True)
class GenerationResult:
    """Final response of an invocation."""

    text: str
    sanitized: bool
    model: str
    attempts: tuple[ProviderAttempt, ...] = ()


class FailureReason(str, Enum):
    QUOTA = "quota"
    CREDENTIAL = "credential"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


FAILURE_MESSAGES = {
    FailureReason.QUOTA: (
        "API quota exhausted. Check the provider quota settings for this API key, "
        "or try again later."
    ),
    FailureReason.CREDENTIAL: (
        "AI service credential is missing or invalid. Check the configured API key."
    ),
    FailureReason.UNAVAILABLE: (
        "No model is currently available. The AI service may be overloaded; "
        "please try again later."
    ),
    FailureReason.UNKNOWN: "LLM call failed. Please try again later.",
}


class GenerationError(Exception):
    """The single fatal error surfaced for a failed invocation."""

    def __init__(
        self,
        reason: FailureReason,
        message: str | None = None,
        attempts: Sequence[ProviderAttempt] = (),
        cause: str | None = None,
    ):
        super().__init__(message or FAILURE_MESSAGES[reason])
        self.reason = reason
        self.attempts = tuple(attempts)
        self.cause = cause  # Last upstream error text, for logs only

    @property
    def message(self) -> str:
        return str(self)


# =============================================================================
# State machine
# =============================================================================


class InvocationState(str, Enum):
    ATTEMPTING = "attempting"
    FALLBACK_SEARCH = "fallback_search"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and fallback order for one provider."""

    max_attempts: int = 3
    base_delay: float = 2.0
    fallback_models: tuple[str, ...] = ()

    def delay_for(self, attempt: int) -> float:
        """Linear backoff: attempt 1 waits base, attempt 2 waits 2x base, ..."""
        return self.base_delay * attempt

    @classmethod
    def from_settings(cls, provider: ProviderName) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=settings.llm_max_attempts,
            base_delay=settings.llm_retry_base_delay,
            fallback_models=tuple(settings.fallback_models_for(provider.value)),
        )


@dataclass(frozen=True)
class Transition:
    state: InvocationState
    delay: float = 0.0
    failure: FailureReason | None = None


def next_transition(kind: ErrorKind, attempt: int, policy: RetryPolicy) -> Transition:
    """Decide what follows a failed attempt on the primary model.

    Args:
        kind: Classification of the failure.
        attempt: 1-based number of the attempt that failed.
        policy: Retry budget.

    Returns:
        The next state, with the wait before it or the failure reason.
    """
    if kind is ErrorKind.QUOTA_EXCEEDED:
        return Transition(InvocationState.FAILED, failure=FailureReason.QUOTA)
    if kind is ErrorKind.UNAUTHORIZED:
        return Transition(InvocationState.FAILED, failure=FailureReason.CREDENTIAL)
    if kind is ErrorKind.NOT_FOUND:
        return Transition(InvocationState.FALLBACK_SEARCH)
    if kind is ErrorKind.UNAVAILABLE:
        if attempt < policy.max_attempts:
            return Transition(InvocationState.ATTEMPTING, delay=policy.delay_for(attempt))
        return Transition(InvocationState.FALLBACK_SEARCH)
    if attempt < policy.max_attempts:
        return Transition(InvocationState.ATTEMPTING)
    return Transition(InvocationState.FAILED, failure=FailureReason.UNKNOWN)


def _failure_for_kind(kind: ErrorKind) -> FailureReason:
    """Failure reason when an error cannot be retried at all (mid-stream)."""
    return {
        ErrorKind.QUOTA_EXCEEDED: FailureReason.QUOTA,
        ErrorKind.UNAUTHORIZED: FailureReason.CREDENTIAL,
        ErrorKind.UNAVAILABLE: FailureReason.UNAVAILABLE,
        ErrorKind.NOT_FOUND: FailureReason.UNAVAILABLE,
    }.get(kind, FailureReason.UNKNOWN)


class _PartialDelivery(Exception):
    """Upstream failed after fragments were already handed to the caller."""

    def __init__(self, error: ProviderError):
        super().__init__(str(error))
        self.error = error


def build_chat_prompt(turns: Sequence[ConversationTurn], system_instruction: str | None = None) -> str:
    """Serialize a conversation for providers without native multi-turn support.

    The system instruction comes first, then each turn as "<Label>: <content>",
    then an open "Assistant:" cue, all separated by blank lines.
    """
    sections = [system_instruction] if system_instruction else []
    sections.extend(f"{ROLE_LABELS[turn.role]}: {turn.content}" for turn in turns)
    sections.append(f"{ROLE_LABELS['assistant']}:")
    return "\n\n".join(sections)


# =============================================================================
# Orchestrator
# =============================================================================

FragmentCallback = Callable[[str], Any]


class LLMOrchestrator:
    """Drives a GenerationRequest to completion against one provider client."""

    def __init__(
        self,
        client: ProviderClient,
        model: str,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the orchestrator.

        Args:
            client: Provider client used for every attempt.
            model: Primary model identifier.
            policy: Retry budget and fallback order. Defaults to config values.
            sleep: Awaitable used for backoff waits (injectable for tests).
        """
        self._client = client
        self._model = model
        self._policy = policy or RetryPolicy.from_settings(client.name)
        self._sleep = sleep

    @property
    def provider(self) -> str:
        return self._client.name.value

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def generate_once(self, request: GenerationRequest) -> GenerationResult:
        """Single-shot generation from a prompt."""
        if request.prompt is None:
            raise ValueError("generate_once requires a prompt")

        async def call(model: str) -> str:
            return await self._client.generate(
                model,
                request.prompt,
                request.params,
                system_instruction=request.system_instruction,
                api_key=request.credentials,
            )

        return await self._invoke(request, "once", call, stream=False)

    async def generate_chat(self, request: GenerationRequest) -> GenerationResult:
        """Multi-turn generation, buffered."""
        payload, system_instruction = self._chat_payload(request)

        async def call(model: str) -> str:
            return await self._client.generate(
                model,
                payload,
                request.params,
                system_instruction=system_instruction,
                api_key=request.credentials,
            )

        return await self._invoke(request, "chat", call, stream=False)

    async def generate_chat_stream(
        self,
        request: GenerationRequest,
        on_fragment: FragmentCallback | None = None,
    ) -> GenerationResult:
        """Multi-turn generation, streamed.

        `on_fragment` is called once per upstream chunk, in arrival order, with
        the sanitized text released for that chunk (possibly empty). Each
        chunk's callback is deferred until the next chunk arrives so the last
        one can carry the scrubber's withheld tail. The returned text is the
        concatenation of every fragment passed to the callback.
        """
        payload, system_instruction = self._chat_payload(request)
        delivered = False

        async def emit(fragment: str) -> None:
            nonlocal delivered
            delivered = True
            if on_fragment is not None:
                result = on_fragment(fragment)
                if asyncio.iscoroutine(result):
                    await result

        async def call(model: str) -> str:
            scrubber = StreamScrubber()
            parts: list[str] = []
            raw_chars = 0
            held: str | None = None
            stream: AsyncIterator[str] = self._client.generate_stream(
                model,
                payload,
                request.params,
                system_instruction=system_instruction,
                api_key=request.credentials,
            )
            try:
                async for chunk in stream:
                    raw_chars += len(chunk)
                    released = scrubber.feed(chunk)
                    if held is not None:
                        parts.append(held)
                        await emit(held)
                    held = released
            except ProviderError as e:
                if delivered:
                    raise _PartialDelivery(e) from e
                raise
            finally:
                await _aclose(stream)

            if held is not None:
                held += scrubber.flush()
                parts.append(held)
                await emit(held)

            text = "".join(parts)
            if len(text) != raw_chars:
                llm_markers_scrubbed_total.inc()
            return text

        return await self._invoke(request, "chat_stream", call, stream=True, presanitized=True)

    # -------------------------------------------------------------------------
    # State machine driver
    # -------------------------------------------------------------------------

    def _chat_payload(self, request: GenerationRequest) -> tuple[Payload, str | None]:
        if request.turns is None:
            raise ValueError("chat generation requires turns")
        if self._client.supports_chat:
            return list(request.turns), request.system_instruction
        return build_chat_prompt(request.turns, request.system_instruction), None

    async def _invoke(
        self,
        request: GenerationRequest,
        mode: str,
        call: Callable[[str], Awaitable[str]],
        stream: bool,
        presanitized: bool = False,
    ) -> GenerationResult:
        prompt_chars = len(request.prompt) if request.prompt is not None else sum(
            len(turn.content) for turn in request.turns or ()
        )
        request_log = log_llm_request(
            provider=self.provider,
            model=self._model,
            mode=mode,
            stream=stream,
            system_prompt=request.system_instruction,
            prompt_chars=prompt_chars,
            history_messages=len(request.turns or ()),
        )

        attempts: list[ProviderAttempt] = []
        try:
            model, raw = await self._run(call, attempts)
        except GenerationError as e:
            log_llm_response(request_log, attempts=len(attempts), error=f"{e.reason.value}: {e.cause}")
            raise
        except BaseException as e:
            log_llm_response(request_log, attempts=len(attempts), error=type(e).__name__)
            raise

        text = raw if presanitized else scrub(raw) or ""
        if text != raw:
            llm_markers_scrubbed_total.inc()
            logger.info("Ghost markers scrubbed", removed_chars=len(raw) - len(text))

        log_llm_response(request_log, model=model, attempts=len(attempts), response_chars=len(text))
        return GenerationResult(text=text, sanitized=True, model=model, attempts=tuple(attempts))

    def _record(
        self,
        attempts: list[ProviderAttempt],
        model: str,
        number: int,
        outcome: AttemptOutcome,
    ) -> None:
        attempts.append(ProviderAttempt(model=model, attempt_number=number, outcome=outcome))
        record_attempt(self.provider, model, outcome.value)

    async def _run(
        self,
        call: Callable[[str], Awaitable[str]],
        attempts: list[ProviderAttempt],
    ) -> tuple[str, str]:
        state = InvocationState.ATTEMPTING
        attempt = 0
        last_error: ProviderError | None = None

        while state is InvocationState.ATTEMPTING:
            attempt += 1
            try:
                text = await call(self._model)
            except _PartialDelivery as e:
                self._record(attempts, self._model, attempt, AttemptOutcome.FATAL_ERROR)
                raise self._fail(_failure_for_kind(e.error.kind), attempts, e.error) from e.error
            except ProviderError as e:
                last_error = e
                transition = next_transition(e.kind, attempt, self._policy)
                retryable = transition.state is not InvocationState.FAILED
                self._record(
                    attempts,
                    self._model,
                    attempt,
                    AttemptOutcome.RETRYABLE_ERROR if retryable else AttemptOutcome.FATAL_ERROR,
                )
                logger.warning(
                    "LLM attempt failed",
                    provider=self.provider,
                    model=self._model,
                    attempt=attempt,
                    max_attempts=self._policy.max_attempts,
                    kind=e.kind.value,
                    next_state=transition.state.value,
                )
                if transition.state is InvocationState.FAILED:
                    raise self._fail(transition.failure, attempts, e) from e
                if transition.delay:
                    logger.info("Retrying after backoff", delay_seconds=transition.delay, attempt=attempt)
                    await self._sleep(transition.delay)
                state = transition.state
            else:
                self._record(attempts, self._model, attempt, AttemptOutcome.SUCCESS)
                return self._model, text

        return await self._fallback_search(call, attempts, last_error)

    async def _fallback_search(
        self,
        call: Callable[[str], Awaitable[str]],
        attempts: list[ProviderAttempt],
        last_error: ProviderError | None,
    ) -> tuple[str, str]:
        candidates = [m for m in self._policy.fallback_models if m != self._model]
        logger.warning("Primary model unavailable, trying fallback models", candidates=candidates)

        for model in candidates:
            try:
                text = await call(model)
            except _PartialDelivery as e:
                self._record(attempts, model, 1, AttemptOutcome.FATAL_ERROR)
                raise self._fail(_failure_for_kind(e.error.kind), attempts, e.error) from e.error
            except ProviderError as e:
                # Quota and credential failures end the search
                if e.kind in (ErrorKind.QUOTA_EXCEEDED, ErrorKind.UNAUTHORIZED):
                    self._record(attempts, model, 1, AttemptOutcome.FATAL_ERROR)
                    raise self._fail(_failure_for_kind(e.kind), attempts, e) from e
                last_error = e
                self._record(attempts, model, 1, AttemptOutcome.RETRYABLE_ERROR)
                logger.warning("Fallback model failed, trying next", model=model, kind=e.kind.value)
                continue
            self._record(attempts, model, 1, AttemptOutcome.SUCCESS)
            logger.info("Fallback model succeeded", model=model)
            return model, text

        raise self._fail(FailureReason.UNAVAILABLE, attempts, last_error)

    def _fail(
        self,
        reason: FailureReason | None,
        attempts: list[ProviderAttempt],
        error: ProviderError | None,
    ) -> GenerationError:
        reason = reason or FailureReason.UNKNOWN
        logger.error(
            "LLM invocation failed",
            provider=self.provider,
            reason=reason.value,
            attempts=len(attempts),
            error=str(error) if error else None,
        )
        return GenerationError(reason, attempts=attempts, cause=str(error) if error else None)


async def _aclose(stream: AsyncIterator[str]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


# =============================================================================
# Module-level facade
# =============================================================================

TurnLike = ConversationTurn | Mapping[str, str]


def _to_turns(turns: Sequence[TurnLike]) -> tuple[ConversationTurn, ...]:
    return tuple(
        turn if isinstance(turn, ConversationTurn) else ConversationTurn(role=turn["role"], content=turn["content"])
        for turn in turns
    )


def _params(temperature: float | None) -> GenerationParams:
    settings = get_settings()
    return GenerationParams(
        temperature=settings.llm_temperature if temperature is None else temperature,
        top_p=settings.llm_top_p,
        top_k=settings.llm_top_k,
        max_output_tokens=settings.llm_max_output_tokens,
    )


async def _orchestrator(provider: ProviderName) -> LLMOrchestrator:
    client = await get_provider_client(provider)
    return LLMOrchestrator(client, model=get_settings().model_for(provider.value))


def _provider(provider: ProviderName | str | None) -> ProviderName:
    return ProviderName(provider or get_settings().default_provider)


async def generate_once(
    prompt: str,
    temperature: float = 0.7,
    provider: ProviderName | str | None = None,
    credentials: str | None = None,
) -> str:
    """Generate text for a single prompt.

    Raises:
        GenerationError: If the invocation fails after retries and fallback.
    """
    name = _provider(provider)
    request = GenerationRequest(
        prompt=prompt,
        params=_params(temperature),
        provider=name,
        credentials=credentials,
    )
    result = await (await _orchestrator(name)).generate_once(request)
    return result.text


async def generate_chat(
    turns: Sequence[TurnLike],
    system_instruction: str | None = None,
    provider: ProviderName | str | None = None,
    credentials: str | None = None,
    temperature: float | None = None,
) -> str:
    """Generate the next assistant reply for a conversation.

    Raises:
        GenerationError: If the invocation fails after retries and fallback.
    """
    name = _provider(provider)
    request = GenerationRequest(
        turns=_to_turns(turns),
        system_instruction=system_instruction,
        params=_params(temperature),
        provider=name,
        credentials=credentials,
    )
    result = await (await _orchestrator(name)).generate_chat(request)
    return result.text


async def generate_chat_streaming(
    turns: Sequence[TurnLike],
    system_instruction: str | None = None,
    on_fragment: FragmentCallback | None = None,
    provider: ProviderName | str | None = None,
    credentials: str | None = None,
    temperature: float | None = None,
) -> str:
    """Stream the next assistant reply, calling `on_fragment` per chunk.

    Returns:
        The full text, equal to the concatenation of all fragments.

    Raises:
        GenerationError: If the invocation fails after retries and fallback.
    """
    name = _provider(provider)
    request = GenerationRequest(
        turns=_to_turns(turns),
        system_instruction=system_instruction,
        params=_params(temperature),
        provider=name,
        credentials=credentials,
    )
    result = await (await _orchestrator(name)).generate_chat_stream(request, on_fragment)
    return result.text
