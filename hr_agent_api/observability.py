"""Observability utilities: trace IDs, LLM metrics, and invocation logging.

This module provides:
- Trace ID generation and propagation via context vars
- Prometheus metrics for LLM invocations (attempts, latency, errors)
- Structured logging helpers for LLM request/response correlation
"""

import time
import secrets
from contextvars import ContextVar
from dataclasses import dataclass

import structlog
from prometheus_client import Counter, Histogram, Gauge

logger = structlog.get_logger()

# =============================================================================
# Trace ID Context
# =============================================================================

# Context variable for trace ID propagation across async calls
trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")


def generate_trace_id() -> str:
    """Generate cryptographically secure trace ID for request tracking."""
    return secrets.token_hex(16)  # 32 hex chars, same format as uuid4().hex


def get_trace_id() -> str:
    """Get current trace ID from context, or empty string if not set."""
    return trace_id_ctx.get()


def set_trace_id(trace_id: str) -> None:
    """Set trace ID in context."""
    trace_id_ctx.set(trace_id)


# =============================================================================
# Prometheus Metrics for LLM
# =============================================================================

# One increment per invocation (after retries and fallback)
llm_requests_total = Counter(
    "llm_requests_total",
    "Total LLM invocations",
    ["provider", "model", "status", "stream"],
)

# One increment per upstream call
llm_attempts_total = Counter(
    "llm_attempts_total",
    "Upstream LLM calls by outcome",
    ["provider", "model", "outcome"],  # values: success, retryable_error, fatal_error
)

llm_latency_seconds = Histogram(
    "llm_latency_seconds",
    "LLM invocation latency in seconds (including retry waits)",
    ["provider", "stream"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

llm_active_requests = Gauge(
    "llm_active_requests",
    "Currently active LLM invocations",
    ["provider"],
)

llm_markers_scrubbed_total = Counter(
    "llm_markers_scrubbed_total",
    "Responses from which ghost markers were removed",
)


def record_attempt(provider: str, model: str, outcome: str) -> None:
    """Count a single upstream call."""
    llm_attempts_total.labels(provider=provider, model=model, outcome=outcome).inc()


# =============================================================================
# LLM Invocation Logging
# =============================================================================


@dataclass
class LLMRequestLog:
    """Structured log data for LLM invocations."""

    trace_id: str
    provider: str
    model: str
    stream: bool
    mode: str  # once, chat, chat_stream
    system_prompt_chars: int
    prompt_chars: int
    history_messages: int
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        if self.timestamp == 0.0:
            self.timestamp = time.time()


def log_llm_request(
    provider: str,
    model: str,
    mode: str,
    stream: bool,
    system_prompt: str | None,
    prompt_chars: int,
    history_messages: int = 0,
) -> LLMRequestLog:
    """Log the start of an LLM invocation.

    Returns LLMRequestLog for correlation with the response.
    """
    log_data = LLMRequestLog(
        trace_id=get_trace_id(),
        provider=provider,
        model=model,
        stream=stream,
        mode=mode,
        system_prompt_chars=len(system_prompt) if system_prompt else 0,
        prompt_chars=prompt_chars,
        history_messages=history_messages,
    )

    logger.info(
        "llm_request",
        trace_id=log_data.trace_id,
        provider=log_data.provider,
        model=log_data.model,
        mode=log_data.mode,
        stream=log_data.stream,
        system_prompt_chars=log_data.system_prompt_chars,
        prompt_chars=log_data.prompt_chars,
        history_messages=log_data.history_messages,
    )

    llm_active_requests.labels(provider=provider).inc()
    return log_data


def log_llm_response(
    request_log: LLMRequestLog,
    model: str | None = None,
    attempts: int = 0,
    response_chars: int = 0,
    error: str | None = None,
) -> None:
    """Log the end of an LLM invocation with metrics and correlation."""
    latency_ms = int((time.time() - request_log.timestamp) * 1000)
    final_model = model or request_log.model

    if error:
        logger.error(
            "llm_response",
            trace_id=request_log.trace_id,
            provider=request_log.provider,
            model=final_model,
            stream=request_log.stream,
            attempts=attempts,
            latency_ms=latency_ms,
            error=error,
        )
        status = "error"
    else:
        logger.info(
            "llm_response",
            trace_id=request_log.trace_id,
            provider=request_log.provider,
            model=final_model,
            stream=request_log.stream,
            attempts=attempts,
            latency_ms=latency_ms,
            response_chars=response_chars,
        )
        status = "success"

    llm_active_requests.labels(provider=request_log.provider).dec()
    llm_requests_total.labels(
        provider=request_log.provider,
        model=final_model,
        status=status,
        stream=str(request_log.stream).lower(),
    ).inc()
    llm_latency_seconds.labels(
        provider=request_log.provider,
        stream=str(request_log.stream).lower(),
    ).observe(latency_ms / 1000.0)
