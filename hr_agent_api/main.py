"""FastAPI application entrypoint for HR Agent API."""

import asyncio
import logging
from asyncio import CancelledError
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from hr_agent_api import __version__
from hr_agent_api.config import get_settings
from hr_agent_api.models import (
    HealthResponse,
    HrAgentRequest,
    HrAgentResponse,
    HrChatRequest,
    HrChatResponse,
    StreamEvent,
)
from hr_agent_api.observability import generate_trace_id, set_trace_id
from hr_agent_api.orchestrator import (
    FailureReason,
    GenerationError,
    generate_chat,
    generate_chat_streaming,
    generate_once,
)
from hr_agent_api.prompts import get_chat_system_prompt, get_prompt
from hr_agent_api.providers import ProviderError, ProviderName, close_provider_clients, get_provider_client

settings = get_settings()

logging.basicConfig(format="%(message)s", level=settings.log_level)

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

# Failure reason -> HTTP status
ERROR_STATUS_CODES = {
    FailureReason.QUOTA: 429,
    FailureReason.CREDENTIAL: 503,
    FailureReason.UNAVAILABLE: 503,
    FailureReason.UNKNOWN: 502,
}

TEMPERATURE_NORMAL = 0.7
TEMPERATURE_RETRY = 0.9


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting HR Agent API", version=__version__, default_provider=settings.default_provider)

    # Initialize shared clients on startup
    for provider in ProviderName:
        try:
            await get_provider_client(provider)
        except ProviderError as e:
            logger.warning("Failed to initialize provider client", provider=provider.value, error=str(e))

    yield

    # Cleanup on shutdown
    logger.info("Shutting down HR Agent API")
    await close_provider_clients()


# Create FastAPI app
app = FastAPI(
    title="HR Agent API",
    description="LLM gateway for HR recruiting workflows and chat",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Trace ID middleware for request correlation
@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    """Add trace ID to every request for log correlation."""
    trace_id = request.headers.get("X-Trace-ID", generate_trace_id())
    set_trace_id(trace_id)

    # Bind trace ID to structlog context for all logs in this request
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(trace_id=trace_id)

    response = await call_next(request)

    response.headers["X-Trace-ID"] = trace_id
    return response


# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add Prometheus metrics
Instrumentator().instrument(app).expose(app)


def _error_body(error: GenerationError) -> dict[str, str]:
    body = {"error": error.message}
    # Upstream detail only outside production
    if get_settings().is_development and error.cause:
        body["details"] = error.cause
    return body


@app.exception_handler(GenerationError)
async def generation_error_handler(request: Request, exc: GenerationError) -> JSONResponse:
    """Translate a failed invocation into an HTTP error response."""
    logger.error(
        "Generation failed",
        path=request.url.path,
        reason=exc.reason.value,
        attempts=len(exc.attempts),
    )
    return JSONResponse(status_code=ERROR_STATUS_CODES[exc.reason], content=_error_body(exc))


# =============================================================================
# Health Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
@app.get("/api/v1/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check the health of the API and its provider configuration."""
    current = get_settings()
    providers = {provider.value: current.has_credentials(provider.value) for provider in ProviderName}
    usable = providers[current.default_provider] or current.mock_llm

    return HealthResponse(
        status="healthy" if usable else "degraded",
        providers=providers,
        default_provider=current.default_provider,
        mock_llm=current.mock_llm,
        version=__version__,
    )


# =============================================================================
# HR Agent Endpoint
# =============================================================================


@app.post("/api/hr-agent", response_model=HrAgentResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def hr_agent(
    request: Request,
    agent_request: HrAgentRequest,
    x_llm_api_key: str | None = Header(default=None, alias="X-LLM-Api-Key"),
) -> HrAgentResponse:
    """
    Run one HR workflow step.

    - **step**: job_intake, sourcing, screening or interview
    - **input**: JD, resume or interview transcript
    - **mode**: "retry" asks for a different version at a higher temperature
    """
    is_retry = agent_request.mode == "retry"
    prompt = get_prompt(
        agent_request.step,
        agent_request.input,
        is_retry=is_retry,
        language=agent_request.language,
        custom_instruction=agent_request.custom_instruction,
    )

    logger.info(
        "HR agent request received",
        step=agent_request.step,
        mode=agent_request.mode,
        language=agent_request.language,
        input_length=len(agent_request.input),
    )

    result = await generate_once(
        prompt,
        temperature=TEMPERATURE_RETRY if is_retry else TEMPERATURE_NORMAL,
        provider=agent_request.provider,
        credentials=x_llm_api_key,
    )
    return HrAgentResponse(result=result)


# =============================================================================
# Chat Endpoints
# =============================================================================


@app.post("/api/hr-chat", response_model=HrChatResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def hr_chat(
    request: Request,
    chat_request: HrChatRequest,
    x_llm_api_key: str | None = Header(default=None, alias="X-LLM-Api-Key"),
) -> HrChatResponse:
    """
    Chat with the HR assistant.

    - **messages**: Conversation so far, oldest first, ending with the user turn
    """
    logger.info("HR chat request received", messages=len(chat_request.messages), stream=False)

    reply = await generate_chat(
        [message.model_dump() for message in chat_request.messages],
        system_instruction=get_chat_system_prompt(chat_request.language, chat_request.custom_instruction),
        provider=chat_request.provider,
        credentials=x_llm_api_key,
    )
    return HrChatResponse(reply=reply)


@app.post("/api/hr-chat/stream")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def hr_chat_stream(
    request: Request,
    chat_request: HrChatRequest,
    x_llm_api_key: str | None = Header(default=None, alias="X-LLM-Api-Key"),
) -> StreamingResponse:
    """Chat with the HR assistant, streamed as server-sent events."""
    logger.info("HR chat request received", messages=len(chat_request.messages), stream=True)

    return StreamingResponse(
        _stream_chat_response(chat_request, x_llm_api_key),
        media_type="text/event-stream",
    )


def _sse(event: StreamEvent) -> str:
    return f"data: {event.model_dump_json(exclude_none=True)}\n\n"


async def _stream_chat_response(chat_request: HrChatRequest, credentials: str | None) -> AsyncIterator[str]:
    """Generate streaming SSE response with proper cancellation handling."""
    queue: asyncio.Queue[str | None] = asyncio.Queue()

    async def run() -> str:
        try:
            return await generate_chat_streaming(
                [message.model_dump() for message in chat_request.messages],
                system_instruction=get_chat_system_prompt(chat_request.language, chat_request.custom_instruction),
                on_fragment=queue.put_nowait,
                provider=chat_request.provider,
                credentials=credentials,
            )
        finally:
            queue.put_nowait(None)  # End of stream

    task = asyncio.create_task(run())
    try:
        while True:
            fragment = await queue.get()
            if fragment is None:
                break
            if fragment:
                yield _sse(StreamEvent(chunk=fragment))

        await task
        yield _sse(StreamEvent(done=True))

    except CancelledError:
        logger.info("Streaming cancelled by client")
        raise

    except GenerationError as e:
        logger.error("Streaming generation failed", reason=e.reason.value, attempts=len(e.attempts))
        yield _sse(StreamEvent(error=e.message))

    finally:
        if not task.done():
            task.cancel()


# =============================================================================
# Entry point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "hr_agent_api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
    )
