"""Pydantic models for API requests and responses."""

from typing import Literal

from pydantic import BaseModel, Field

from hr_agent_api.prompts import Language, StepType

ProviderField = Literal["gemini", "openai"]

# =============================================================================
# HR Agent API Models
# =============================================================================


class HrAgentRequest(BaseModel):
    """Request body for a single HR workflow step."""

    step: StepType = Field(..., description="Workflow step")
    input: str = Field(..., min_length=1, description="Step input (JD, resume, transcript)")
    mode: Literal["normal", "retry"] = Field(default="normal", description="Retry asks for a different version")
    language: Language = Field(default="zh-TW", description="Output language")
    custom_instruction: str | None = Field(default=None, max_length=2000, description="Extra user instruction")
    provider: ProviderField | None = Field(default=None, description="Override the default provider")


class HrAgentResponse(BaseModel):
    """Generated step result."""

    result: str = Field(..., description="Sanitized model output")


# =============================================================================
# Chat API Models
# =============================================================================


class ChatMessage(BaseModel):
    """A single message in the conversation."""

    role: Literal["user", "assistant"] = Field(..., description="Message role")
    content: str = Field(..., min_length=1, description="Message content")


class HrChatRequest(BaseModel):
    """Request body for the chat endpoints."""

    messages: list[ChatMessage] = Field(..., min_length=1, description="Conversation, oldest first")
    language: Language = Field(default="zh-TW", description="Output language")
    custom_instruction: str | None = Field(default=None, max_length=2000, description="Extra user instruction")
    provider: ProviderField | None = Field(default=None, description="Override the default provider")


class HrChatResponse(BaseModel):
    """Non-streaming chat response."""

    reply: str = Field(..., description="Assistant reply")


class StreamEvent(BaseModel):
    """Server-sent event payload for streaming chat responses."""

    chunk: str | None = None
    done: bool | None = None
    error: str | None = None


# =============================================================================
# Health API Models
# =============================================================================


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: Literal["healthy", "degraded"] = Field(..., description="Service status")
    providers: dict[str, bool] = Field(..., description="Credential configured, per provider")
    default_provider: str = Field(..., description="Provider used when none is requested")
    mock_llm: bool = Field(..., description="Mock responses enabled")
    version: str = Field(..., description="API version")
