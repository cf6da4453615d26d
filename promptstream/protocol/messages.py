"""Pydantic models and enums shared across the generation pipeline."""

from enum import Enum

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================


class ErrorCode(str, Enum):
    """Error codes carried by pipeline exceptions."""

    RESOURCE_LOAD_ERROR = "RESOURCE_LOAD_ERROR"
    GENERATION_ERROR = "GENERATION_ERROR"


class LoadStatus(str, Enum):
    """Lifecycle of the shared model resource."""

    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    READY = "ready"


class SessionState(str, Enum):
    """States of a generation session."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionState.COMPLETED,
            SessionState.FAILED,
            SessionState.CANCELLED,
        )


class Role(str, Enum):
    """Message role in the model input."""

    SYSTEM = "system"
    USER = "user"


# =============================================================================
# Request Models
# =============================================================================


class ChatMessage(BaseModel):
    """A single message in the model input."""

    role: Role = Field(..., description="Message role")
    content: str = Field(..., description="Message content")


class GenerationRequest(BaseModel):
    """A prompt submitted for generation."""

    prompt: str = Field(..., description="User prompt")
    max_tokens: int | None = Field(
        default=None,
        ge=1,
        description="Upper bound on generated tokens (settings default if unset)",
    )
    temperature: float | None = Field(
        default=None,
        ge=0.0,
        le=2.0,
        description="Sampling temperature (settings default if unset)",
    )
    enable_thinking: bool = Field(
        default=False,
        description="Include the reasoning trace in the input context",
    )

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value


# =============================================================================
# Outcome Models
# =============================================================================


class SessionOutcome(BaseModel):
    """Terminal state of the last finished run."""

    state: SessionState = Field(..., description="Terminal state")
    error_message: str | None = Field(
        default=None,
        description="User-visible failure message (FAILED only)",
    )
    output: str = Field(default="", description="Output text at the end of the run")
    stats: str = Field(default="", description="Last stats line published")
