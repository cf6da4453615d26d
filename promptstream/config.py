"""Configuration settings for the generation pipeline using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PROMPTSTREAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Model settings
    model_id: str = Field(
        default="Qwen/Qwen3-1.7B",
        description="HuggingFace model ID",
    )
    model_revision: str = Field(
        default="main",
        description="Model revision/commit SHA for reproducibility",
    )

    # vLLM Engine settings
    max_model_len: int = Field(
        default=4096,
        description="Maximum context length",
    )
    gpu_memory_utilization: float = Field(
        default=0.5,
        ge=0.1,
        le=0.99,
        description="Fraction of GPU memory to use",
    )
    dtype: Literal["auto", "half", "float16", "bfloat16", "float32"] = Field(
        default="auto",
        description="Data type for model weights",
    )
    enforce_eager: bool = Field(
        default=False,
        description="Disable CUDA graphs for debugging",
    )
    warmup: bool = Field(
        default=True,
        description="Run a short generation right after loading",
    )

    # Generation defaults
    max_tokens: int = Field(
        default=240,
        ge=1,
        description="Default max tokens per response",
    )
    temperature: float = Field(
        default=0.6,
        ge=0.0,
        le=2.0,
        description="Default temperature",
    )
    top_p: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Default top_p (nucleus sampling)",
    )
    enable_thinking: bool = Field(
        default=False,
        description="Include the reasoning trace in the chat template",
    )
    system_prompt: str = Field(
        default="You are a helpful assistant",
        description="System instruction prepended to every prompt",
    )

    # Publishing
    throttle_interval: float = Field(
        default=0.25,
        gt=0.0,
        description="Seconds between published UI updates",
    )

    # App
    preload: bool = Field(
        default=True,
        description="Load the model as soon as the app starts",
    )

    # Observability
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="WARNING",
        description="Logging level",
    )
    metrics_port: int = Field(
        default=0,
        ge=0,
        description="Prometheus exporter port (0 disables it)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
