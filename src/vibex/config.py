"""Configuration management for vibex."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vibex.errors import ApiKeyNotConfiguredError, InvalidModelFormatError, ModelNotConfiguredError
from vibex.generation.base import GenerationConfig
from vibex.retry import RetryConfiguration
from vibex.workflow.models import WorkflowEngineConfig

MODEL_NOT_CONFIGURED_ERROR = "Model is not configured. Set VIBEX_MODEL, e.g. openai:gpt-4o-mini."
MODEL_FORMAT_ERROR = "Model must use the provider:model format, e.g. anthropic:claude-sonnet-4-5."
API_KEY_NOT_CONFIGURED_ERROR = "API key is not configured. Set VIBEX_API_KEY or VIBEX_API_BASE."
LOCAL_PROVIDERS = frozenset({"ollama", "lmstudio", "local"})


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="VIBEX_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    # Model
    model: str | None = Field(None, description="Model in provider:model format")
    api_key: str | None = Field(None, description="API key for the model provider")
    api_base: str | None = Field(None, description="Optional API base URL")
    max_tokens: int = Field(default=4096, ge=1, description="Maximum tokens for responses")
    temperature: float | None = Field(default=None, ge=0, le=2)
    system_prompt: str = Field(default="", description="System prompt for every turn")
    model_timeout_seconds: float | None = Field(default=90, description="Seconds to wait for the first chunk")
    context_limit: int = Field(default=128_000, ge=1)

    # Retry
    retry_max_attempts: int = Field(default=3, ge=0)
    retry_initial_delay_ms: float = Field(default=1000, ge=0)
    retry_max_delay_ms: float = Field(default=30_000, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)

    # Session and workflow
    task_timeout_seconds: float = Field(default=30, gt=0)
    pause_on_failure: bool = False
    max_turns: int | None = Field(default=None, ge=1)
    max_tool_rounds: int = Field(default=16, ge=1)
    keep_messages: int = Field(default=40, ge=1)
    workspace_path: Path | None = Field(None, description="Workspace directory for file tools")

    def require_model(self) -> str:
        """Return the configured model or raise a configuration error."""
        if not self.model:
            raise ModelNotConfiguredError(MODEL_NOT_CONFIGURED_ERROR)
        provider, separator, name = self.model.partition(":")
        if not separator or not provider.strip() or not name.strip():
            raise InvalidModelFormatError(MODEL_FORMAT_ERROR)
        if not self.api_key and not self.api_base and provider.lower().strip() not in LOCAL_PROVIDERS:
            raise ApiKeyNotConfiguredError(API_KEY_NOT_CONFIGURED_ERROR)
        return self.model

    def retry_configuration(self) -> RetryConfiguration:
        return RetryConfiguration(
            max_attempts=self.retry_max_attempts,
            initial_delay_ms=self.retry_initial_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    def engine_config(self) -> WorkflowEngineConfig:
        return WorkflowEngineConfig(
            default_timeout=self.task_timeout_seconds,
            retry=self.retry_configuration(),
            pause_on_failure=self.pause_on_failure,
            working_directory=self.resolved_workspace(),
        )

    def generation_config(self) -> GenerationConfig:
        return GenerationConfig(
            model=self.require_model(),
            system_prompt=self.system_prompt,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

    def resolved_workspace(self) -> Path:
        return (self.workspace_path or Path.cwd()).expanduser().resolve()
