"""
Configuration management for relay-agent.

Uses pydantic-settings for environment variable parsing and validation.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AuthType = Literal["api_key", "oauth", "local"]


class ProviderConfig(BaseSettings):
    """Configuration for a single model backend."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = Field(default="", repr=False)
    auth_type: AuthType = "api_key"
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7
    top_p: float | None = None
    system_prompt: str | None = None
    timeout_s: float = 120.0

    @field_validator("provider", mode="before")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.strip().lower() if isinstance(v, str) else v


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "relay-agent"
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = False

    # Provider credentials
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude", repr=False)
    openai_api_key: str = Field(default="", description="OpenAI API key", repr=False)
    google_api_key: str = Field(default="", description="Google AI API key for Gemini", repr=False)
    openrouter_api_key: str = Field(default="", description="OpenRouter API key", repr=False)
    ollama_base_url: str = Field(default="http://localhost:11434", description="Ollama server URL")
    auth_type: AuthType = Field(default="api_key", description="Credential class used for fallback gating")

    # Default model settings
    default_provider: str = "anthropic"
    default_model: str = ""
    max_tokens: int = 4096
    temperature: float = 0.7
    top_p: float | None = None
    system_prompt: str | None = None
    request_timeout_s: float = 120.0

    # Retry / fallback
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_initial_delay_s: float = Field(default=5.0, ge=0)
    retry_max_delay_s: float = Field(default=30.0, ge=0)
    fallback_model: str = Field(default="", description="Model adopted after persistent rate limiting")

    # Turn loop
    max_turns: int = Field(default=100, ge=1, description="Max model turns per user message")
    compression_threshold: float = Field(default=0.95, gt=0, le=1)

    # Tools
    approval_required: bool = Field(default=True, description="Ask before running tools that request confirmation")
    checkpointing_enabled: bool = False
    checkpoint_dir: Path = Path(".relay/checkpoints")
    project_root: Path = Path(".")

    # Diagnostics
    diagnostics_dir: Path | None = None

    @field_validator("default_provider", mode="before")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.strip().lower() if isinstance(v, str) else v

    def get_provider_config(self, provider: str | None = None) -> ProviderConfig:
        """Get backend configuration for a provider."""
        provider = (provider or self.default_provider).strip().lower()

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "google": self.google_api_key,
            "gemini": self.google_api_key,
            "openrouter": self.openrouter_api_key,
        }

        model_map = {
            "anthropic": "claude-sonnet-4-20250514",
            "openai": "gpt-4o",
            "google": "gemini-2.5-flash",
            "gemini": "gemini-2.5-flash",
            "openrouter": "anthropic/claude-sonnet-4",
            "ollama": "llama3.2",
        }

        base_url_map = {
            "openrouter": "https://openrouter.ai/api/v1",
            "ollama": self.ollama_base_url,
        }

        use_default_model = self.default_model and provider == self.default_provider
        return ProviderConfig(
            provider=provider,
            model=self.default_model if use_default_model else model_map.get(provider, self.default_model),
            api_key=api_key_map.get(provider, ""),
            auth_type="local" if provider == "ollama" else self.auth_type,
            base_url=base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            system_prompt=self.system_prompt,
            timeout_s=self.request_timeout_s,
        )
