"""Configuration management for the chat gateway.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for the lifetime of the process.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    """HTTP surface and turn orchestration configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=7071)
    default_model: str = Field(
        default="gpt-4o-mini",
        validation_alias=AliasChoices("GATEWAY_DEFAULT_MODEL", "OPENAI_MODEL", "default_model"),
    )

    # System prompt: inline text wins over the file
    system_prompt: Optional[str] = Field(default=None)
    system_prompt_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GATEWAY_SYSTEM_PROMPT_PATH", "SYSTEM_PROMPT_PATH", "system_prompt_path"),
    )

    # Turn limits
    max_tool_rounds: int = Field(default=3, ge=0)
    max_history_messages: Optional[int] = Field(default=None, gt=0)
    provider_timeout_seconds: float = Field(default=60.0, gt=0)
    tools_enabled: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    def load_system_prompt(self) -> Optional[str]:
        """Return the configured system prompt, reading the prompt file if needed."""
        if self.system_prompt:
            return self.system_prompt
        if not self.system_prompt_path:
            return None

        path = Path(self.system_prompt_path)
        if not path.exists():
            return None

        text = path.read_text(encoding="utf-8").strip()
        return text or None


class ProviderSettings(BaseSettings):
    """Upstream model provider credentials and endpoints."""
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("PROVIDER_OPENAI_API_KEY", "OPENAI_API_KEY", "openai_api_key"),
    )
    openai_base_url: Optional[str] = Field(default=None)

    gemini_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "PROVIDER_GEMINI_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY", "gemini_api_key"
        ),
    )
    gemini_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")

    xai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "PROVIDER_XAI_API_KEY", "XAI_API_KEY", "GROK_API_KEY", "xai_api_key"
        ),
    )
    xai_base_url: str = Field(default="https://api.x.ai/v1")

    enable_mock: bool = Field(default=True, description="Expose the scripted 'mock' model")

    model_config = SettingsConfigDict(
        env_prefix="PROVIDER_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )


class StoreSettings(BaseSettings):
    """Conversation store configuration."""
    database_path: str = Field(default="data/conversations.db")
    cache_ttl_seconds: float = Field(default=7200, gt=0)
    retention_multiplier: float = Field(default=7, gt=0)
    sweep_interval_seconds: float = Field(default=60, gt=0)
    retention_interval_seconds: float = Field(default=3600, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def effective_sweep_interval(self) -> float:
        """Cache sweeps never run less often than the cache TTL."""
        return min(self.cache_ttl_seconds, self.sweep_interval_seconds)

    @property
    def retention_seconds(self) -> float:
        return self.cache_ttl_seconds * self.retention_multiplier


class ToolSettings(BaseSettings):
    """Tool runtime configuration."""
    brave_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("TOOLS_BRAVE_API_KEY", "BRAVE_API_KEY", "brave_api_key"),
    )
    timeout_seconds: float = Field(default=20.0, gt=0)
    web_fetch_timeout_seconds: float = Field(default=10.0, gt=0)
    web_fetch_max_bytes: int = Field(default=5 * 1024 * 1024, gt=0)

    enable_audit: bool = Field(default=True)
    audit_log_path: str = Field(default="logs/tool_executions.log")

    model_config = SettingsConfigDict(
        env_prefix="TOOLS_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    def credentials(self) -> dict[str, str]:
        """Credentials exposed to tool handlers, keyed by their env var name."""
        creds: dict[str, str] = {}
        if self.brave_api_key:
            creds["BRAVE_API_KEY"] = self.brave_api_key
        return creds


class StreamingSettings(BaseSettings):
    """Token pacing for streamed responses."""
    pacing_delay_ms: float = Field(default=15, ge=0)
    paced_providers: list[str] = Field(default_factory=lambda: ["gemini"])

    model_config = SettingsConfigDict(
        env_prefix="STREAMING_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_APP_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("GATEWAY_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
