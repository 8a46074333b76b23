"""Configuration management for the response gateway.

Supports a YAML configuration file with environment variable overrides.
Configuration is loaded once at startup and cached.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.models import ProviderDefinition


def default_catalog() -> list[ProviderDefinition]:
    """Models reachable through the unified gateway out of the box."""
    return [
        ProviderDefinition(
            key="gemini",
            display_name="Gemini",
            upstream_model_id="google/gemini-2.0-flash-exp:free",
            api_key_env="GEMINI_API_KEY",
        ),
        ProviderDefinition(
            key="deepseek",
            display_name="DeepSeek",
            upstream_model_id="tngtech/deepseek-r1t2-chimera:free",
            api_key_env="DEEPSEEK_API_KEY",
        ),
        ProviderDefinition(
            key="microsoft",
            display_name="Microsoft MAI",
            upstream_model_id="microsoft/mai-ds-r1:free",
            api_key_env="MICROSOFT_API_KEY",
        ),
        ProviderDefinition(
            key="llama",
            display_name="Llama",
            upstream_model_id="meta-llama/llama-4-maverick:free",
            api_key_env="LLAMA_API_KEY",
        ),
        ProviderDefinition(
            key="openai",
            display_name="OpenAI",
            upstream_model_id="openai/gpt-oss-20b:free",
            api_key_env="OPENAI_API_KEY",
        ),
    ]


class ProviderSettings(BaseSettings):
    """Upstream gateway and provider catalog configuration."""
    gateway_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions")
    api_key: Optional[str] = Field(default=None, description="Credential shared by all providers")
    test_mode: bool = Field(default=False, description="Enable providers without credentials (mock calls)")
    timeout_seconds: float = Field(default=60.0, gt=0)
    site_url: str = Field(default="http://localhost:8000")
    site_title: str = Field(default="Multi-Model Gateway")

    # Simulated latency for mock calls
    mock_min_delay_ms: int = Field(default=500, ge=0)
    mock_max_delay_ms: int = Field(default=1500, ge=0)

    catalog: list[ProviderDefinition] = Field(default_factory=default_catalog)

    model_config = SettingsConfigDict(
        env_prefix="AI_",
        env_file=".env",
        extra="ignore"
    )


class ServerSettings(BaseSettings):
    """HTTP server configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Security
    secret_key: str = Field(default="change-me-in-production")
    token_expire_minutes: int = Field(default=60)
    require_auth: bool = Field(default=True)
    default_owner_id: str = Field(default="anonymous")
    trusted_clients: list[str] = Field(default_factory=lambda: ["frontend", "cli"])

    model_config = SettingsConfigDict(
        env_prefix="SERVER_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False, description="Auto-reload and DEBUG logging")
    log_level: str = Field(default="INFO")

    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def effective_log_level(self) -> str:
        """Debug mode forces DEBUG logging."""
        return "DEBUG" if self.debug else self.log_level

    @property
    def test_mode(self) -> bool:
        """Mock calls are allowed explicitly or in development."""
        return self.providers.test_mode or self.environment == "development"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        data = load_yaml_config(path)
        # Nested sections are built directly so their own env prefixes apply
        data["providers"] = ProviderSettings(**(data.get("providers") or {}))
        data["server"] = ServerSettings(**(data.get("server") or {}))
        return cls(**data)


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file, returning an empty dict if missing."""
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
