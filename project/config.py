"""
Environment configuration for the widget platform.
Every value can be supplied through the process environment or a `.env` file.
"""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvSettings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Django
    django_secret_key: str = Field(
        default="django-insecure-dev-key-change-in-production",
        description="Django secret key",
    )
    django_debug: bool = Field(default=True, description="Debug mode")
    django_allowed_hosts: str = Field(
        default="localhost,127.0.0.1,testserver",
        description="Comma-separated allowed hosts",
    )
    log_level: str = Field(default="INFO", description="Root log level")

    # Database. Empty db_name keeps the local sqlite file.
    db_name: Optional[str] = Field(default=None, description="PostgreSQL database name")
    db_host: str = Field(default="localhost", description="Database host")
    db_user: str = Field(default="postgres", description="Database user")
    db_password: str = Field(default="", description="Database password")
    db_port: int = Field(default=5432, description="Database port")

    # Hosted providers (platform-wide credentials)
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(default=None, description="Optional OpenAI-compatible gateway URL")
    google_api_key: Optional[str] = Field(default=None, description="Google API key for Gemini")
    default_openai_model: str = Field(default="gpt-5")
    default_gemini_model: str = Field(default="gemini-2.0-flash")

    # Provider call bounds
    llm_stream_timeout: float = Field(default=120.0, description="Ceiling in seconds for one provider stream")
    llm_connect_timeout: float = Field(default=10.0, description="Connect timeout for self-hosted endpoints")
    llm_max_attempts: int = Field(default=2, description="Attempts to open a provider stream")
    custom_endpoint_max_retries: int = Field(default=2, description="Connection attempts when opening a self-hosted stream")

    # Public base URL used to render embed snippets
    widget_base_url: str = Field(default="http://localhost:8000")

    @property
    def allowed_hosts_list(self) -> List[str]:
        """Parse allowed hosts into a list."""
        return [h.strip() for h in self.django_allowed_hosts.split(",") if h.strip()]


@lru_cache
def get_env_settings() -> EnvSettings:
    """Get cached settings instance."""
    return EnvSettings()
