"""Publisher settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

REMOTE_PROTOCOLS = ("loki", "otlp")


class PublisherSettings(BaseSettings):
    """Publisher settings loaded from LOG_PUBLISHER_* environment variables."""

    # Application
    app_name: str = Field(..., description="Application name prefixed to every log line")
    environment: str = Field(default="development", description="Deployment environment")

    # Archive
    archive_path: Optional[Path] = Field(
        default=None, description="Root directory for daily archive files (unset disables archiving)"
    )

    # Remote telemetry
    remote_endpoint: Optional[str] = Field(
        default=None, description="Base URL of the Loki / OTLP collector (unset disables remote)"
    )
    remote_protocol: str = Field(default="loki", description="Remote wire protocol (loki/otlp)")
    remote_timeout: float = Field(default=5.0, description="Remote probe/push timeout (seconds)")

    # HTTP instrumentation
    exclude_routes: str = Field(
        default="", description="Paths excluded from request logging (comma-separated)"
    )
    stack_limit: int = Field(
        default=2000, description="Max stack trace characters in endpoint error logs"
    )

    # Library diagnostics
    log_level: str = Field(default="INFO", description="Level for the publisher's own diagnostics")
    json_logs: bool = Field(default=False, description="Render diagnostics as JSON")

    model_config = SettingsConfigDict(
        env_prefix="LOG_PUBLISHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("remote_protocol")
    @classmethod
    def validate_remote_protocol(cls, v: str) -> str:
        """Validate remote protocol."""
        if v.lower() not in REMOTE_PROTOCOLS:
            raise ValueError(f"Invalid remote protocol. Must be one of: {list(REMOTE_PROTOCOLS)}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("remote_endpoint")
    @classmethod
    def strip_endpoint(cls, v: Optional[str]) -> Optional[str]:
        """Drop trailing slashes; treat an empty string as unset."""
        if v is None:
            return None
        v = v.strip().rstrip("/")
        return v or None

    def get_exclude_routes_list(self) -> List[str]:
        """Parse excluded routes from comma-separated string."""
        return [route.strip() for route in self.exclude_routes.split(",") if route.strip()]

    @property
    def remote_configured(self) -> bool:
        """Check if a remote endpoint is configured."""
        return self.remote_endpoint is not None


@lru_cache()
def get_settings() -> PublisherSettings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return PublisherSettings()
