"""Application configuration settings."""

from pathlib import Path
from typing import Dict, Any
from urllib.parse import urlparse

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.hostname import get_effective_hostname


DEFAULT_PROJECTS_DIR = Path.home() / ".claude" / "projects"
DEFAULT_COLLECTOR_ID_PATH = Path.home() / ".claude-archive" / "collector-id"

LOG_LEVELS = ("debug", "info", "warn", "error")


class ConfigurationError(Exception):
    """Raised when the collector configuration is missing or invalid."""
    pass


class RetrySettings(BaseSettings):
    """Transport retry configuration."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    max_retries: int = Field(default=3, ge=0, validation_alias="SYNC_MAX_RETRIES")
    base_delay: float = Field(default=1.0, ge=0, validation_alias="SYNC_RETRY_BASE_DELAY")
    max_delay: float = Field(default=30.0, ge=0, validation_alias="SYNC_RETRY_MAX_DELAY")
    request_timeout: float = Field(default=120.0, gt=0, validation_alias="REQUEST_TIMEOUT_SECONDS")


class ScanSettings(BaseSettings):
    """Filesystem scan configuration."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    projects_dir: Path = Field(default=DEFAULT_PROJECTS_DIR, validation_alias="CLAUDE_PROJECTS_DIR")
    max_search_depth: int = Field(default=5, ge=0, validation_alias="GIT_MAX_SEARCH_DEPTH")
    commit_limit: int = Field(default=1000, gt=0, validation_alias="GIT_COMMIT_LIMIT")
    tool_result_max_bytes: int = Field(default=1024 * 1024, gt=0, validation_alias="TOOL_RESULT_MAX_BYTES")


class CollectorSettings(BaseSettings):
    """Main collector settings, sourced from the environment and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    server_url: str = Field(..., validation_alias="SERVER_URL")
    api_key: str = Field(..., min_length=1, validation_alias="API_KEY")
    collector_name: str = Field(default_factory=get_effective_hostname, validation_alias="COLLECTOR_NAME")
    log_level: str = Field(default="info", validation_alias="LOG_LEVEL")
    collector_id_path: Path = Field(default=DEFAULT_COLLECTOR_ID_PATH, validation_alias="COLLECTOR_ID_PATH")
    version: str = Field(default="1.0.0", validation_alias="COLLECTOR_VERSION")

    # Sub-settings
    retry: RetrySettings = Field(default_factory=RetrySettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)

    @field_validator("server_url")
    @classmethod
    def _validate_server_url(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("SERVER_URL must be a valid http(s) URL")
        return value.strip().rstrip("/")

    @field_validator("api_key")
    @classmethod
    def _validate_api_key(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("API_KEY must not be empty")
        return value.strip()

    @field_validator("collector_name")
    @classmethod
    def _default_collector_name(cls, value: str) -> str:
        return value.strip() or get_effective_hostname()

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized == "warning":
            normalized = "warn"
        if normalized not in LOG_LEVELS:
            raise ValueError("LOG_LEVEL must be one of debug, info, warn, error")
        return normalized


def load_settings(**overrides: Any) -> CollectorSettings:
    """Load settings from the environment.

    Raises:
        ConfigurationError: If required values are missing or malformed
    """
    try:
        return CollectorSettings(**overrides)
    except ValidationError as e:
        missing = [
            str(error["loc"][0])
            for error in e.errors()
            if error["type"] == "missing"
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            ) from e
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise ConfigurationError(f"Configuration error: {problems}") from e


def describe_settings(settings: CollectorSettings) -> Dict[str, Any]:
    """Settings summary safe to log (no API key)."""
    return {
        "server_url": settings.server_url,
        "collector_name": settings.collector_name,
        "log_level": settings.log_level,
        "projects_dir": str(settings.scan.projects_dir),
        "max_retries": settings.retry.max_retries,
    }
