"""
Configuration management for TaxonomyHub.

Environment-based configuration using Pydantic BaseSettings. Every field can be
overridden with a ``THUB_`` prefixed environment variable or through the
``.env`` file at the project root (``THUB_ENV_FILE`` points elsewhere).
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_ENV_FILE = PROJECT_ROOT / ".env"
ENV_FILE_OVERRIDE = os.getenv("THUB_ENV_FILE")
if ENV_FILE_OVERRIDE:
    env_file_candidate = Path(ENV_FILE_OVERRIDE).expanduser()
    if not env_file_candidate.is_absolute():
        env_file_candidate = PROJECT_ROOT / env_file_candidate
    SETTINGS_ENV_FILE = env_file_candidate
else:
    SETTINGS_ENV_FILE = DEFAULT_ENV_FILE


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Engine defaults that individual pipelines may override through their
    ``configuration`` payload (timeout, chunk size, record id field).
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level (uppercase)")
    LOG_FORMAT: Literal["json", "console"] = Field(
        default="json", description="JSON lines, or human-readable console output"
    )
    LOG_FILE_DIR: Optional[str] = Field(
        default=None, description="Also write rotating log files here when set"
    )

    # Worker pool
    MAX_WORKERS: int = Field(
        default=4, ge=1, description="Maximum worker threads per run"
    )
    CHUNK_SIZE: int = Field(
        default=500,
        ge=1,
        description="Records handed to a worker at once; cancellation is checked between chunks",
    )

    # Run bookkeeping
    ERROR_LOG_LIMIT: int = Field(
        default=100,
        ge=0,
        description="Record-level failures enumerated in a run's errorLog",
    )
    RUN_TIMEOUT_SECONDS: Optional[float] = Field(
        default=None, gt=0, description="Default per-run timeout (None = unbounded)"
    )
    RECORD_ID_FIELD: str = Field(
        default="respondentId",
        description="Raw field identifying a respondent record",
    )

    # Retry policy for infrastructure collaborators
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    RETRY_BACKOFF_BASE: float = Field(default=0.5, ge=0.0, le=10.0)
    RETRY_BACKOFF_CAP: float = Field(default=30.0, ge=0.0)
    RETRYABLE_EXCEPTIONS: Tuple[str, ...] = Field(
        default=(
            "builtins.ConnectionError",
            "builtins.ConnectionResetError",
            "builtins.BrokenPipeError",
            "builtins.TimeoutError",
            "sqlalchemy.exc.OperationalError",
            "sqlalchemy.exc.InterfaceError",
        ),
        description="Exception class paths eligible for retry",
    )

    # Optional durable error log
    ERROR_LOG_DATABASE_URL: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL for the error_log table (in-memory when unset)",
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported LOG_LEVEL: {v}")
        return level

    model_config = SettingsConfigDict(
        env_prefix="THUB_",
        env_file=str(SETTINGS_ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance with loaded configuration
    """
    return Settings()
