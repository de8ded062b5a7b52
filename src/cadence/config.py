"""Configuration management for cadence."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Cadence data directory
CADENCE_DIR = Path.home() / ".cadence"
CADENCE_ENV_FILE = CADENCE_DIR / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CADENCE_",
        # Later files override earlier ones:
        # 1. ~/.cadence/.env (user config)
        # 2. .env in current directory (project-specific override)
        env_file=(str(CADENCE_ENV_FILE), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    data_dir: Path = Field(
        default=CADENCE_DIR,
        description="Directory for the job store, locks and one-shot records",
    )
    jobs_path: Path | None = Field(
        default=None,
        description="Path of the job store (default: <data_dir>/jobs.json)",
    )
    runtime_dir: Path | None = Field(
        default=None,
        description="Directory for one-shot records and run locks (default: <data_dir>/run)",
    )
    timezone: str | None = Field(
        default=None,
        description="IANA timezone for wall-clock times (default: system local time)",
    )

    # Dispatch settings
    dispatch_timeout_seconds: float | None = Field(
        default=None,
        description="Kill a job's command after this many seconds (default: no limit)",
    )
    context_env_prefix: str = Field(
        default="JOB_",
        description="Prefix for environment variables built from a job's context",
    )

    # Storage settings
    lock_timeout_seconds: float = Field(
        default=10.0,
        description="Seconds to wait for the job store lock",
    )

    def get_jobs_path(self) -> Path:
        """Get the job store path, using default if not set."""
        if self.jobs_path:
            return self.jobs_path
        return self.data_dir / "jobs.json"

    def get_runtime_dir(self) -> Path:
        """Get the runtime directory, using default if not set."""
        if self.runtime_dir:
            return self.runtime_dir
        return self.data_dir / "run"


# Global settings instance
settings = Settings()
