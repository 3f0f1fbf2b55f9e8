"""Configuration settings for monodeploy.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "monodeploy"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".cache" / "monodeploy" / "cache.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the MONODEPLOY_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="MONODEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Workspace layout
    workspace_root: Path = Field(
        default_factory=Path.cwd,
        description="Root directory of the monorepo workspace",
    )
    build_file_name: str = Field(
        default="BUILD.yaml",
        description="Name of the per-directory target declaration file",
    )
    workspace_file_name: str = Field(
        default="WORKSPACE.yaml",
        description="Name of the workspace file declaring clusters",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Directory for build logs, locks and staged bundles",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for the build cache",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Backends
    builder: Literal["docker", "digest"] = Field(
        default="docker",
        description="Image builder backend",
    )
    docker_binary: str = Field(
        default="docker",
        description="Docker (or compatible) CLI used by the docker builder",
    )
    push_images: bool = Field(
        default=False,
        description="Push built images and reference them by registry digest",
    )
    applier: Literal["kubectl", "http"] = Field(
        default="kubectl",
        description="Cluster apply backend",
    )
    kubectl_binary: str = Field(
        default="kubectl",
        description="kubectl binary used by the kubectl applier",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum concurrent image builds",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for a single image build",
    )
    apply_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout for a single cluster apply",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
