"""Configuration settings for sky1_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_APT_URL = "https://sky1-linux.github.io/apt"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SKY1_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="SKY1_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    build_dir: Path = Field(
        default_factory=Path.cwd,
        description="Root of the live-build tree (contains config/)",
    )

    # Repository
    apt_url: str = Field(
        default=DEFAULT_APT_URL,
        description="Base URL of the Sky1 apt repository",
    )
    apt_suite: str = Field(
        default="sid",
        description="Suite of the Sky1 apt repository",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    force_upgrade: bool = Field(
        default=False,
        description="Upgrade the chroot even when serious bugs are reported",
    )
    skip_compress: bool = Field(
        default=False,
        description="Skip compression of disk images",
    )

    # Timeouts (in seconds)
    stage_timeout: int = Field(
        default=14400,
        ge=60,
        description="Timeout for live-build stages",
    )
    command_timeout: int = Field(
        default=3600,
        ge=30,
        description="Timeout for commands run inside the chroot",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

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


__all__ = ["DEFAULT_APT_URL", "Settings", "get_settings", "print_settings_json"]
