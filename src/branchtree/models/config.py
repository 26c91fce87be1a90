"""Configuration models."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings are prefixed with BRANCHTREE_ (e.g., BRANCHTREE_COMMAND_TIMEOUT).
    """

    model_config = SettingsConfigDict(
        env_prefix="BRANCHTREE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # External tools
    git_path: str = Field("git", description="git executable")
    gh_path: str = Field("gh", description="GitHub CLI executable")
    remote_name: str = Field("origin", description="Remote used for upstream and PR lookups")
    command_timeout: float = Field(30.0, gt=0, description="Timeout for each external command (seconds)")

    # Scanning
    fetch_before_scan: bool = Field(False, description="Run git fetch --prune before scanning")
    max_workers: int = Field(4, ge=1, description="Concurrent external commands during a scan")
    pr_limit: int = Field(50, ge=1, description="Maximum pull requests to list")
    heartbeat_ttl_seconds: int = Field(30, description="Age after which a worktree heartbeat is stale")

    # Inference
    high_confidence_margin: int = Field(
        1, ge=0, description="How much closer the best candidate must be than the runner-up"
    )
    high_confidence_max_behind: int = Field(
        0, ge=0, description="Largest behind count still treated as a fast-forward pattern"
    )

    # Warnings
    behind_warn_threshold: int = Field(1, description="Behind count that raises a warning")
    behind_error_threshold: int = Field(5, description="Behind count that raises an error")

    # Logging
    log_level: str = "INFO"


def default_state_dir() -> Path:
    return Path.home() / ".branchtree"
