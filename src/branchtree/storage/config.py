"""State store configuration."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from branchtree.models.config import default_state_dir


class StorageConfig(BaseSettings):
    """Configuration for the persisted state file.

    Settings can be loaded from environment variables or .env file.
    All settings are prefixed with BRANCHTREE_STORAGE_ (e.g., BRANCHTREE_STORAGE_STATE_DIR).
    """

    model_config = SettingsConfigDict(
        env_prefix="BRANCHTREE_STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_dir: Path = Field(
        default_factory=default_state_dir,
        description="Directory holding the state file",
    )

    state_file_name: str = Field(
        default="state.json",
        description="Name of the JSON state file inside state_dir",
    )

    @property
    def state_file(self) -> Path:
        """Full path of the state file."""
        return self.state_dir / self.state_file_name

    def ensure_state_dir(self) -> None:
        """Ensure the state directory exists."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
