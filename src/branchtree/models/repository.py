"""Data model for a registered working copy."""

from datetime import datetime
from typing import Optional

from pydantic import ConfigDict, Field

from branchtree.models.snapshot import PayloadModel


class RepositoryPin(PayloadModel):
    """A user-registered local working copy of a repository.

    The cached snapshot fields are written only by a finished scan.
    """

    id: int = Field(..., description="Integer pin id")
    repo_id: str = Field(..., description="Repository identifier (owner/name)")
    local_path: str = Field(..., description="Absolute path of the working copy")
    label: Optional[str] = Field(None, description="Optional display name")
    base_branch: Optional[str] = Field(None, description="User-selected base branch")
    last_used_at: datetime = Field(default_factory=datetime.now)
    created_at: datetime = Field(default_factory=datetime.now)
    cached_snapshot_json: Optional[str] = Field(None, description="Serialized ObservedSnapshot")
    cached_snapshot_version: int = Field(0, ge=0, description="Bumped by every finished scan")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": 1,
                "repoId": "owner/repo",
                "localPath": "/home/me/src/repo",
                "baseBranch": "main",
                "cachedSnapshotVersion": 3,
            }
        }
    )
