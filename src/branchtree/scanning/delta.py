"""Differences between two consecutive snapshots of a repository."""

from typing import List, Optional

from pydantic import Field

from branchtree.models.snapshot import ObservedSnapshot, PayloadModel


class SnapshotDelta(PayloadModel):
    """What changed between the previous and the new snapshot."""

    new_branches: List[str] = Field(default_factory=list)
    removed_branches: List[str] = Field(default_factory=list)
    reparented_edges: int = Field(0, description="Children whose parent changed")
    warnings_delta: int = Field(0, description="New warning count minus previous count")

    @property
    def has_changes(self) -> bool:
        return bool(
            self.new_branches
            or self.removed_branches
            or self.reparented_edges
            or self.warnings_delta
        )

    @property
    def summary(self) -> str:
        """One-line description, e.g. ``+2 branches, 1 reparented``."""
        if not self.has_changes:
            return "No changes"

        parts = []
        if self.new_branches:
            parts.append(f"+{len(self.new_branches)} branch{'es' if len(self.new_branches) != 1 else ''}")
        if self.removed_branches:
            parts.append(
                f"-{len(self.removed_branches)} branch{'es' if len(self.removed_branches) != 1 else ''}"
            )
        if self.reparented_edges:
            parts.append(f"{self.reparented_edges} reparented")
        if self.warnings_delta > 0:
            parts.append(f"+{self.warnings_delta} warnings")
        elif self.warnings_delta < 0:
            parts.append(f"{self.warnings_delta} warnings")
        return ", ".join(parts)

    def to_payload(self):
        payload = super().to_payload()
        payload["hasChanges"] = self.has_changes
        payload["summary"] = self.summary
        return payload


def compute_delta(previous: Optional[ObservedSnapshot], current: ObservedSnapshot) -> SnapshotDelta:
    """Compare two snapshots; with no previous snapshot every branch is new."""
    if previous is None:
        return SnapshotDelta(
            new_branches=sorted(current.branches),
            warnings_delta=len(current.warnings),
        )

    before = set(previous.branches)
    after = set(current.branches)

    old_parents = previous.parent_map()
    new_parents = current.parent_map()
    reparented = sum(
        1
        for child, parent in new_parents.items()
        if child in old_parents and old_parents[child] != parent
    )

    return SnapshotDelta(
        new_branches=sorted(after - before),
        removed_branches=sorted(before - after),
        reparented_edges=reparented,
        warnings_delta=len(current.warnings) - len(previous.warnings),
    )
