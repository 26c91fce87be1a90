"""Data models for branch topology tracking."""

from branchtree.models.config import Settings
from branchtree.models.design import (
    BranchNamingRule,
    DesignedEdge,
    PlanningSession,
    TaskNode,
    TreeSpec,
    TreeSpecEdge,
    TreeSpecNode,
)
from branchtree.models.repository import RepositoryPin
from branchtree.models.snapshot import (
    AheadBehind,
    BranchNode,
    BranchRef,
    InferredEdge,
    ObservedSnapshot,
    PRInfo,
    RestartInfo,
    ScanWarning,
    WorktreeInfo,
)

__all__ = [
    "AheadBehind",
    "BranchNode",
    "BranchRef",
    "InferredEdge",
    "ObservedSnapshot",
    "PRInfo",
    "RestartInfo",
    "ScanWarning",
    "WorktreeInfo",
    "PlanningSession",
    "TaskNode",
    "DesignedEdge",
    "TreeSpec",
    "TreeSpecNode",
    "TreeSpecEdge",
    "BranchNamingRule",
    "RepositoryPin",
    "Settings",
]
