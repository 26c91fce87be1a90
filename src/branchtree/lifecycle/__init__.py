"""Branch lifecycle operations."""

from branchtree.lifecycle.branches import (
    BranchLifecycle,
    CreateResult,
    DeleteCheck,
    DeleteResult,
    PushResult,
    RebaseResult,
)
from branchtree.lifecycle.reparent import ReparentedEdge, reparent_tree_spec

__all__ = [
    "BranchLifecycle",
    "CreateResult",
    "PushResult",
    "RebaseResult",
    "DeleteCheck",
    "DeleteResult",
    "ReparentedEdge",
    "reparent_tree_spec",
]
