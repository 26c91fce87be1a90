"""Storage layer for pins, planning sessions and tree specs."""

from branchtree.storage.config import StorageConfig
from branchtree.storage.state import BranchTreeState, StateStore, normalize_path

__all__ = [
    "StorageConfig",
    "StateStore",
    "BranchTreeState",
    "normalize_path",
]
