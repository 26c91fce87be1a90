"""Snapshot cache and the background scan pipeline."""

from branchtree.scanning.cache import CachedSnapshot, SnapshotCache
from branchtree.scanning.delta import SnapshotDelta, compute_delta
from branchtree.scanning.manager import ScanManager, ScanTicket

__all__ = [
    "SnapshotCache",
    "CachedSnapshot",
    "ScanManager",
    "ScanTicket",
    "SnapshotDelta",
    "compute_delta",
]
