"""Versioned snapshot cache with a per-repository scan guard."""

import threading
from dataclasses import dataclass
from typing import Optional, Set

import structlog
from pydantic import ValidationError as PydanticValidationError

from branchtree.models.snapshot import ObservedSnapshot
from branchtree.storage.state import StateStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CachedSnapshot:
    """The last finished snapshot of a pin and its version."""

    snapshot: ObservedSnapshot
    version: int


class SnapshotCache:
    """Holds the last finished scan per pin.

    Scans are bracketed by ``start_scan`` and ``finish_scan`` (or
    ``abandon_scan`` when no snapshot could be produced). At most one scan
    per repository id is in flight; reads never wait for it.
    """

    def __init__(self, store: StateStore):
        self.store = store
        self._scanning: Set[str] = set()
        self._guard = threading.Lock()

    def start_scan(self, repo_id: str) -> bool:
        """Mark a scan in progress.

        Returns:
            True if the caller now owns the scan, False if one is already running
        """
        with self._guard:
            if repo_id in self._scanning:
                logger.debug("scan_already_running", repo_id=repo_id)
                return False
            self._scanning.add(repo_id)
            return True

    def is_scanning(self, repo_id: str) -> bool:
        with self._guard:
            return repo_id in self._scanning

    def finish_scan(self, repo_id: str, snapshot: ObservedSnapshot, *, pin_id: int) -> int:
        """Replace the cached snapshot and release the scan guard.

        Returns:
            The new version (previous version + 1)
        """
        try:
            version = self.store.save_snapshot(pin_id, snapshot)
        finally:
            self._release(repo_id)
        logger.info("snapshot_cached", repo_id=repo_id, pin_id=pin_id, version=version)
        return version

    def abandon_scan(self, repo_id: str) -> None:
        """Release the scan guard without touching the cached snapshot."""
        self._release(repo_id)

    def read(self, pin_id: int) -> Optional[CachedSnapshot]:
        """Return the last finished snapshot of a pin.

        Returns:
            CachedSnapshot, or None when the pin has not been scanned yet

        Raises:
            NotFoundError: If the pin does not exist
        """
        pin = self.store.get_pin(pin_id)
        if not pin.cached_snapshot_json:
            return None
        try:
            snapshot = ObservedSnapshot.model_validate_json(pin.cached_snapshot_json)
        except PydanticValidationError as e:
            logger.warning(
                "cached_snapshot_rejected",
                pin_id=pin_id,
                version=pin.cached_snapshot_version,
                error=str(e),
            )
            return None
        return CachedSnapshot(snapshot=snapshot, version=pin.cached_snapshot_version)

    def _release(self, repo_id: str) -> None:
        with self._guard:
            self._scanning.discard(repo_id)
