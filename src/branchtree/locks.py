"""Per-repository mutual exclusion for scans and branch mutations."""

import asyncio
from pathlib import Path
from typing import Dict, Union

from branchtree.storage.state import normalize_path


class RepositoryLocks:
    """One asyncio lock per working copy, keyed by resolved path."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, local_path: Union[str, Path]) -> asyncio.Lock:
        key = normalize_path(local_path)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, local_path: Union[str, Path]) -> bool:
        lock = self._locks.get(normalize_path(local_path))
        return lock is not None and lock.locked()
