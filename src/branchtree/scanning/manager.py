"""Scan pipeline: collectors, inference, annotation and background scheduling."""

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import combinations
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

import structlog

from branchtree.errors import ScanFailedError
from branchtree.extraction.observer import RepositoryObserver, choose_default_branch
from branchtree.extraction.runner import CommandRunner, ProcessRunner
from branchtree.extraction.working_copy import open_working_copy
from branchtree.locks import RepositoryLocks
from branchtree.models.config import Settings
from branchtree.models.design import BranchNamingRule, TreeSpec
from branchtree.models.repository import RepositoryPin
from branchtree.models.snapshot import (
    AheadBehind,
    BranchNode,
    BranchRef,
    ObservedSnapshot,
    PRInfo,
    ScanWarning,
    WorktreeInfo,
)
from branchtree.notify import SCAN_COMPLETED, SCAN_FAILED, Notifier
from branchtree.scanning.annotations import (
    branch_warnings,
    node_badges,
    restart_info,
    worktree_warnings,
)
from branchtree.scanning.cache import CachedSnapshot, SnapshotCache
from branchtree.scanning.delta import compute_delta
from branchtree.storage.state import StateStore
from branchtree.topology.inference import TopologyInferencer
from branchtree.topology.overlay import apply_overlay

logger = structlog.get_logger(__name__)


@dataclass
class ScanTicket:
    """Acknowledgement returned when a scan is requested."""

    started: bool
    repo_id: str
    pin_id: int
    task: Optional["asyncio.Task[CachedSnapshot]"] = None

    def to_payload(self) -> Dict[str, Any]:
        return {"started": self.started, "repoId": self.repo_id}


def _collector_failed(collector: str, error: BaseException, **meta: Any) -> ScanWarning:
    return ScanWarning(
        code="COLLECTOR_FAILED",
        message=f"Could not read {collector.replace('_', ' ')}: {error}",
        meta={"collector": collector, **meta},
    )


class ScanManager:
    """Runs scans in the background, at most one per repository at a time.

    Collectors run concurrently on a thread pool; the inferencer starts once
    every collector has finished or failed. A failing collector degrades its
    field to empty and adds a COLLECTOR_FAILED warning.
    """

    def __init__(
        self,
        store: StateStore,
        settings: Optional[Settings] = None,
        runner: Optional[CommandRunner] = None,
        cache: Optional[SnapshotCache] = None,
        notifier: Optional[Notifier] = None,
        locks: Optional[RepositoryLocks] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """Initialize the scan manager.

        Args:
            store: Persisted state
            settings: Application settings
            runner: Command runner shared by every observer
            cache: Snapshot cache (defaults to one over ``store``)
            notifier: Side channel for scan events
            locks: Per-repository locks shared with branch operations
            executor: Thread pool for blocking collectors
        """
        self.store = store
        self.settings = settings or Settings()
        self.runner = runner or ProcessRunner(timeout=self.settings.command_timeout)
        self.cache = cache or SnapshotCache(store)
        self.notifier = notifier or Notifier()
        self.locks = locks or RepositoryLocks()
        self.executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="branchtree-scan"
        )
        self.inferencer = TopologyInferencer(
            high_confidence_margin=self.settings.high_confidence_margin,
            high_confidence_max_behind=self.settings.high_confidence_max_behind,
        )
        self._tasks: Set[asyncio.Task] = set()

    def observer_for(self, path: Union[str, Path]) -> RepositoryObserver:
        return RepositoryObserver(Path(path), runner=self.runner, settings=self.settings)

    async def run_blocking(self, fn: Callable, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking call on the scan thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args, **kwargs))

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    async def ensure_pin(self, local_path: Union[str, Path, None]) -> RepositoryPin:
        """Validate a working-copy path and register it if it is new.

        Raises:
            ValidationError: If the path is missing or not a git working copy
            NotFoundError: If the path does not exist
        """
        path = open_working_copy(local_path)
        pin = self.store.get_pin_by_path(path)
        if pin is not None:
            return pin
        repo_id = await self.run_blocking(self.observer_for(path).repo_identifier)
        return self.store.register_pin(path, repo_id)

    async def trigger_scan(
        self,
        local_path: Union[str, Path, None],
        active_path: Optional[Union[str, Path]] = None,
    ) -> ScanTicket:
        """Start a background scan unless one is already running for the repository.

        Returns immediately. Input errors are raised before any background
        work is scheduled.
        """
        pin = await self.ensure_pin(local_path)

        if not self.cache.start_scan(pin.repo_id):
            logger.info("scan_coalesced", repo_id=pin.repo_id, pin_id=pin.id)
            return ScanTicket(started=False, repo_id=pin.repo_id, pin_id=pin.id)

        task = asyncio.create_task(
            self._scan(pin, Path(active_path) if active_path else None),
            name=f"scan:{pin.repo_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        logger.info("scan_started", repo_id=pin.repo_id, pin_id=pin.id)
        return ScanTicket(started=True, repo_id=pin.repo_id, pin_id=pin.id, task=task)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("scan_task_failed", task=task.get_name())

    def project(self, snapshot: ObservedSnapshot) -> ObservedSnapshot:
        """Apply confirmed planning sessions and the TreeSpec of the snapshot's base branch."""
        sessions = self.store.list_confirmed_sessions(snapshot.repo_id, snapshot.base_branch)
        tree_spec = self.store.get_tree_spec(snapshot.repo_id, snapshot.base_branch)
        return apply_overlay(snapshot, sessions, tree_spec)

    async def wait_idle(self) -> None:
        """Wait for every running background scan to settle."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _scan(self, pin: RepositoryPin, active_path: Optional[Path]) -> CachedSnapshot:
        repo_id = pin.repo_id
        try:
            async with self.locks.get(pin.local_path):
                snapshot = await self.build_snapshot(pin, active_path)
        except Exception as e:
            self.cache.abandon_scan(repo_id)
            logger.error("scan_failed", repo_id=repo_id, pin_id=pin.id, error=str(e))
            await self.notifier.broadcast(SCAN_FAILED, repo_id, pinId=pin.id, error=str(e))
            raise ScanFailedError(f"Scan of {repo_id} failed: {e}") from e

        try:
            previous = self.cache.read(pin.id)
        except Exception:
            self.cache.abandon_scan(repo_id)
            raise
        version = self.cache.finish_scan(repo_id, snapshot, pin_id=pin.id)
        delta = compute_delta(previous.snapshot if previous else None, snapshot)

        logger.info(
            "scan_finished",
            repo_id=repo_id,
            pin_id=pin.id,
            version=version,
            branches=len(snapshot.branches),
            warnings=len(snapshot.warnings),
            delta=delta.summary,
        )
        await self.notifier.broadcast(
            SCAN_COMPLETED,
            repo_id,
            pinId=pin.id,
            version=version,
            snapshot=self.project(snapshot).to_payload(),
            delta=delta.to_payload(),
        )
        return CachedSnapshot(snapshot=snapshot, version=version)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def build_snapshot(
        self, pin: RepositoryPin, active_path: Optional[Path] = None
    ) -> ObservedSnapshot:
        """Run every collector and assemble a snapshot for a pin."""
        observer = self.observer_for(pin.local_path)
        warnings: List[ScanWarning] = []

        if self.settings.fetch_before_scan:
            try:
                await self.run_blocking(observer.fetch)
            except Exception as e:
                warnings.append(_collector_failed("fetch", e))

        collectors = {
            "branches": (observer.branches, []),
            "default_branch": (observer.remote_default_branch, None),
            "worktrees": (functools.partial(observer.worktrees, active_path), []),
            "pull_requests": (observer.pull_requests, []),
        }
        results = await asyncio.gather(
            *(self.run_blocking(fn) for fn, _ in collectors.values()), return_exceptions=True
        )

        observed: Dict[str, Any] = {}
        for (name, (_, empty)), result in zip(collectors.items(), results):
            if isinstance(result, Exception):
                logger.warning("collector_failed", repo_id=pin.repo_id, collector=name, error=str(result))
                warnings.append(_collector_failed(name, result))
                observed[name] = empty
            else:
                observed[name] = result

        branches: List[BranchRef] = observed["branches"]
        worktrees: List[WorktreeInfo] = observed["worktrees"]
        prs: List[PRInfo] = observed["pull_requests"]
        names = sorted({b.name for b in branches})

        default_branch = choose_default_branch(observed["default_branch"], names)
        base_branch = pin.base_branch or default_branch or "main"
        default_branch = default_branch or base_branch
        if base_branch in names:
            root: Optional[str] = base_branch
        elif default_branch in names:
            root = default_branch
        else:
            root = None

        distances, remote_counts, descriptions = await self._branch_facts(
            observer, names, warnings, pin.repo_id
        )

        result = self.inferencer.infer(names, root, distances)

        branch_by_name = {b.name: b for b in branches}
        pr_by_branch = {pr.branch: pr for pr in prs}
        worktree_by_branch: Dict[str, WorktreeInfo] = {}
        for wt in worktrees:
            if wt.branch and not wt.prunable and wt.branch not in worktree_by_branch:
                worktree_by_branch[wt.branch] = wt

        nodes = []
        for name in names:
            ref = branch_by_name[name]
            remote = remote_counts.get(name)
            no_upstream = name in remote_counts and remote is None
            pr = pr_by_branch.get(name)
            worktree = worktree_by_branch.get(name)
            nodes.append(
                BranchNode(
                    branch_name=name,
                    badges=node_badges(pr, worktree, no_upstream),
                    commit=ref.commit,
                    last_commit_at=ref.last_commit_at,
                    ahead_behind=result.ahead_behind.get(name),
                    remote_ahead_behind=remote,
                    no_upstream=no_upstream,
                    pr=pr,
                    worktree=worktree,
                    description=descriptions.get(name),
                )
            )

        naming_rule: Optional[BranchNamingRule] = self.store.get_naming_rule(pin.repo_id)
        tree_spec: Optional[TreeSpec] = self.store.get_tree_spec(pin.repo_id, base_branch)
        warnings += branch_warnings(
            nodes, result.edges, self.settings, root=root, naming_rule=naming_rule, tree_spec=tree_spec
        )
        warnings += worktree_warnings(worktrees, names)

        active = next((wt for wt in worktrees if wt.is_active and not wt.prunable), None)
        restart = restart_info(active, nodes, warnings, naming_rule) if active else None

        return ObservedSnapshot(
            repo_id=pin.repo_id,
            default_branch=default_branch,
            base_branch=base_branch,
            branches=names,
            nodes=nodes,
            edges=result.edges,
            prs=prs,
            worktrees=worktrees,
            warnings=warnings,
            restart=restart,
            scanned_at=datetime.now(timezone.utc),
        )

    async def _branch_facts(
        self,
        observer: RepositoryObserver,
        names: List[str],
        warnings: List[ScanWarning],
        repo_id: str,
    ) -> Tuple[Dict[Tuple[str, str], AheadBehind], Dict[str, Optional[AheadBehind]], Dict[str, str]]:
        """Pairwise distances, remote counts and descriptions, gathered concurrently."""
        pairs = list(combinations(names, 2))
        pair_results, remote_results, descriptions = await asyncio.gather(
            asyncio.gather(
                *(self.run_blocking(observer.ahead_behind, a, b) for a, b in pairs),
                return_exceptions=True,
            ),
            asyncio.gather(
                *(self.run_blocking(observer.remote_ahead_behind, name) for name in names),
                return_exceptions=True,
            ),
            self.run_blocking(observer.branch_descriptions, names),
            return_exceptions=True,
        )

        distances: Dict[Tuple[str, str], AheadBehind] = {}
        failed_pairs = []
        for (a, b), counts in zip(pairs, pair_results):
            if isinstance(counts, Exception):
                failed_pairs.append(f"{a}...{b}")
                continue
            # One rev-list answers both directions.
            distances[(a, b)] = counts
            distances[(b, a)] = AheadBehind(ahead=counts.behind, behind=counts.ahead)
        if failed_pairs:
            logger.warning("collector_failed", repo_id=repo_id, collector="ahead_behind", pairs=len(failed_pairs))
            warnings.append(
                ScanWarning(
                    code="COLLECTOR_FAILED",
                    message=f"Could not compare {len(failed_pairs)} branch pair(s)",
                    meta={"collector": "ahead_behind", "pairs": failed_pairs},
                )
            )

        remote_counts: Dict[str, Optional[AheadBehind]] = {}
        for name, counts in zip(names, remote_results):
            if isinstance(counts, Exception):
                warnings.append(_collector_failed("remote_ahead_behind", counts, branch=name))
                continue
            remote_counts[name] = counts

        if isinstance(descriptions, Exception):
            warnings.append(_collector_failed("branch_descriptions", descriptions))
            descriptions = {}

        return distances, remote_counts, descriptions

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)
