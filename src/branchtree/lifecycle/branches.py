"""Branch lifecycle operations: create, push, rebase, check-deletable, delete.

Every mutating operation holds the repository lock for its whole git
sequence, so it never interleaves with another mutation or with the
collection phase of a scan.
"""

import re
from pathlib import Path
from typing import List, Literal, Optional, Union

import structlog
from pydantic import Field

from branchtree.errors import CommandError, ConflictError, NotFoundError, ValidationError
from branchtree.extraction.observer import RepositoryObserver
from branchtree.lifecycle.reparent import ReparentedEdge, reparent_tree_spec
from branchtree.models.repository import RepositoryPin
from branchtree.models.snapshot import PayloadModel
from branchtree.notify import BRANCH_CREATED, BRANCH_DELETED, BRANCH_PUSHED, BRANCH_REBASED
from branchtree.scanning.annotations import compile_naming_patterns, matches_naming_rule
from branchtree.scanning.manager import ScanManager

logger = structlog.get_logger(__name__)

BRANCH_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9/_-]+$")

DeleteReason = Literal["currently_checked_out", "has_commits", "pushed_to_remote", "branch_not_found"]

PathArg = Union[str, Path]


class CreateResult(PayloadModel):
    success: bool = True
    branch_name: str
    base_branch: str


class PushResult(PayloadModel):
    success: bool = True
    branch_name: str


class RebaseResult(PayloadModel):
    success: bool = True
    branch_name: str
    onto: str = Field(..., description="Ref the branch was rebased onto")


class DeleteCheck(PayloadModel):
    """Whether a branch can be deleted, and why not."""

    deletable: bool
    reason: Optional[DeleteReason] = None
    parent: Optional[str] = Field(None, description="Parent the commit check compared against")


class DeleteResult(PayloadModel):
    success: bool = True
    branch_name: str
    reparented_edges: List[ReparentedEdge] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


def require(**fields: Optional[str]) -> None:
    """Raise ValidationError naming the first missing field."""
    for name, value in fields.items():
        if value is None or not str(value).strip():
            raise ValidationError(f"{name} is required")


class BranchLifecycle:
    """Mutating branch operations on registered working copies."""

    def __init__(self, scans: ScanManager):
        """Initialize branch operations.

        Args:
            scans: Scan manager whose store, locks, executor and notifier are shared
        """
        self.scans = scans
        self.store = scans.store
        self.settings = scans.settings
        self.notifier = scans.notifier

    @property
    def remote(self) -> str:
        return self.settings.remote_name

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_branch(
        self, local_path: Optional[PathArg], branch_name: Optional[str], base_branch: Optional[str]
    ) -> CreateResult:
        """Create ``branch_name`` from ``base_branch``.

        Raises:
            ValidationError: Missing input, malformed name or naming-rule violation
            ConflictError: If the branch already exists
            NotFoundError: If the base branch does not exist
        """
        require(localPath=local_path, branchName=branch_name, baseBranch=base_branch)
        pin = await self.scans.ensure_pin(local_path)
        self._validate_name(pin, branch_name)

        observer = self.scans.observer_for(pin.local_path)
        async with self.scans.locks.get(pin.local_path):
            await self.scans.run_blocking(self._create, observer, branch_name, base_branch)

        logger.info("branch_created", repo_id=pin.repo_id, branch=branch_name, base=base_branch)
        await self.notifier.broadcast(
            BRANCH_CREATED, pin.repo_id, branchName=branch_name, baseBranch=base_branch
        )
        return CreateResult(branch_name=branch_name, base_branch=base_branch)

    def _validate_name(self, pin: RepositoryPin, branch_name: str) -> None:
        if not BRANCH_NAME_PATTERN.match(branch_name):
            raise ValidationError(f"Invalid branch name: {branch_name}")
        patterns = compile_naming_patterns(self.store.get_naming_rule(pin.repo_id))
        if not matches_naming_rule(branch_name, patterns):
            raise ValidationError(
                f"Invalid branch name: {branch_name} does not follow the naming convention"
            )

    def _create(self, observer: RepositoryObserver, branch_name: str, base_branch: str) -> None:
        result = observer.git("check-ref-format", "--branch", branch_name, check=False)
        if not result.ok:
            raise ValidationError(f"Invalid branch name: {branch_name}")
        if observer.branch_exists(branch_name):
            raise ConflictError(f"Branch already exists: {branch_name}")
        if not observer.ref_exists(base_branch):
            raise NotFoundError(f"Base branch not found: {base_branch}")
        observer.git("branch", branch_name, base_branch)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push_branch(
        self,
        local_path: Optional[PathArg],
        branch_name: Optional[str],
        force: bool = False,
        worktree_path: Optional[PathArg] = None,
    ) -> PushResult:
        """Push a branch and set its upstream.

        A forced push uses ``--force-with-lease`` so it fails if the remote
        tip moved since it was last fetched.

        Raises:
            ConflictError: If the remote rejected the push (message is git's own text)
            CommandError: If the push failed for another reason
        """
        require(localPath=local_path, branchName=branch_name)
        pin = await self.scans.ensure_pin(local_path)
        cwd = Path(worktree_path) if worktree_path else Path(pin.local_path)
        if not cwd.exists():
            raise NotFoundError(f"Worktree path does not exist: {cwd}")

        observer = self.scans.observer_for(pin.local_path)
        args = ["push"]
        if force:
            args.append("--force-with-lease")
        args += ["-u", self.remote, branch_name]

        async with self.scans.locks.get(pin.local_path):
            try:
                await self.scans.run_blocking(observer.git, *args, cwd=cwd)
            except CommandError as e:
                logger.warning("push_failed", repo_id=pin.repo_id, branch=branch_name, error=e.detail)
                if "rejected" in e.detail or "stale info" in e.detail:
                    raise ConflictError(e.detail) from e
                raise

        logger.info("branch_pushed", repo_id=pin.repo_id, branch=branch_name, force=force)
        await self.notifier.broadcast(BRANCH_PUSHED, pin.repo_id, branchName=branch_name, force=force)
        return PushResult(branch_name=branch_name)

    # ------------------------------------------------------------------
    # Rebase
    # ------------------------------------------------------------------

    async def rebase_branch(
        self,
        local_path: Optional[PathArg],
        branch_name: Optional[str],
        parent_branch: Optional[str],
        worktree_path: Optional[PathArg] = None,
    ) -> RebaseResult:
        """Rebase a branch onto its parent.

        Refuses to start on a dirty working tree. On a conflict the rebase is
        aborted and the original checkout restored before ConflictError is
        raised.
        """
        require(localPath=local_path, branchName=branch_name, parentBranch=parent_branch)
        pin = await self.scans.ensure_pin(local_path)
        cwd = Path(worktree_path) if worktree_path else Path(pin.local_path)
        observer = self.scans.observer_for(pin.local_path)

        async with self.scans.locks.get(pin.local_path):
            onto = await self.scans.run_blocking(
                self._rebase, observer, cwd, branch_name, parent_branch
            )

        logger.info("branch_rebased", repo_id=pin.repo_id, branch=branch_name, onto=onto)
        await self.notifier.broadcast(
            BRANCH_REBASED, pin.repo_id, branchName=branch_name, parentBranch=parent_branch
        )
        return RebaseResult(branch_name=branch_name, onto=onto)

    def _rebase(self, observer: RepositoryObserver, cwd: Path, branch: str, parent: str) -> str:
        original = observer.current_branch(cwd)
        if observer.is_dirty(cwd):
            raise ConflictError(f"Cannot rebase {branch}: working tree has uncommitted changes")

        try:
            observer.git("fetch", self.remote, cwd=cwd)
        except CommandError as e:
            logger.warning("rebase_fetch_failed", branch=branch, error=e.detail)

        remote_parent = f"{self.remote}/{parent}"
        if observer.ref_exists(remote_parent):
            onto = remote_parent
        elif observer.ref_exists(parent):
            onto = parent
        else:
            raise NotFoundError(f"Parent branch not found: {parent}")

        if original != branch:
            observer.git("checkout", branch, cwd=cwd)

        try:
            observer.git("rebase", onto, cwd=cwd)
        except CommandError as e:
            observer.git("rebase", "--abort", cwd=cwd, check=False)
            if original != branch:
                observer.git("checkout", original, cwd=cwd, check=False)
            logger.warning("rebase_aborted", branch=branch, onto=onto, error=e.detail)
            # git reports CONFLICT lines on stdout and the failure on stderr
            if "conflict" in f"{e.stdout}\n{e.stderr}".lower():
                raise ConflictError(
                    f"Rebase of {branch} onto {onto} hit a conflict and was aborted: {e.detail}"
                ) from e
            raise
        return onto

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def check_deletable(
        self, local_path: Optional[PathArg], branch_name: Optional[str]
    ) -> DeleteCheck:
        """Report whether a branch can be deleted, with a reason code when not."""
        require(localPath=local_path, branchName=branch_name)
        pin = await self.scans.ensure_pin(local_path)
        observer = self.scans.observer_for(pin.local_path)
        parent = self._designed_parent(pin, branch_name)
        return await self.scans.run_blocking(self._check, observer, branch_name, parent)

    def _designed_parent(self, pin: RepositoryPin, branch: str) -> str:
        """Parent used for the unmerged-commit check: tree spec, then last scan, then base."""
        for spec in self.store.list_tree_specs(pin.repo_id):
            parent = spec.parent_map().get(branch)
            if parent:
                return parent
        cached = self.scans.cache.read(pin.id)
        if cached is not None:
            edge = cached.snapshot.edge_for(branch)
            if edge is not None:
                return edge.parent
            return cached.snapshot.base_branch
        return pin.base_branch or "main"

    def _check(self, observer: RepositoryObserver, branch: str, parent: str) -> DeleteCheck:
        if not observer.branch_exists(branch):
            return DeleteCheck(deletable=False, reason="branch_not_found")
        if observer.current_branch() == branch:
            return DeleteCheck(deletable=False, reason="currently_checked_out")
        if observer.remote_has_branch(branch):
            return DeleteCheck(deletable=False, reason="pushed_to_remote")
        if observer.ref_exists(parent) and observer.commits_not_in(branch, parent):
            return DeleteCheck(deletable=False, reason="has_commits", parent=parent)
        return DeleteCheck(deletable=True, parent=parent)

    async def delete_branch(
        self,
        local_path: Optional[PathArg],
        branch_name: Optional[str],
        force: bool = False,
        delete_remote: bool = False,
    ) -> DeleteResult:
        """Delete a branch and re-parent its children in every tree spec of the repository.

        Tree specs are rewritten only after git deleted the branch; if the git
        deletion fails nothing is changed.

        Raises:
            NotFoundError: If the branch does not exist
            ConflictError: If the branch is checked out
            CommandError: If git refused the deletion
        """
        require(localPath=local_path, branchName=branch_name)
        pin = await self.scans.ensure_pin(local_path)
        observer = self.scans.observer_for(pin.local_path)

        async with self.scans.locks.get(pin.local_path):
            warnings = await self.scans.run_blocking(
                self._delete, observer, branch_name, force, delete_remote
            )

            reparented: List[ReparentedEdge] = []
            rewritten = []
            for spec in self.store.list_tree_specs(pin.repo_id):
                new_spec, changed = reparent_tree_spec(spec, branch_name)
                if new_spec.edges != spec.edges or new_spec.nodes != spec.nodes:
                    rewritten.append(new_spec)
                    reparented.extend(changed)
            if rewritten:
                self.store.save_tree_specs(rewritten)

        logger.info(
            "branch_deleted",
            repo_id=pin.repo_id,
            branch=branch_name,
            force=force,
            reparented=len(reparented),
        )
        result = DeleteResult(branch_name=branch_name, reparented_edges=reparented, warnings=warnings)
        await self.notifier.broadcast(
            BRANCH_DELETED,
            pin.repo_id,
            branchName=branch_name,
            reparentedEdges=[edge.to_payload() for edge in reparented],
        )
        return result

    def _delete(
        self, observer: RepositoryObserver, branch: str, force: bool, delete_remote: bool
    ) -> List[str]:
        if not observer.branch_exists(branch):
            raise NotFoundError(f"Branch not found: {branch}")
        if observer.current_branch() == branch:
            raise ConflictError(f"Cannot delete {branch}: it is currently checked out")

        worktree = observer.worktree_path_for(branch)
        if worktree is not None:
            if not force:
                raise ConflictError(
                    f"Cannot delete {branch}: it is currently checked out in worktree {worktree}"
                )
            observer.git("worktree", "remove", "--force", str(worktree))

        observer.git("branch", "-D" if force else "-d", branch)

        warnings = []
        if delete_remote:
            try:
                observer.git("push", self.remote, "--delete", branch)
            except CommandError as e:
                logger.warning("remote_delete_failed", branch=branch, error=e.detail)
                warnings.append(f"Remote branch {branch} was not deleted: {e.detail}")
        return warnings
