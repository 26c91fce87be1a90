"""Observation collectors: read repository state through git and gh."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import structlog

from branchtree.errors import CommandError
from branchtree.extraction.parsers import (
    BRANCH_FORMAT,
    parse_branch_list,
    parse_left_right_count,
    parse_name_list,
    parse_pr_list,
    parse_remote_url,
    parse_symbolic_ref,
    parse_worktree_porcelain,
)
from branchtree.extraction.runner import CommandResult, CommandRunner, ProcessRunner
from branchtree.models.config import Settings
from branchtree.models.snapshot import AheadBehind, BranchRef, PRInfo, WorktreeInfo

logger = structlog.get_logger(__name__)

HEARTBEAT_FILE = Path(".branchtree") / "heartbeat.json"
PR_FIELDS = "number,title,state,url,headRefName,isDraft,labels,reviewDecision,statusCheckRollup"
FALLBACK_DEFAULT_BRANCHES = ("develop", "main", "master")


class RepositoryObserver:
    """Reads one facet of repository state per method.

    Methods raise CommandError when the underlying command fails; the scan
    pipeline decides how a failure degrades the snapshot.
    """

    def __init__(
        self,
        repo_path: Path,
        runner: Optional[CommandRunner] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """Initialize the observer.

        Args:
            repo_path: Path to the working copy
            runner: Command runner (defaults to a ProcessRunner)
            settings: Application settings
        """
        self.repo_path = Path(repo_path)
        self.settings = settings or Settings()
        self.runner = runner or ProcessRunner(timeout=self.settings.command_timeout)

    # ------------------------------------------------------------------
    # Command helpers
    # ------------------------------------------------------------------

    def git(self, *args: str, cwd: Optional[Path] = None, check: bool = True) -> CommandResult:
        return self.runner.run(
            [self.settings.git_path, *args],
            cwd=cwd or self.repo_path,
            timeout=self.settings.command_timeout,
            check=check,
        )

    def gh(self, *args: str, check: bool = True) -> CommandResult:
        return self.runner.run(
            [self.settings.gh_path, *args],
            cwd=self.repo_path,
            timeout=self.settings.command_timeout,
            check=check,
        )

    @property
    def remote(self) -> str:
        return self.settings.remote_name

    # ------------------------------------------------------------------
    # Collectors
    # ------------------------------------------------------------------

    def repo_identifier(self) -> str:
        """Resolve ``owner/name`` for the repository.

        Tries the code host first, then the remote URL, then falls back to
        ``local/<directory name>``.
        """
        try:
            output = self.gh(
                "repo", "view", "--json", "nameWithOwner", "--jq", ".nameWithOwner"
            ).stdout.strip()
            if output:
                return output
        except CommandError as e:
            logger.debug("repo_id_gh_failed", path=str(self.repo_path), error=e.detail)

        try:
            url = self.git("remote", "get-url", self.remote).stdout
            repo_id = parse_remote_url(url)
            if repo_id:
                return repo_id
        except CommandError as e:
            logger.debug("repo_id_remote_failed", path=str(self.repo_path), error=e.detail)

        return f"local/{self.repo_path.resolve().name}"

    def remote_default_branch(self) -> Optional[str]:
        """Default branch advertised by the remote, or None when unknown."""
        try:
            output = self.git("symbolic-ref", f"refs/remotes/{self.remote}/HEAD").stdout
            branch = parse_symbolic_ref(output, self.remote)
            if branch:
                return branch
        except CommandError as e:
            logger.debug("symbolic_ref_failed", path=str(self.repo_path), error=e.detail)

        try:
            output = self.gh(
                "repo", "view", "--json", "defaultBranchRef", "--jq", ".defaultBranchRef.name"
            ).stdout.strip()
            if output:
                return output
        except CommandError as e:
            logger.debug("default_branch_gh_failed", path=str(self.repo_path), error=e.detail)

        return None

    def default_branch(self, branch_names: Sequence[str]) -> Optional[str]:
        """Default branch limited to branches that exist locally."""
        return choose_default_branch(self.remote_default_branch(), branch_names)

    def branches(self) -> List[BranchRef]:
        """Local branches with tip commit and committer date, newest first."""
        output = self.git(
            "for-each-ref", "--sort=-committerdate", f"--format={BRANCH_FORMAT}", "refs/heads/"
        ).stdout
        return parse_branch_list(output)

    def current_branch(self, cwd: Optional[Path] = None) -> str:
        return self.git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd).stdout.strip()

    def branch_exists(self, branch: str) -> bool:
        output = self.git("branch", "--list", branch).stdout
        return branch in parse_name_list(output)

    def ref_exists(self, ref: str) -> bool:
        result = self.git("rev-parse", "--verify", "--quiet", ref, check=False)
        return result.ok and bool(result.stdout.strip())

    def is_dirty(self, path: Optional[Path] = None) -> bool:
        output = self.git("status", "--porcelain", cwd=path).stdout
        return bool(output.strip())

    def worktrees(self, active_path: Optional[Path] = None) -> List[WorktreeInfo]:
        """Checkout directories with dirty and active flags."""
        output = self.git("worktree", "list", "--porcelain").stdout
        worktrees = parse_worktree_porcelain(output)
        active = _normalize(active_path) if active_path else None

        for wt in worktrees:
            if wt.prunable:
                continue
            try:
                wt.dirty = self.is_dirty(Path(wt.path))
            except CommandError as e:
                logger.debug("worktree_status_failed", worktree=wt.path, error=e.detail)
                wt.dirty = False

            if active is not None and _normalize(Path(wt.path)) == active:
                wt.is_active = True
            agent = self._heartbeat_agent(Path(wt.path))
            if agent is not None:
                wt.is_active = True
                wt.active_agent = agent

        return worktrees

    def worktree_path_for(self, branch: str) -> Optional[Path]:
        """Path of the worktree that has ``branch`` checked out, if any."""
        for wt in parse_worktree_porcelain(self.git("worktree", "list", "--porcelain").stdout):
            if wt.branch == branch:
                return Path(wt.path)
        return None

    def _heartbeat_agent(self, worktree_path: Path) -> Optional[str]:
        heartbeat = worktree_path / HEARTBEAT_FILE
        if not heartbeat.exists():
            return None
        try:
            data = json.loads(heartbeat.read_text())
            updated = datetime.fromisoformat(str(data["updatedAt"]).replace("Z", "+00:00"))
        except (OSError, ValueError, KeyError) as e:
            logger.debug("heartbeat_unreadable", path=str(heartbeat), error=str(e))
            return None
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        age = (datetime.now(timezone.utc) - updated).total_seconds()
        if age < self.settings.heartbeat_ttl_seconds:
            return data.get("agent") or "unknown"
        return None

    def ahead_behind(self, branch: str, other: str) -> AheadBehind:
        """Count commits of ``branch`` versus ``other`` from their merge base outward."""
        output = self.git("rev-list", "--left-right", "--count", f"{other}...{branch}", "--").stdout
        return parse_left_right_count(output)

    def merge_base(self, first: str, second: str) -> Optional[str]:
        result = self.git("merge-base", first, second, check=False)
        return result.stdout.strip() or None

    def upstream(self, branch: str) -> Optional[str]:
        """Remote-tracking ref of ``branch``, or None when it has no upstream."""
        result = self.git("rev-parse", "--abbrev-ref", f"{branch}@{{upstream}}", check=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def remote_ahead_behind(self, branch: str) -> Optional[AheadBehind]:
        """Counts versus the remote-tracking ref; None means "no upstream", not zero."""
        upstream = self.upstream(branch)
        if upstream is None:
            return None
        return self.ahead_behind(branch, upstream)

    def pull_requests(self) -> List[PRInfo]:
        """Open pull requests from the code host."""
        output = self.gh(
            "pr", "list", "--state", "open", "--json", PR_FIELDS,
            "--limit", str(self.settings.pr_limit),
        ).stdout
        return parse_pr_list(output)

    def branch_descriptions(self, branch_names: Sequence[str]) -> Dict[str, str]:
        """Descriptions set with ``git branch --edit-description``."""
        descriptions = {}
        for name in branch_names:
            result = self.git("config", f"branch.{name}.description", check=False)
            text = result.stdout.strip() if result.ok else ""
            if text:
                descriptions[name] = text
        return descriptions

    def remote_has_branch(self, branch: str) -> bool:
        """Whether the remote has ``branch``; an unreachable or missing remote counts as no."""
        result = self.git("ls-remote", "--heads", self.remote, branch, check=False)
        if not result.ok:
            logger.debug("ls_remote_failed", branch=branch, error=result.stderr.strip())
            return False
        return any(line.strip() for line in result.stdout.splitlines())

    def commits_not_in(self, branch: str, parent: str) -> List[str]:
        """One-line summaries of commits on ``branch`` that ``parent`` lacks."""
        output = self.git("log", "--oneline", f"{parent}..{branch}", "--").stdout
        return [line for line in output.splitlines() if line.strip()]

    def fetch(self) -> None:
        self.git("fetch", "--prune", self.remote)


def choose_default_branch(
    remote_default: Optional[str], branch_names: Sequence[str]
) -> Optional[str]:
    """Pick the remote's default if it exists locally, else a conventional name."""
    if remote_default and remote_default in branch_names:
        return remote_default
    for candidate in FALLBACK_DEFAULT_BRANCHES:
        if candidate in branch_names:
            return candidate
    return None


def _normalize(path: Path) -> Path:
    try:
        return Path(path).expanduser().resolve()
    except OSError:
        return Path(path)
