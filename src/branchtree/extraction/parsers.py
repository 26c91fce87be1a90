"""Parsers for git and gh command output.

Each function turns the raw text of one observation kind into typed values;
nothing outside this module looks at command output.
"""

import json
import re
from typing import List, Optional

from branchtree.models.snapshot import AheadBehind, BranchRef, PRInfo, WorktreeInfo

# Field separator used in for-each-ref formats; git refuses control characters in ref names.
FIELD_SEP = "\t"
BRANCH_FORMAT = "%(refname:short)%09%(objectname)%09%(committerdate:iso8601-strict)"

_GITHUB_REMOTE = re.compile(r"github\.com[:/]([^/]+/[^/]+?)(?:\.git)?/?$")


def parse_branch_list(output: str) -> List[BranchRef]:
    """Parse ``git for-each-ref`` output produced with BRANCH_FORMAT."""
    branches = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split(FIELD_SEP)
        name = parts[0].strip()
        if not name:
            continue
        branches.append(
            BranchRef(
                name=name,
                commit=parts[1].strip() if len(parts) > 1 else "",
                last_commit_at=(parts[2].strip() or None) if len(parts) > 2 else None,
            )
        )
    return branches


def parse_worktree_porcelain(output: str) -> List[WorktreeInfo]:
    """Parse ``git worktree list --porcelain``.

    Records are separated by blank lines; the first line of each record is
    ``worktree <path>``.
    """
    worktrees: List[WorktreeInfo] = []
    current: Optional[dict] = None

    for line in output.splitlines():
        if line.startswith("worktree "):
            if current is not None:
                worktrees.append(WorktreeInfo(**current))
            current = {"path": line[len("worktree "):].strip()}
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current["commit"] = line[len("HEAD "):].strip()
        elif line.startswith("branch "):
            ref = line[len("branch "):].strip()
            current["branch"] = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
        elif line.startswith("prunable"):
            current["prunable"] = True

    if current is not None:
        worktrees.append(WorktreeInfo(**current))
    return worktrees


def parse_left_right_count(output: str) -> AheadBehind:
    """Parse ``git rev-list --left-right --count <other>...<branch>``.

    The left column counts commits only on ``other`` (behind), the right
    column commits only on ``branch`` (ahead).

    Raises:
        ValueError: If the output is not two integers
    """
    parts = output.split()
    if len(parts) != 2:
        raise ValueError(f"Unexpected rev-list count output: {output!r}")
    behind, ahead = (int(p) for p in parts)
    return AheadBehind(ahead=ahead, behind=behind)


def parse_symbolic_ref(output: str, remote: str = "origin") -> Optional[str]:
    """Extract the branch from ``refs/remotes/<remote>/<branch>``."""
    prefix = f"refs/remotes/{remote}/"
    ref = output.strip()
    if ref.startswith(prefix) and len(ref) > len(prefix):
        return ref[len(prefix):]
    return None


def parse_remote_url(url: str) -> Optional[str]:
    """Derive ``owner/name`` from an ssh or https GitHub remote URL."""
    match = _GITHUB_REMOTE.search(url.strip())
    if match:
        return match.group(1)
    return None


def _aggregate_checks(rollup: Optional[list]) -> Optional[str]:
    if not rollup:
        return None
    conclusions = [(check or {}).get("conclusion") for check in rollup]
    if any(c in ("FAILURE", "ERROR") for c in conclusions):
        return "FAILURE"
    if all(c in ("SUCCESS", "SKIPPED") for c in conclusions):
        return "SUCCESS"
    return "PENDING"


def parse_pr_list(output: str) -> List[PRInfo]:
    """Parse ``gh pr list --json ...`` output.

    Raises:
        ValueError: If the output is not a JSON array
    """
    text = output.strip()
    if not text:
        return []
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError(f"Unexpected gh pr list response: {type(data).__name__}")

    prs = []
    for pr in data:
        prs.append(
            PRInfo(
                number=pr["number"],
                title=pr.get("title") or "",
                state=pr.get("state") or "OPEN",
                url=pr.get("url") or "",
                branch=pr["headRefName"],
                is_draft=bool(pr.get("isDraft")),
                labels=[label["name"] for label in pr.get("labels") or [] if "name" in label],
                review_decision=pr.get("reviewDecision") or None,
                checks=_aggregate_checks(pr.get("statusCheckRollup")),
            )
        )
    return prs


def parse_name_list(output: str) -> List[str]:
    """Parse ``git branch --list`` style output into names."""
    names = []
    for line in output.splitlines():
        name = line.strip().lstrip("*+").strip()
        if name:
            names.append(name)
    return names
