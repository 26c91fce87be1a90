"""Badges, warnings and restart hints derived from an assembled snapshot."""

import re
import shlex
from typing import Iterable, List, Optional, Pattern, Sequence

import structlog

from branchtree.models.config import Settings
from branchtree.models.design import BranchNamingRule, TreeSpec
from branchtree.models.snapshot import (
    BranchNode,
    InferredEdge,
    PRInfo,
    RestartInfo,
    ScanWarning,
    WorktreeInfo,
)

logger = structlog.get_logger(__name__)


def node_badges(
    pr: Optional[PRInfo],
    worktree: Optional[WorktreeInfo],
    no_upstream: bool,
) -> List[str]:
    """Short status flags shown next to a branch."""
    badges = []
    if worktree is not None:
        if worktree.dirty:
            badges.append("dirty")
        if worktree.is_active:
            badges.append("active")
    if pr is not None:
        badges.append("pr-merged" if pr.state == "MERGED" else "pr")
        if pr.is_draft:
            badges.append("draft")
        if pr.checks == "FAILURE":
            badges.append("ci-fail")
        elif pr.checks == "SUCCESS":
            badges.append("ci-pass")
        if pr.review_decision == "APPROVED":
            badges.append("approved")
        elif pr.review_decision == "CHANGES_REQUESTED":
            badges.append("changes-requested")
    if no_upstream:
        badges.append("no-upstream")
    return badges


def compile_naming_patterns(rule: Optional[BranchNamingRule]) -> List[Pattern]:
    """Compile the active naming patterns; invalid expressions are skipped."""
    if rule is None or not rule.is_active:
        return []
    patterns = []
    for pattern in rule.patterns:
        try:
            patterns.append(re.compile(pattern))
        except re.error as e:
            logger.warning("naming_pattern_invalid", pattern=pattern, error=str(e))
    return patterns


def matches_naming_rule(branch: str, patterns: Sequence[Pattern]) -> bool:
    return not patterns or any(p.search(branch) for p in patterns)


def branch_warnings(
    nodes: Sequence[BranchNode],
    edges: Sequence[InferredEdge],
    settings: Settings,
    root: Optional[str] = None,
    naming_rule: Optional[BranchNamingRule] = None,
    tree_spec: Optional[TreeSpec] = None,
) -> List[ScanWarning]:
    """Warnings about individual branches and about design/git disagreement."""
    warnings: List[ScanWarning] = []
    patterns = compile_naming_patterns(naming_rule)

    for node in nodes:
        name = node.branch_name
        counts = node.ahead_behind
        if counts is not None and counts.behind >= settings.behind_warn_threshold:
            severity = "error" if counts.behind >= settings.behind_error_threshold else "warn"
            warnings.append(
                ScanWarning(
                    code="BEHIND_PARENT",
                    severity=severity,
                    message=f"Branch {name} is {counts.behind} commits behind",
                    meta={"branch": name, "behind": counts.behind},
                )
            )
        if counts is not None and counts.diverged:
            warnings.append(
                ScanWarning(
                    code="DIVERGED",
                    message=f"Branch {name} has diverged from its parent "
                    f"({counts.ahead} ahead, {counts.behind} behind)",
                    meta={"branch": name, "ahead": counts.ahead, "behind": counts.behind},
                )
            )

        if node.worktree is not None and node.worktree.dirty:
            warnings.append(
                ScanWarning(
                    code="DIRTY",
                    message=f"Worktree for {name} has uncommitted changes",
                    meta={"branch": name, "worktree": node.worktree.path},
                )
            )

        if node.pr is not None and node.pr.checks == "FAILURE":
            warnings.append(
                ScanWarning(
                    code="CI_FAIL",
                    severity="error",
                    message=f"CI failed for PR #{node.pr.number} ({name})",
                    meta={"branch": name, "prNumber": node.pr.number},
                )
            )

        if name != root and not matches_naming_rule(name, patterns):
            warnings.append(
                ScanWarning(
                    code="BRANCH_NAMING_VIOLATION",
                    message=f"Branch {name} does not follow naming convention",
                    meta={"branch": name},
                )
            )

    if tree_spec is not None:
        existing = {node.branch_name for node in nodes}
        observed = {(edge.parent, edge.child) for edge in edges}
        for parent, child in tree_spec.branch_edges():
            if parent not in existing or child not in existing:
                continue
            if (parent, child) not in observed:
                warnings.append(
                    ScanWarning(
                        code="TREE_DIVERGENCE",
                        message=f"Design tree has {parent} -> {child} but git doesn't match",
                        meta={"parent": parent, "child": child, "type": "missing_in_git"},
                    )
                )

    return warnings


def worktree_warnings(worktrees: Iterable[WorktreeInfo], branches: Iterable[str]) -> List[ScanWarning]:
    """Worktrees that are detached, prunable or on a branch that no longer exists."""
    known = set(branches)
    warnings = []
    for wt in worktrees:
        if wt.prunable:
            reason = "prunable"
        elif wt.branch is None:
            reason = "detached"
        elif wt.branch not in known:
            reason = "missing_branch"
        else:
            continue
        warnings.append(
            ScanWarning(
                code="ORPHANED_WORKTREE",
                message=f"Worktree {wt.path} is not on an existing branch ({reason})",
                meta={"worktree": wt.path, "branch": wt.branch, "reason": reason},
            )
        )
    return warnings


def restart_info(
    worktree: WorktreeInfo,
    nodes: Sequence[BranchNode],
    warnings: Sequence[ScanWarning],
    naming_rule: Optional[BranchNamingRule] = None,
) -> RestartInfo:
    """Build the ``cd`` command and markdown prompt for resuming work in a worktree."""
    node = next((n for n in nodes if n.branch_name == worktree.branch), None)
    own = [w for w in warnings if w.meta.get("branch") == worktree.branch]

    if naming_rule is not None and naming_rule.patterns:
        patterns = ", ".join(f"`{p}`" for p in naming_rule.patterns)
    else:
        patterns = "N/A"

    lines = [
        "# Restart Prompt",
        "",
        "## Project Rules",
        "### Branch Naming",
        f"- Patterns: {patterns}",
        "",
        "## Current State",
        f"- Branch: `{worktree.branch or '(detached)'}`",
        f"- Worktree: `{worktree.path}`",
        f"- Dirty: {'Yes (uncommitted changes)' if worktree.dirty else 'No'}",
    ]
    if node is not None and node.ahead_behind is not None:
        lines.append(f"- Behind: {node.ahead_behind.behind} commits")

    lines += ["", "## Warnings"]
    if own:
        lines += [f"- [{w.severity.upper()}] {w.message}" for w in own]
    else:
        lines.append("No warnings")

    lines += ["", "## Next Steps"]
    if own:
        lines += [f"{i}. Address: {w.message}" for i, w in enumerate(own[:3], start=1)]
    else:
        lines.append("1. Continue working on your current task")

    return RestartInfo(
        worktree_path=worktree.path,
        cd_command=f"cd {shlex.quote(worktree.path)}",
        restart_prompt_md="\n".join(lines) + "\n",
    )
