"""Unit tests for badges, warnings and restart hints."""

import pytest

from branchtree.models.config import Settings
from branchtree.models.design import BranchNamingRule, TreeSpec, TreeSpecEdge
from branchtree.models.snapshot import AheadBehind, BranchNode, InferredEdge, PRInfo, WorktreeInfo
from branchtree.scanning.annotations import (
    branch_warnings,
    compile_naming_patterns,
    matches_naming_rule,
    node_badges,
    restart_info,
    worktree_warnings,
)


def codes(warnings):
    return [w.code for w in warnings]


class TestBadges:
    def test_worktree_and_pr_badges(self):
        pr = PRInfo(
            number=7,
            branch="feature/a",
            is_draft=True,
            checks="FAILURE",
            review_decision="CHANGES_REQUESTED",
        )
        worktree = WorktreeInfo(path="/w/a", branch="feature/a", dirty=True, is_active=True)

        assert node_badges(pr, worktree, no_upstream=True) == [
            "dirty",
            "active",
            "pr",
            "draft",
            "ci-fail",
            "changes-requested",
            "no-upstream",
        ]

    def test_merged_approved_passing(self):
        pr = PRInfo(number=1, branch="x", state="MERGED", checks="SUCCESS", review_decision="APPROVED")
        assert node_badges(pr, None, no_upstream=False) == ["pr-merged", "ci-pass", "approved"]

    def test_plain_branch_has_no_badges(self):
        assert node_badges(None, WorktreeInfo(path="/w"), no_upstream=False) == []


class TestBranchWarnings:
    def test_behind_thresholds(self):
        settings = Settings(behind_warn_threshold=2, behind_error_threshold=5)
        nodes = [
            BranchNode(branch_name="a", ahead_behind=AheadBehind(ahead=0, behind=1)),
            BranchNode(branch_name="b", ahead_behind=AheadBehind(ahead=0, behind=3)),
            BranchNode(branch_name="c", ahead_behind=AheadBehind(ahead=0, behind=5)),
        ]

        warnings = branch_warnings(nodes, [], settings)

        assert [(w.meta["branch"], w.severity) for w in warnings] == [("b", "warn"), ("c", "error")]

    def test_diverged_dirty_and_ci(self):
        nodes = [
            BranchNode(
                branch_name="feature/a",
                ahead_behind=AheadBehind(ahead=2, behind=1),
                worktree=WorktreeInfo(path="/w/a", branch="feature/a", dirty=True),
                pr=PRInfo(number=3, branch="feature/a", checks="FAILURE"),
            )
        ]

        warnings = branch_warnings(nodes, [], Settings())

        assert codes(warnings) == ["BEHIND_PARENT", "DIVERGED", "DIRTY", "CI_FAIL"]
        assert warnings[-1].severity == "error"
        assert warnings[-1].meta["prNumber"] == 3

    def test_naming_violation_skips_root(self):
        rule = BranchNamingRule(patterns=[r"^feat/"])
        nodes = [BranchNode(branch_name="main"), BranchNode(branch_name="feat/ok"), BranchNode(branch_name="bad")]

        warnings = branch_warnings(nodes, [], Settings(), root="main", naming_rule=rule)

        assert codes(warnings) == ["BRANCH_NAMING_VIOLATION"]
        assert warnings[0].meta == {"branch": "bad"}

    def test_inactive_rule_is_ignored(self):
        rule = BranchNamingRule(patterns=[r"^feat/"], is_active=False)
        assert branch_warnings([BranchNode(branch_name="bad")], [], Settings(), naming_rule=rule) == []

    def test_tree_divergence(self):
        spec = TreeSpec(
            repo_id="owner/repo",
            base_branch="main",
            edges=[
                TreeSpecEdge(parent="feature/a", child="feature/b"),
                TreeSpecEdge(parent="main", child="feature/a"),
                TreeSpecEdge(parent="main", child="feature/gone"),
            ],
        )
        nodes = [BranchNode(branch_name=b) for b in ["main", "feature/a", "feature/b"]]
        edges = [
            InferredEdge(parent="main", child="feature/a"),
            InferredEdge(parent="main", child="feature/b"),
        ]

        warnings = branch_warnings(nodes, edges, Settings(), tree_spec=spec)

        assert codes(warnings) == ["TREE_DIVERGENCE"]
        assert warnings[0].meta == {"parent": "feature/a", "child": "feature/b", "type": "missing_in_git"}


def test_naming_patterns_skip_invalid_expressions():
    patterns = compile_naming_patterns(BranchNamingRule(patterns=["(", r"^fix/"]))

    assert len(patterns) == 1
    assert matches_naming_rule("fix/typo", patterns)
    assert not matches_naming_rule("typo", patterns)
    assert matches_naming_rule("anything", [])


@pytest.mark.parametrize(
    "worktree,reason",
    [
        (WorktreeInfo(path="/w/p", branch="main", prunable=True), "prunable"),
        (WorktreeInfo(path="/w/d"), "detached"),
        (WorktreeInfo(path="/w/m", branch="feature/deleted"), "missing_branch"),
    ],
)
def test_orphaned_worktrees(worktree, reason):
    warnings = worktree_warnings([worktree, WorktreeInfo(path="/w/ok", branch="main")], ["main"])

    assert codes(warnings) == ["ORPHANED_WORKTREE"]
    assert warnings[0].meta["reason"] == reason


def test_restart_prompt():
    worktree = WorktreeInfo(path="/work/my repo", branch="feature/a", dirty=True, is_active=True)
    nodes = [BranchNode(branch_name="feature/a", ahead_behind=AheadBehind(ahead=1, behind=4))]
    warnings = branch_warnings(nodes, [], Settings())

    info = restart_info(worktree, nodes, warnings, BranchNamingRule(patterns=[r"^feature/"]))

    assert info.cd_command == "cd '/work/my repo'"
    assert info.worktree_path == "/work/my repo"
    md = info.restart_prompt_md
    assert md.startswith("# Restart Prompt\n")
    assert "- Patterns: `^feature/`" in md
    assert "- Dirty: Yes (uncommitted changes)" in md
    assert "- Behind: 4 commits" in md
    assert "1. Address: Branch feature/a is 4 commits behind" in md


def test_restart_prompt_without_warnings():
    worktree = WorktreeInfo(path="/work/repo", branch="main", is_active=True)

    md = restart_info(worktree, [], []).restart_prompt_md

    assert "- Patterns: N/A" in md
    assert "No warnings" in md
    assert "1. Continue working on your current task" in md
