"""Tests for branch create/push/rebase/delete operations."""

import pytest

from branchtree.errors import CommandError, ConflictError, NotFoundError, ValidationError
from branchtree.lifecycle.branches import BranchLifecycle
from branchtree.models.design import BranchNamingRule, TreeSpec, TreeSpecEdge, TreeSpecNode
from branchtree.notify import BRANCH_CREATED, BRANCH_DELETED
from branchtree.scanning.manager import ScanManager

SHA = "a" * 40


@pytest.fixture
def manager(store, settings, fake_runner):
    manager = ScanManager(store, settings=settings, runner=fake_runner)
    yield manager
    manager.shutdown()


@pytest.fixture
def lifecycle(manager):
    return BranchLifecycle(manager)


@pytest.fixture
def events(manager):
    received = []
    manager.notifier.subscribe(received.append)
    return received


@pytest.fixture
def repo(fake_runner, pinned_repo):
    """A pinned checkout on ``main`` whose branches exist and are clean."""
    path = pinned_repo.local_path
    fake_runner.on(r"^git rev-parse --abbrev-ref HEAD$", "main\n")
    fake_runner.on(r"^git status --porcelain", "")
    fake_runner.on(r"^git rev-parse --verify --quiet", f"{SHA}\n")
    fake_runner.on(
        r"^git worktree list --porcelain",
        f"worktree {path}\nHEAD {SHA}\nbranch refs/heads/main\n\n",
    )
    return pinned_repo


def has_branch(runner, name):
    runner.on(rf"^git branch --list {name}$", f"  {name}\n")


class TestCreate:
    @pytest.mark.asyncio
    async def test_creates_branch_from_base(self, lifecycle, fake_runner, repo, events):
        fake_runner.on(r"^git check-ref-format --branch")
        fake_runner.on(r"^git branch --list", "")
        fake_runner.on(r"^git branch feature/new main$")

        result = await lifecycle.create_branch(repo.local_path, "feature/new", "main")

        assert result.to_payload() == {"success": True, "branchName": "feature/new", "baseBranch": "main"}
        assert fake_runner.ran(r"^git branch feature/new main$")
        assert [e.type for e in events] == [BRANCH_CREATED]

    @pytest.mark.asyncio
    async def test_existing_branch_conflicts(self, lifecycle, fake_runner, repo):
        fake_runner.on(r"^git check-ref-format --branch")
        has_branch(fake_runner, "feature/a")

        with pytest.raises(ConflictError, match="already exists"):
            await lifecycle.create_branch(repo.local_path, "feature/a", "main")
        assert not fake_runner.ran(r"^git branch feature/a main")

    @pytest.mark.asyncio
    async def test_missing_base_is_not_found(self, lifecycle, fake_runner, repo):
        fake_runner.on(r"^git check-ref-format --branch")
        fake_runner.on(r"^git branch --list", "")
        fake_runner.fail(r"^git rev-parse --verify --quiet nope$", "", 1)

        with pytest.raises(NotFoundError):
            await lifecycle.create_branch(repo.local_path, "feature/new", "nope")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["has space", "semi;colon", "dots..", "new~1"])
    async def test_invalid_names_are_rejected_before_git(self, lifecycle, fake_runner, repo, name):
        with pytest.raises(ValidationError, match="Invalid branch name"):
            await lifecycle.create_branch(repo.local_path, name, "main")
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_naming_rule_is_enforced(self, lifecycle, fake_runner, store, repo):
        store.set_naming_rule("owner/repo", BranchNamingRule(patterns=[r"^feat/"]))

        with pytest.raises(ValidationError, match="naming convention"):
            await lifecycle.create_branch(repo.local_path, "feature/new", "main")
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_missing_fields(self, lifecycle):
        with pytest.raises(ValidationError, match="branchName is required"):
            await lifecycle.create_branch("/tmp", "", "main")


class TestPush:
    @pytest.mark.asyncio
    async def test_force_push_uses_lease_in_worktree(self, lifecycle, fake_runner, repo, tmp_path):
        worktree = tmp_path / "wt"
        worktree.mkdir()
        fake_runner.on(r"^git push")

        await lifecycle.push_branch(repo.local_path, "feature/a", force=True, worktree_path=worktree)

        assert fake_runner.ran(r"^git push --force-with-lease -u origin feature/a$")
        assert fake_runner.cwd_of(r"^git push") == str(worktree)

    @pytest.mark.asyncio
    async def test_rejected_push_is_a_conflict(self, lifecycle, fake_runner, repo):
        fake_runner.fail(
            r"^git push",
            " ! [rejected]        feature/a -> feature/a (non-fast-forward)\n"
            "error: failed to push some refs",
        )

        with pytest.raises(ConflictError, match="rejected"):
            await lifecycle.push_branch(repo.local_path, "feature/a")
        assert fake_runner.ran(r"^git push -u origin feature/a$")

    @pytest.mark.asyncio
    async def test_other_push_failures_propagate(self, lifecycle, fake_runner, repo):
        fake_runner.fail(r"^git push", "fatal: could not read Username", 128)

        with pytest.raises(CommandError) as exc_info:
            await lifecycle.push_branch(repo.local_path, "feature/a")
        assert not isinstance(exc_info.value, ConflictError)

    @pytest.mark.asyncio
    async def test_missing_worktree_path(self, lifecycle, repo, tmp_path):
        with pytest.raises(NotFoundError):
            await lifecycle.push_branch(repo.local_path, "feature/a", worktree_path=tmp_path / "gone")


class TestRebase:
    @pytest.mark.asyncio
    async def test_rebases_onto_remote_parent(self, lifecycle, fake_runner, repo):
        fake_runner.on(r"^git fetch origin$")
        fake_runner.on(r"^git checkout")
        fake_runner.on(r"^git rebase origin/main$")

        result = await lifecycle.rebase_branch(repo.local_path, "feature/a", "main")

        assert result.onto == "origin/main"
        assert fake_runner.commands.index("git checkout feature/a") < fake_runner.commands.index(
            "git rebase origin/main"
        )

    @pytest.mark.asyncio
    async def test_conflict_aborts_and_restores_checkout(self, lifecycle, fake_runner, repo):
        fake_runner.on(r"^git fetch origin$")
        fake_runner.fail(r"^git rev-parse --verify --quiet origin/main$", "", 1)
        fake_runner.on(r"^git checkout")
        fake_runner.fail(
            r"^git rebase main$",
            "CONFLICT (content): Merge conflict in app.py\nerror: could not apply 1a2b3c4",
        )
        fake_runner.on(r"^git rebase --abort$")

        with pytest.raises(ConflictError, match="conflict"):
            await lifecycle.rebase_branch(repo.local_path, "feature/a", "main")

        commands = fake_runner.commands
        assert "git rebase --abort" in commands
        assert commands[-1] == "git checkout main"

    @pytest.mark.asyncio
    async def test_dirty_tree_is_refused(self, lifecycle, fake_runner, repo):
        fake_runner.on(r"^git status --porcelain", " M app.py\n")

        with pytest.raises(ConflictError, match="uncommitted changes"):
            await lifecycle.rebase_branch(repo.local_path, "feature/a", "main")
        assert not fake_runner.ran(r"^git rebase")
        assert not fake_runner.ran(r"^git fetch")

    @pytest.mark.asyncio
    async def test_missing_parent(self, lifecycle, fake_runner, repo):
        fake_runner.on(r"^git fetch origin$")
        fake_runner.fail(r"^git rev-parse --verify --quiet", "", 1)

        with pytest.raises(NotFoundError, match="Parent branch not found"):
            await lifecycle.rebase_branch(repo.local_path, "feature/a", "gone")


class TestCheckDeletable:
    @pytest.fixture
    def candidate(self, fake_runner, repo):
        has_branch(fake_runner, "feature/a")
        fake_runner.on(r"^git ls-remote --heads origin feature/a$", "")
        fake_runner.on(r"^git log --oneline main\.\.feature/a --$", "")
        return repo

    @pytest.mark.asyncio
    async def test_deletable(self, lifecycle, candidate):
        check = await lifecycle.check_deletable(candidate.local_path, "feature/a")
        assert check.to_payload() == {"deletable": True, "reason": None, "parent": "main"}

    @pytest.mark.asyncio
    async def test_branch_not_found(self, lifecycle, fake_runner, candidate):
        fake_runner.on(r"^git branch --list", "")
        check = await lifecycle.check_deletable(candidate.local_path, "feature/a")
        assert check.reason == "branch_not_found"

    @pytest.mark.asyncio
    async def test_currently_checked_out(self, lifecycle, fake_runner, candidate):
        fake_runner.on(r"^git rev-parse --abbrev-ref HEAD$", "feature/a\n")
        check = await lifecycle.check_deletable(candidate.local_path, "feature/a")
        assert check.reason == "currently_checked_out"

    @pytest.mark.asyncio
    async def test_pushed_to_remote(self, lifecycle, fake_runner, candidate):
        fake_runner.on(r"^git ls-remote", f"{SHA}\trefs/heads/feature/a\n")
        check = await lifecycle.check_deletable(candidate.local_path, "feature/a")
        assert check.reason == "pushed_to_remote"

    @pytest.mark.asyncio
    async def test_has_commits_against_designed_parent(self, lifecycle, fake_runner, store, candidate):
        store.save_tree_spec(
            TreeSpec(
                repo_id="owner/repo",
                base_branch="main",
                edges=[TreeSpecEdge(parent="feature/base", child="feature/a")],
            )
        )
        fake_runner.on(r"^git log --oneline feature/base\.\.feature/a --$", "1a2b3c4 Add login form\n")

        check = await lifecycle.check_deletable(candidate.local_path, "feature/a")

        assert check.deletable is False
        assert check.reason == "has_commits"
        assert check.parent == "feature/base"


class TestDelete:
    @pytest.fixture
    def stacked(self, fake_runner, store, repo):
        """Tree spec main -> feature/parent -> feature/child with feature/parent deletable."""
        store.save_tree_spec(
            TreeSpec(
                repo_id="owner/repo",
                base_branch="main",
                nodes=[TreeSpecNode(branch_name=b) for b in ["feature/parent", "feature/child"]],
                edges=[
                    TreeSpecEdge(parent="main", child="feature/parent"),
                    TreeSpecEdge(parent="feature/parent", child="feature/child"),
                ],
            )
        )
        has_branch(fake_runner, "feature/parent")
        fake_runner.on(r"^git branch -[dD] feature/parent$")
        return repo

    @pytest.mark.asyncio
    async def test_children_are_reparented(self, lifecycle, fake_runner, store, stacked, events):
        result = await lifecycle.delete_branch(stacked.local_path, "feature/parent")

        assert result.to_payload()["reparentedEdges"] == [{"child": "feature/child", "newParent": "main"}]
        assert fake_runner.ran(r"^git branch -d feature/parent$")
        spec = store.get_tree_spec("owner/repo", "main")
        assert spec.branch_edges() == [("main", "feature/child")]
        assert [n.branch_name for n in spec.nodes] == ["feature/child"]
        assert events[-1].type == BRANCH_DELETED
        assert events[-1].data["reparentedEdges"] == [{"child": "feature/child", "newParent": "main"}]

    @pytest.mark.asyncio
    async def test_git_failure_leaves_tree_spec_alone(self, lifecycle, fake_runner, store, stacked):
        fake_runner.fail(r"^git branch -d feature/parent$", "error: the branch 'feature/parent' is not fully merged")
        before = store.get_tree_spec("owner/repo", "main").branch_edges()

        with pytest.raises(CommandError, match="not fully merged"):
            await lifecycle.delete_branch(stacked.local_path, "feature/parent")

        assert store.get_tree_spec("owner/repo", "main").branch_edges() == before

    @pytest.mark.asyncio
    async def test_checked_out_branch_is_refused(self, lifecycle, fake_runner, stacked):
        fake_runner.on(r"^git rev-parse --abbrev-ref HEAD$", "feature/parent\n")

        with pytest.raises(ConflictError, match="currently checked out"):
            await lifecycle.delete_branch(stacked.local_path, "feature/parent")
        assert not fake_runner.ran(r"^git branch -[dD]")

    @pytest.mark.asyncio
    async def test_worktree_requires_force(self, lifecycle, fake_runner, stacked, tmp_path):
        worktree = tmp_path / "wt-parent"
        fake_runner.on(
            r"^git worktree list --porcelain",
            f"worktree {stacked.local_path}\nHEAD {SHA}\nbranch refs/heads/main\n\n"
            f"worktree {worktree}\nHEAD {SHA}\nbranch refs/heads/feature/parent\n\n",
        )
        fake_runner.on(r"^git worktree remove --force")

        with pytest.raises(ConflictError, match="worktree"):
            await lifecycle.delete_branch(stacked.local_path, "feature/parent")

        await lifecycle.delete_branch(stacked.local_path, "feature/parent", force=True)
        assert fake_runner.ran(rf"^git worktree remove --force {worktree}$")
        assert fake_runner.ran(r"^git branch -D feature/parent$")

    @pytest.mark.asyncio
    async def test_remote_deletion_failure_is_a_warning(self, lifecycle, fake_runner, stacked):
        fake_runner.fail(r"^git push origin --delete feature/parent$", "error: unable to delete 'feature/parent'")

        result = await lifecycle.delete_branch(stacked.local_path, "feature/parent", delete_remote=True)

        assert result.success
        assert len(result.warnings) == 1
        assert "unable to delete" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_missing_branch(self, lifecycle, fake_runner, repo):
        fake_runner.on(r"^git branch --list", "")

        with pytest.raises(NotFoundError):
            await lifecycle.delete_branch(repo.local_path, "feature/ghost")
