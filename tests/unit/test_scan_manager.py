"""Tests for the background scan pipeline."""

import threading
from unittest.mock import AsyncMock, patch

import pytest

from branchtree.errors import NotFoundError, ScanFailedError, ValidationError
from branchtree.notify import SCAN_COMPLETED, SCAN_FAILED
from branchtree.scanning.manager import ScanManager

BRANCHES = ["main", "feature/a", "feature/b"]
CHAIN = {
    ("feature/a", "main"): (2, 0),
    ("feature/b", "main"): (3, 0),
    ("feature/b", "feature/a"): (1, 0),
}


@pytest.fixture
def manager(store, settings, fake_runner):
    manager = ScanManager(store, settings=settings, runner=fake_runner)
    yield manager
    manager.shutdown()


@pytest.fixture
def events(manager):
    received = []
    manager.notifier.subscribe(received.append)
    return received


@pytest.mark.asyncio
async def test_scan_builds_snapshot(manager, fake_runner, script_repository, pinned_repo, events):
    """A stacked chain main -> feature/a -> feature/b is observed and cached."""
    script_repository(pinned_repo.local_path, BRANCHES, CHAIN)

    ticket = await manager.trigger_scan(pinned_repo.local_path)
    cached = await ticket.task

    assert ticket.started
    assert ticket.to_payload() == {"started": True, "repoId": "owner/repo"}
    snapshot = cached.snapshot
    assert cached.version == 1
    assert snapshot.branches == ["feature/a", "feature/b", "main"]
    assert snapshot.default_branch == "main"
    assert snapshot.parent_map() == {"feature/a": "main", "feature/b": "feature/a"}
    assert {e.confidence for e in snapshot.edges} == {"high"}
    assert snapshot.node_for("feature/b").ahead_behind.ahead == 1
    assert "no-upstream" in snapshot.node_for("feature/a").badges
    assert snapshot.warnings == []
    assert snapshot.restart is None

    assert manager.cache.read(pinned_repo.id).version == 1
    assert not manager.cache.is_scanning("owner/repo")
    assert [e.type for e in events] == [SCAN_COMPLETED]
    assert events[0].data["version"] == 1
    assert events[0].data["delta"]["newBranches"] == ["feature/a", "feature/b", "main"]


@pytest.mark.asyncio
async def test_active_worktree_gets_restart_info(manager, fake_runner, script_repository, pinned_repo):
    script_repository(pinned_repo.local_path, BRANCHES, CHAIN, current="feature/b")

    ticket = await manager.trigger_scan(pinned_repo.local_path, active_path=pinned_repo.local_path)
    snapshot = (await ticket.task).snapshot

    assert "active" in snapshot.node_for("feature/b").badges
    assert snapshot.restart.worktree_path == pinned_repo.local_path
    assert "- Branch: `feature/b`" in snapshot.restart.restart_prompt_md


@pytest.mark.asyncio
async def test_failed_collector_degrades_to_warning(manager, fake_runner, script_repository, pinned_repo):
    script_repository(pinned_repo.local_path, BRANCHES, CHAIN)
    fake_runner.fail(r"^gh pr list", "gh: To get started with GitHub CLI, please run: gh auth login", 4)

    ticket = await manager.trigger_scan(pinned_repo.local_path)
    snapshot = (await ticket.task).snapshot

    failures = [w for w in snapshot.warnings if w.code == "COLLECTOR_FAILED"]
    assert [w.meta["collector"] for w in failures] == ["pull_requests"]
    assert snapshot.prs == []
    assert snapshot.parent_map()["feature/b"] == "feature/a"


@pytest.mark.asyncio
async def test_failed_pair_comparison_is_reported_once(manager, fake_runner, script_repository, pinned_repo):
    script_repository(pinned_repo.local_path, BRANCHES, {("feature/a", "main"): (2, 0)})

    ticket = await manager.trigger_scan(pinned_repo.local_path)
    snapshot = (await ticket.task).snapshot

    failures = [w for w in snapshot.warnings if w.code == "COLLECTOR_FAILED"]
    assert len(failures) == 1
    assert failures[0].meta["collector"] == "ahead_behind"
    assert len(failures[0].meta["pairs"]) == 2
    assert snapshot.edge_for("feature/b").parent == "main"
    assert snapshot.edge_for("feature/b").confidence == "low"


@pytest.mark.asyncio
async def test_concurrent_trigger_is_coalesced(manager, fake_runner, script_repository, pinned_repo):
    script_repository(pinned_repo.local_path, BRANCHES, CHAIN)
    release = threading.Event()
    refs = "main\t" + "1" * 40 + "\t2024-05-01T10:00:00+00:00\n"

    def slow_refs(command):
        release.wait(5)
        return 0, refs, ""

    fake_runner.on_call(r"^git for-each-ref", slow_refs)

    first = await manager.trigger_scan(pinned_repo.local_path)
    second = await manager.trigger_scan(pinned_repo.local_path)

    assert first.started is True
    assert second.started is False
    assert second.task is None
    assert second.to_payload() == {"started": False, "repoId": "owner/repo"}

    release.set()
    await first.task
    assert len([c for c in fake_runner.commands if c.startswith("git for-each-ref")]) == 1

    third = await manager.trigger_scan(pinned_repo.local_path)
    assert third.started is True
    assert (await third.task).version == 2


@pytest.mark.asyncio
async def test_crashed_scan_keeps_previous_snapshot(manager, fake_runner, script_repository, pinned_repo, events):
    script_repository(pinned_repo.local_path, BRANCHES, CHAIN)
    await (await manager.trigger_scan(pinned_repo.local_path)).task

    with patch.object(manager, "build_snapshot", AsyncMock(side_effect=RuntimeError("boom"))):
        ticket = await manager.trigger_scan(pinned_repo.local_path)
        with pytest.raises(ScanFailedError, match="boom"):
            await ticket.task

    cached = manager.cache.read(pinned_repo.id)
    assert cached.version == 1
    assert not manager.cache.is_scanning("owner/repo")
    assert [e.type for e in events] == [SCAN_COMPLETED, SCAN_FAILED]
    assert events[-1].data["error"] == "boom"


@pytest.mark.asyncio
async def test_trigger_validates_input_before_scheduling(manager, fake_runner, tmp_path):
    with pytest.raises(ValidationError):
        await manager.trigger_scan(None)
    with pytest.raises(NotFoundError):
        await manager.trigger_scan(tmp_path / "missing")

    plain = tmp_path / "plain"
    plain.mkdir()
    with pytest.raises(ValidationError):
        await manager.trigger_scan(plain)

    assert fake_runner.calls == []
    assert manager._tasks == set()


@pytest.mark.asyncio
async def test_new_path_is_registered_as_pin(manager, fake_runner, script_repository, git_repo, store):
    script_repository(git_repo, BRANCHES, CHAIN)

    ticket = await manager.trigger_scan(git_repo)
    await ticket.task

    pin = store.get_pin(ticket.pin_id)
    assert pin.repo_id == "owner/repo"
    assert pin.base_branch is None
    assert manager.cache.read(pin.id).snapshot.base_branch == "main"
