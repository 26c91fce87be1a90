"""Shared fixtures: a scripted command runner and temporary git repositories."""

import re
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import git
import pytest

from branchtree.errors import CommandError
from branchtree.extraction.runner import CommandResult
from branchtree.models.config import Settings
from branchtree.storage.state import StateStore

# (returncode, stdout, stderr) or a callable producing one from the command string
Response = Union[Tuple[int, str, str], Callable[[str], Tuple[int, str, str]], Exception]


class FakeRunner:
    """Command runner that answers from scripted routes instead of spawning processes.

    Routes are regular expressions searched against the space-joined command;
    the most recently added matching route wins. Unmatched commands fail the
    way a missing tool would.
    """

    def __init__(self) -> None:
        self.routes: List[Tuple[re.Pattern, Response]] = []
        self.calls: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def on(self, pattern: str, stdout: str = "", returncode: int = 0, stderr: str = "") -> "FakeRunner":
        self.routes.insert(0, (re.compile(pattern), (returncode, stdout, stderr)))
        return self

    def on_call(self, pattern: str, handler: Callable[[str], Tuple[int, str, str]]) -> "FakeRunner":
        self.routes.insert(0, (re.compile(pattern), handler))
        return self

    def fail(self, pattern: str, stderr: str = "fatal: error", returncode: int = 1) -> "FakeRunner":
        return self.on(pattern, returncode=returncode, stderr=stderr)

    def run(self, args: Sequence[str], cwd, timeout: Optional[float] = None, check: bool = True) -> CommandResult:
        command = " ".join(args)
        with self._lock:
            self.calls.append((command, str(cwd)))

        for pattern, response in self.routes:
            if not pattern.search(command):
                continue
            if isinstance(response, Exception):
                raise response
            returncode, stdout, stderr = response(command) if callable(response) else response
            result = CommandResult(command=list(args), returncode=returncode, stdout=stdout, stderr=stderr)
            if check and not result.ok:
                raise CommandError(list(args), returncode, stderr=stderr, stdout=stdout)
            return result

        if check:
            raise CommandError(list(args), 127, stderr=f"unexpected command: {command}")
        return CommandResult(command=list(args), returncode=127, stderr=f"unexpected command: {command}")

    @property
    def commands(self) -> List[str]:
        with self._lock:
            return [command for command, _ in self.calls]

    def ran(self, pattern: str) -> bool:
        regex = re.compile(pattern)
        return any(regex.search(command) for command in self.commands)

    def cwd_of(self, pattern: str) -> Optional[str]:
        regex = re.compile(pattern)
        with self._lock:
            for command, cwd in self.calls:
                if regex.search(command):
                    return cwd
        return None


def ahead_behind_handler(table: Dict[Tuple[str, str], Tuple[int, int]]) -> Callable[[str], Tuple[int, str, str]]:
    """Answer ``git rev-list --left-right --count other...branch`` from a table.

    ``table[(branch, other)] = (ahead, behind)``; the reverse direction is
    derived by swapping the counts.
    """
    pattern = re.compile(r"rev-list --left-right --count (\S+)\.\.\.(\S+) --")

    def handler(command: str) -> Tuple[int, str, str]:
        match = pattern.search(command)
        other, branch = match.group(1), match.group(2)
        if (branch, other) in table:
            ahead, behind = table[(branch, other)]
        elif (other, branch) in table:
            behind, ahead = table[(other, branch)]
        else:
            return 128, "", f"fatal: unknown pair {branch} {other}"
        return 0, f"{behind}\t{ahead}\n", ""

    return handler


def scripted_repository(
    runner: FakeRunner,
    path: Path,
    branches: Sequence[str],
    distances: Dict[Tuple[str, str], Tuple[int, int]],
    current: str = "main",
) -> FakeRunner:
    """Script the commands a scan issues against a repository with ``branches``."""
    refs = "".join(
        f"{name}\t{index:040x}\t2024-05-0{1 + index % 9}T10:00:00+00:00\n"
        for index, name in enumerate(branches, start=1)
    )
    runner.on(r"^gh repo view --json nameWithOwner", "owner/repo\n")
    runner.on(r"^git symbolic-ref refs/remotes/origin/HEAD", "refs/remotes/origin/main\n")
    runner.on(r"^git for-each-ref", refs)
    runner.on(
        r"^git worktree list --porcelain",
        f"worktree {path}\nHEAD {1:040x}\nbranch refs/heads/{current}\n\n",
    )
    runner.on(r"^git status --porcelain", "")
    runner.on(r"^gh pr list", "[]")
    runner.fail(r"^git rev-parse --abbrev-ref \S+@\{upstream\}", "fatal: no upstream configured", 128)
    runner.fail(r"^git config branch\.", "", 1)
    runner.on(r"^git rev-parse --abbrev-ref HEAD$", f"{current}\n")
    runner.on_call(r"^git rev-list --left-right --count", ahead_behind_handler(distances))
    return runner


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def settings():
    return Settings(fetch_before_scan=False, max_workers=4)


@pytest.fixture
def store(tmp_path):
    return StateStore(state_dir=tmp_path / "state")


@pytest.fixture
def git_repo(tmp_path):
    """Create a temporary Git repository with one commit on ``main``."""
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    repo = git.Repo.init(repo_path)

    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()

    (repo_path / "README.md").write_text("# Test Project\n")
    repo.index.add(["README.md"])
    repo.index.commit("Initial commit")
    repo.git.branch("-M", "main")

    yield repo_path
    repo.close()


@pytest.fixture
def pinned_repo(store, git_repo):
    """The temporary repository registered as pin 1 of ``owner/repo``."""
    pin = store.register_pin(git_repo, "owner/repo", base_branch="main")
    return pin


@pytest.fixture
def script_repository(fake_runner):
    """``scripted_repository`` bound to the test's fake runner."""

    def script(path, branches, distances, current="main"):
        return scripted_repository(fake_runner, path, branches, distances, current=current)

    return script
