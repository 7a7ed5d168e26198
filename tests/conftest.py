"""Shared fixtures for backlog tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use backlog.io_utils read_text/write_text for consistent UTF-8 I/O.
- Async code runs through asyncio.run inside each test; there is no event loop plugin.
"""

from __future__ import annotations

import hashlib
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import pytest

from backlog.config import BacklogConfig
from backlog.errors import GitError
from backlog.git_ops import BranchRef, TreeEntry
from backlog.io_utils import write_text
from backlog.storage import FileSystemStorage
from backlog.tasks.markdown import serialize_task
from backlog.tasks.model import Task


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register opt-in switch for expensive end-to-end tests."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests marked with 'e2e'.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip e2e tests unless explicitly enabled."""
    if config.getoption("--run-e2e"):
        return

    skip_e2e = pytest.mark.skip(
        reason="E2E tests are skipped by default. Use --run-e2e to include them.",
    )
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _clean_backlog_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's shell from flipping config defaults under a test."""
    monkeypatch.delenv("BACKLOG_REMOTE_OPERATIONS", raising=False)
    monkeypatch.delenv("BACKLOG_CHECK_ACTIVE_BRANCHES", raising=False)


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, capture_output=True, check=True)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo on branch ``main`` for testing."""
    _git(tmp_path, "init")
    _git(tmp_path, "checkout", "-B", "main")
    _git(tmp_path, "config", "user.name", "Test")
    _git(tmp_path, "config", "user.email", "test@test")
    _git(tmp_path, "config", "commit.gpgsign", "false")
    write_text(tmp_path / "README.md", "# Test")
    _git(tmp_path, "add", "README.md")
    _git(tmp_path, "commit", "-m", "Initial")
    return tmp_path


def _make_task(
    id: str,
    title: str = "",
    status: str = "To Do",
    dependencies: list[str] | None = None,
    ordinal: int | None = None,
    **kwargs,
) -> Task:
    return Task(
        id=id,
        title=title or f"Task {id}",
        status=status,
        dependencies=dependencies or [],
        ordinal=ordinal,
        created_date=kwargs.pop("created_date", "2025-01-01 09:00"),
        **kwargs,
    )


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def write_tasks():
    """Save tasks into ``<root>/backlog/tasks`` the way the app does."""

    def _write(root: Path, *tasks: Task) -> FileSystemStorage:
        storage = FileSystemStorage(root)
        for task in tasks:
            storage.save_task(task)
        return storage

    return _write


@pytest.fixture
def local_config() -> BacklogConfig:
    """Config with cross-branch scanning switched off."""
    return BacklogConfig(check_active_branches=False)


# ── fakes ────────────────────────────────────────────────────────────


class FakeChangeSource:
    """Stand-in for FileSystemStorage.on_change with a manual trigger."""

    def __init__(self) -> None:
        self.callbacks: list = []

    def on_change(self, callback):
        self.callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self.callbacks:
                self.callbacks.remove(callback)

        return _unsubscribe

    def fire(self) -> None:
        for cb in list(self.callbacks):
            cb()


@pytest.fixture
def change_source() -> FakeChangeSource:
    return FakeChangeSource()


@dataclass
class FakeBranch:
    is_remote: bool = False
    committed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    files: dict[str, str] = field(default_factory=dict)
    fail: bool = False


class FakeGit:
    """In-memory GitGateway: branches map to ``{path: content}`` trees."""

    def __init__(self, current: str = "main", remotes: bool = False) -> None:
        self.current = current
        self.remotes = remotes
        self.branches: dict[str, FakeBranch] = {}
        self.blobs: dict[str, str] = {}
        self.blob_reads = 0
        self.fetches = 0
        self.fetch_error: str | None = None
        self.commits: list[str] = []
        self.staged: list[str] = []

    def add_branch(self, name: str, *tasks: Task, is_remote: bool = False, **kwargs) -> FakeBranch:
        branch = FakeBranch(is_remote=is_remote, **kwargs)
        for task in tasks:
            self.put(branch, f"backlog/tasks/{task.id} - {task.title.replace(' ', '-')}.md", task)
        self.branches[name] = branch
        return branch

    def put(self, branch: FakeBranch, path: str, task: Task) -> None:
        branch.files[path] = serialize_task(task)

    async def is_repository(self) -> bool:
        return True

    async def current_branch(self) -> str:
        return self.current

    async def has_any_remote(self) -> bool:
        return self.remotes

    async def fetch(self) -> None:
        self.fetches += 1
        if self.fetch_error:
            raise GitError(("fetch",), 128, self.fetch_error)

    async def list_branch_refs(self) -> list[BranchRef]:
        return [BranchRef(n, b.is_remote, b.committed_at) for n, b in self.branches.items()]

    async def list_files_in_tree(self, ref: str, path_prefix: str) -> list[TreeEntry]:
        branch = self.branches[ref]
        if branch.fail:
            raise GitError(("ls-tree", ref), 128, f"fatal: Not a valid object name {ref}")
        entries = []
        for path, content in branch.files.items():
            if not path.startswith(path_prefix):
                continue
            sha = hashlib.sha1(content.encode()).hexdigest()
            self.blobs[sha] = content
            entries.append(TreeEntry(path=path, sha=sha))
        return entries

    async def read_blob(self, sha: str) -> str:
        self.blob_reads += 1
        return self.blobs[sha]

    async def file_modified_times(self, ref: str, path_prefix: str) -> dict[str, datetime]:
        branch = self.branches[ref]
        return {p: branch.committed_at for p in branch.files}

    async def stage_paths(self, paths: list[str]) -> bool:
        self.staged.extend(paths)
        return True

    async def commit(self, message: str) -> bool:
        self.commits.append(message)
        return True


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()
