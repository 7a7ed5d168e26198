"""Filesystem record storage for the current working tree.

Layout under the repository root::

    backlog/tasks/          active tasks
    backlog/drafts/         drafts
    backlog/archive/tasks/  archived tasks
    backlog/completed/      completed tasks

Each record is ``<id> - <Title-Slug>.md``.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from backlog import log
from backlog.config import BACKLOG_DIR
from backlog.io_utils import read_text, write_text_atomic
from backlog.tasks.ids import id_from_filename, normalize_task_id, sort_key, task_ids_equal
from backlog.tasks.markdown import RecordFormatError, parse_task, serialize_task
from backlog.tasks.model import StateType, Task, TaskSource

TASKS_DIR = "tasks"
DRAFTS_DIR = "drafts"
ARCHIVE_TASKS_DIR = "archive/tasks"
COMPLETED_DIR = "completed"

# Relative to the repo root, used for both the working tree and branch trees.
STATE_DIRS: dict[StateType, str] = {
    StateType.TASK: f"{BACKLOG_DIR}/{TASKS_DIR}",
    StateType.DRAFT: f"{BACKLOG_DIR}/{DRAFTS_DIR}",
    StateType.ARCHIVED: f"{BACKLOG_DIR}/{ARCHIVE_TASKS_DIR}",
    StateType.COMPLETED: f"{BACKLOG_DIR}/{COMPLETED_DIR}",
}

ChangeCallback = Callable[[], None]


def slugify_title(title: str, max_len: int = 60) -> str:
    """Filename-safe form of a task title (``Fix login!`` -> ``Fix-login``)."""
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", title).strip("-.")
    return slug[:max_len].rstrip("-.")


def record_filename(task: Task) -> str:
    slug = slugify_title(task.title)
    return f"{task.id} - {slug}.md" if slug else f"{task.id}.md"


def classify_path(path: str) -> StateType | None:
    """Map a repo-relative record path to the state its directory implies."""
    parent = path.rsplit("/", 1)[0] if "/" in path else ""
    for state, directory in STATE_DIRS.items():
        if parent == directory:
            return state
    return None


class DirectoryWatcher:
    """Poll a directory tree for ``*.md`` changes and notify subscribers.

    Runs as an asyncio task on the loop that subscribed first. Tests call
    :meth:`poll_once` directly instead of waiting on the timer.
    """

    def __init__(self, root: Path, interval: float = 1.0) -> None:
        self.root = root
        self.interval = interval
        self._callbacks: list[ChangeCallback] = []
        self._snapshot: dict[str, tuple[int, int]] = {}
        self._task: asyncio.Task[None] | None = None

    def _scan(self) -> dict[str, tuple[int, int]]:
        snap: dict[str, tuple[int, int]] = {}
        if not self.root.is_dir():
            return snap
        for p in self.root.rglob("*.md"):
            try:
                st = p.stat()
            except OSError:
                continue
            snap[str(p)] = (st.st_mtime_ns, st.st_size)
        return snap

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        self._callbacks.append(callback)
        if self._task is None:
            self._snapshot = self._scan()
            with contextlib.suppress(RuntimeError):
                self._task = asyncio.get_running_loop().create_task(self._run())

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
            if not self._callbacks:
                self.stop()

        return _unsubscribe

    def poll_once(self) -> bool:
        """Rescan; fire callbacks and return ``True`` if anything changed."""
        current = self._scan()
        if current == self._snapshot:
            return False
        self._snapshot = current
        for cb in list(self._callbacks):
            cb()
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.poll_once()

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


class FileSystemStorage:
    """Read/write access to the records in the current working tree."""

    def __init__(self, root: Path, poll_interval: float = 1.0) -> None:
        self.root = Path(root)
        self.backlog_dir = self.root / BACKLOG_DIR
        self._watcher = DirectoryWatcher(self.backlog_dir, interval=poll_interval)

    def dir_for(self, state: StateType) -> Path:
        return self.root / STATE_DIRS[state]

    @property
    def tasks_dir(self) -> Path:
        return self.dir_for(StateType.TASK)

    # ── reading ──────────────────────────────────────────────────

    def _load_file(self, path: Path) -> Task | None:
        try:
            task = parse_task(read_text(path))
        except (OSError, UnicodeDecodeError, RecordFormatError) as exc:
            log.warn(f"Skipping unreadable record {path.name}: {exc}")
            return None
        task.file_path = str(path)
        task.last_modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return task

    def _list_dir(self, state: StateType) -> list[Task]:
        directory = self.dir_for(state)
        if not directory.is_dir():
            return []
        tasks: list[Task] = []
        for path in sorted(directory.glob("*.md")):
            if id_from_filename(path.name) is None:
                continue
            task = self._load_file(path)
            if task is not None:
                if state is StateType.COMPLETED:
                    task.source = TaskSource.COMPLETED
                tasks.append(task)
        tasks.sort(key=lambda t: sort_key(t.id))
        return tasks

    def _find_path(self, task_id: str, state: StateType = StateType.TASK) -> Path | None:
        directory = self.dir_for(state)
        if not directory.is_dir():
            return None
        for path in directory.glob("*.md"):
            file_id = id_from_filename(path.name)
            if file_id and task_ids_equal(file_id, task_id):
                return path
        return None

    def load_task(self, task_id: str) -> Task | None:
        path = self._find_path(normalize_task_id(task_id))
        return self._load_file(path) if path else None

    def list_tasks(self) -> list[Task]:
        return self._list_dir(StateType.TASK)

    def list_drafts(self) -> list[Task]:
        return self._list_dir(StateType.DRAFT)

    def list_archived_tasks(self) -> list[Task]:
        return self._list_dir(StateType.ARCHIVED)

    def list_completed_tasks(self) -> list[Task]:
        return self._list_dir(StateType.COMPLETED)

    # ── writing ──────────────────────────────────────────────────

    def save_task(self, task: Task) -> Path:
        """Write *task* to its directory, renaming the file if the title changed."""
        state = StateType.COMPLETED if task.source is TaskSource.COMPLETED else StateType.TASK
        directory = self.dir_for(state)
        target = directory / record_filename(task)

        existing = self._find_path(task.id, state)
        write_text_atomic(target, serialize_task(task))
        if existing is not None and existing != target:
            existing.unlink(missing_ok=True)

        task.file_path = str(target)
        log.debug(f"Saved {task.id} -> {target.relative_to(self.root)}")
        return target

    # ── change notification ──────────────────────────────────────

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Call *callback* whenever a record under ``backlog/`` changes.

        Returns an unsubscribe function.
        """
        return self._watcher.subscribe(callback)

    @property
    def watcher(self) -> DirectoryWatcher:
        return self._watcher
