"""Branch task scanner: find every copy of every task across branches."""

from __future__ import annotations

import asyncio
import posixpath
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from backlog import log
from backlog.config import BACKLOG_DIR, BacklogConfig
from backlog.errors import BacklogError, LoadCancelledError, describe_git_failure
from backlog.git_ops import BranchRef, GitGateway, TreeEntry
from backlog.merge import AbortSignal, check_abort
from backlog.resolve import recency
from backlog.storage import classify_path
from backlog.tasks.ids import id_from_filename, task_ids_equal
from backlog.tasks.markdown import RecordFormatError, parse_task
from backlog.tasks.model import BranchTaskStateEntry, StateType, Task, TaskSource

ProgressCallback = Callable[[str], None]


@dataclass
class BranchScan:
    """Everything one branch tip contributes to a reconciliation pass."""

    ref: BranchRef
    entries: list[BranchTaskStateEntry] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)


def _report(progress: ProgressCallback | None, msg: str) -> None:
    if progress is not None:
        progress(msg)


def task_loading_message(cfg: BacklogConfig | None) -> str:
    if cfg is not None and not cfg.check_active_branches:
        return "Loading tasks from the working tree..."
    if cfg is None or cfg.remote_operations:
        return "Loading tasks from local and remote branches..."
    return "Loading tasks from local branches..."


def is_active(ref: BranchRef, days: int, now: datetime | None = None) -> bool:
    """A branch is active when its tip commit falls inside the lookback window.

    ``days <= 0`` disables the window.
    """
    if days <= 0:
        return True
    now = now or datetime.now(timezone.utc)
    return ref.committed_at >= now - timedelta(days=days)


async def select_branches(
    git: GitGateway,
    cfg: BacklogConfig,
    *,
    remote: bool,
    now: datetime | None = None,
) -> list[BranchRef]:
    """Active local (or remote-tracking) branches worth scanning.

    The checked-out branch is left out of local scans; the working tree
    already stands for it.
    """
    refs = await git.list_branch_refs()
    current = "" if remote else await git.current_branch()
    selected: list[BranchRef] = []
    for ref in refs:
        if ref.is_remote != remote:
            continue
        if not remote and ref.name == current:
            continue
        if not is_active(ref, cfg.active_branch_days, now):
            log.debug(f"Skipping inactive branch {ref.name}")
            continue
        selected.append(ref)
    return selected


class _BlobCache:
    """Read each blob once per pass; identical files on many branches share a read."""

    def __init__(self, git: GitGateway) -> None:
        self._git = git
        self._pending: dict[str, asyncio.Future[str]] = {}

    async def read(self, entry: TreeEntry) -> str:
        fut = self._pending.get(entry.sha)
        if fut is None:
            fut = asyncio.ensure_future(self._git.read_blob(entry.sha))
            self._pending[entry.sha] = fut
        return await asyncio.shield(fut)


async def scan_branch(
    git: GitGateway,
    ref: BranchRef,
    *,
    blobs: _BlobCache | None = None,
    only_id: str | None = None,
    abort: AbortSignal | None = None,
) -> BranchScan:
    """List the records at *ref*'s tip and hydrate its active tasks."""
    blobs = blobs or _BlobCache(git)
    source = TaskSource.REMOTE if ref.is_remote else TaskSource.LOCAL_BRANCH
    scan = BranchScan(ref=ref)

    tree = await git.list_files_in_tree(ref.name, BACKLOG_DIR)
    check_abort(abort)

    candidates: list[tuple[TreeEntry, StateType, str]] = []
    for entry in tree:
        if not entry.path.endswith(".md"):
            continue
        state = classify_path(entry.path)
        task_id = id_from_filename(posixpath.basename(entry.path))
        if state is None or task_id is None:
            continue
        if only_id is not None and not task_ids_equal(only_id, task_id):
            continue
        candidates.append((entry, state, task_id))
    if not candidates:
        return scan

    times = await git.file_modified_times(ref.name, BACKLOG_DIR)
    check_abort(abort)

    for entry, state, task_id in candidates:
        stamp = times.get(entry.path, ref.committed_at)
        scan.entries.append(
            BranchTaskStateEntry(
                id=task_id, type=state, branch=ref.name, path=entry.path, last_modified=stamp
            )
        )
        if state is not StateType.TASK:
            continue
        content = await blobs.read(entry)
        check_abort(abort)
        try:
            task = parse_task(content)
        except RecordFormatError as exc:
            log.warn(f"Skipping {entry.path} on {ref.name}: {exc}")
            continue
        task.source = source
        task.branch = ref.name
        task.last_modified = stamp
        task.file_path = entry.path
        scan.tasks.append(task)
    return scan


async def scan_branches(
    git: GitGateway,
    refs: list[BranchRef],
    *,
    concurrency: int = 8,
    only_id: str | None = None,
    progress: ProgressCallback | None = None,
    abort: AbortSignal | None = None,
) -> list[BranchScan]:
    """Scan *refs* concurrently. A branch that fails contributes nothing."""
    limit = asyncio.Semaphore(max(1, concurrency))
    blobs = _BlobCache(git)

    async def _one(ref: BranchRef) -> BranchScan:
        async with limit:
            check_abort(abort)
            _report(progress, f"Scanning {ref.name}...")
            try:
                return await scan_branch(git, ref, blobs=blobs, only_id=only_id, abort=abort)
            except LoadCancelledError:
                raise
            except (BacklogError, OSError) as exc:
                log.warn(f"Could not scan branch {ref.name}: {describe_git_failure(exc)}")
                return BranchScan(ref=ref)

    results = await asyncio.gather(*(_one(ref) for ref in refs), return_exceptions=True)
    scans: list[BranchScan] = []
    for result in results:
        if isinstance(result, BaseException):
            raise result
        scans.append(result)
    return scans


def _collect(
    scans: list[BranchScan], state_entries: list[BranchTaskStateEntry] | None
) -> list[Task]:
    tasks: list[Task] = []
    for scan in scans:
        tasks.extend(scan.tasks)
        if state_entries is not None:
            state_entries.extend(scan.entries)
    return tasks


async def _fetch_remotes(git: GitGateway, progress: ProgressCallback | None) -> None:
    if not await git.has_any_remote():
        return
    _report(progress, "Fetching remote branches...")
    try:
        await git.fetch()
    except (BacklogError, OSError) as exc:
        log.warn(f"git fetch failed, using last known remote state: {describe_git_failure(exc)}")


async def load_local_branch_tasks(
    git: GitGateway,
    cfg: BacklogConfig,
    progress: ProgressCallback | None = None,
    state_entries: list[BranchTaskStateEntry] | None = None,
    abort: AbortSignal | None = None,
) -> list[Task]:
    """Tasks found on other active local branches."""
    if not cfg.check_active_branches:
        return []
    refs = await select_branches(git, cfg, remote=False)
    check_abort(abort)
    scans = await scan_branches(
        git, refs, concurrency=cfg.scan_concurrency, progress=progress, abort=abort
    )
    tasks = _collect(scans, state_entries)
    log.debug(f"Loaded {len(tasks)} task copies from {len(refs)} local branches")
    return tasks


async def load_remote_tasks(
    git: GitGateway,
    cfg: BacklogConfig,
    progress: ProgressCallback | None = None,
    state_entries: list[BranchTaskStateEntry] | None = None,
    abort: AbortSignal | None = None,
) -> list[Task]:
    """Tasks found on active remote-tracking branches, after a fetch."""
    if not cfg.check_active_branches or not cfg.remote_operations:
        return []
    await _fetch_remotes(git, progress)
    check_abort(abort)
    refs = await select_branches(git, cfg, remote=True)
    scans = await scan_branches(
        git, refs, concurrency=cfg.scan_concurrency, progress=progress, abort=abort
    )
    tasks = _collect(scans, state_entries)
    log.debug(f"Loaded {len(tasks)} task copies from {len(refs)} remote branches")
    return tasks


def _freshest(tasks: list[Task]) -> Task | None:
    best: Task | None = None
    for task in tasks:
        if best is None or recency(task) > recency(best):
            best = task
    return best


async def find_task_in_local_branches(
    git: GitGateway, cfg: BacklogConfig, task_id: str
) -> Task | None:
    """Freshest copy of *task_id* on any other active local branch."""
    refs = await select_branches(git, cfg, remote=False)
    scans = await scan_branches(git, refs, concurrency=cfg.scan_concurrency, only_id=task_id)
    return _freshest(_collect(scans, None))


async def find_task_in_remote_branches(
    git: GitGateway, cfg: BacklogConfig, task_id: str
) -> Task | None:
    """Freshest copy of *task_id* on any active remote-tracking branch."""
    if not cfg.remote_operations:
        return None
    refs = await select_branches(git, cfg, remote=True)
    scans = await scan_branches(git, refs, concurrency=cfg.scan_concurrency, only_id=task_id)
    return _freshest(_collect(scans, None))
