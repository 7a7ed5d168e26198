"""Core: the entry point callers (CLI, server, tools) use for task operations."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from backlog import log
from backlog.config import BacklogConfig, load_config
from backlog.content_store import ContentStore
from backlog.errors import (
    BacklogError,
    CrossBranchWriteError,
    LoadCancelledError,
    TaskNotFoundError,
    ValidationError,
)
from backlog.git_ops import GitGateway
from backlog.loader import (
    ProgressCallback,
    find_task_in_local_branches,
    find_task_in_remote_branches,
    load_local_branch_tasks,
    load_remote_tasks,
    task_loading_message,
)
from backlog.merge import AbortSignal, check_abort, merge_tasks
from backlog.reorder import DEFAULT_ORDINAL_STEP, calculate_new_ordinal, resolve_ordinal_conflicts
from backlog.search import SearchFilters, SearchService
from backlog.sequences import compute_sequences, plan_move_to_sequence, plan_move_to_unsequenced
from backlog.storage import FileSystemStorage
from backlog.tasks.ids import canonical_task_id, next_task_id, normalize_task_id, sort_key, task_ids_equal
from backlog.tasks.model import BranchTaskStateEntry, SequencePlan, Task, TaskSource


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()


@dataclass
class TaskListFilter:
    status: str | None = None
    assignee: str | None = None
    priority: str | None = None
    parent_task_id: str | None = None
    labels: list[str] = field(default_factory=list)


@dataclass
class ReorderResult:
    updated_task: Task
    changed_tasks: list[Task]


def _now_stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M")


def apply_task_filters(tasks: Sequence[Task], filters: TaskListFilter | None) -> list[Task]:
    result = list(tasks)
    if filters is None:
        return result
    if filters.status:
        wanted = filters.status.lower()
        result = [t for t in result if (t.status or "").lower() == wanted]
    if filters.assignee:
        wanted = filters.assignee.lower()
        result = [t for t in result if any(a.lower() == wanted for a in t.assignee)]
    if filters.priority:
        wanted = filters.priority.lower()
        result = [t for t in result if (t.priority or "").lower() == wanted]
    if filters.parent_task_id:
        parent = filters.parent_task_id
        result = [t for t in result if t.parent_task_id and task_ids_equal(parent, t.parent_task_id)]
    labels = {lbl.lower() for lbl in filters.labels if lbl}
    if labels:
        result = [t for t in result if labels & {lbl.lower() for lbl in t.labels}]
    return result


class Core:
    """One logical session over a repository's backlog.

    Owns the content store and search index for the session; construct one
    per CLI invocation or server process and pass it to whatever needs it.
    """

    def __init__(
        self,
        root: Path,
        *,
        enable_watchers: bool = False,
        config: BacklogConfig | None = None,
        storage: FileSystemStorage | None = None,
        git: GitGateway | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        self.root = Path(root)
        self.progress = progress
        # Batch (CLI) use leaves watchers off so nothing runs after exit.
        self.enable_watchers = enable_watchers
        self.storage = storage or FileSystemStorage(self.root)
        self.git = git or GitGateway(self.root)
        self._config = config
        self._store: ContentStore | None = None
        self._search: SearchService | None = None

    @property
    def config(self) -> BacklogConfig:
        if self._config is None:
            self._config = load_config(self.root)
        return self._config

    # ── reconciliation ───────────────────────────────────────────

    async def _reconcile(
        self,
        progress: ProgressCallback | None = None,
        abort: AbortSignal | None = None,
    ) -> list[Task]:
        cfg = self.config
        check_abort(abort)

        local_tasks = await asyncio.to_thread(self.storage.list_tasks)
        check_abort(abort)

        branch_tasks: list[Task] = []
        remote_tasks: list[Task] = []
        state_entries: list[BranchTaskStateEntry] | None = None

        if cfg.check_active_branches:
            if progress is not None:
                progress(task_loading_message(cfg))
            branch_entries: list[BranchTaskStateEntry] = []
            remote_entries: list[BranchTaskStateEntry] = []
            try:
                if await self.git.is_repository():
                    remote_tasks, branch_tasks = await asyncio.gather(
                        load_remote_tasks(self.git, cfg, progress, remote_entries, abort),
                        load_local_branch_tasks(self.git, cfg, progress, branch_entries, abort),
                    )
                    state_entries = branch_entries + remote_entries
                else:
                    log.debug(f"{self.root} is not a git repository; using the working tree only")
            except LoadCancelledError:
                raise
            except (BacklogError, OSError) as exc:
                log.warn(f"Cross-branch reconciliation failed, showing local tasks only: {exc}")
                branch_tasks, remote_tasks, state_entries = [], [], None

        check_abort(abort)
        if progress is not None:
            progress("Merging tasks...")
        merged = merge_tasks(
            local_tasks,
            branch_tasks,
            remote_tasks,
            cfg.statuses,
            cfg.task_resolution_strategy,
            state_entries=state_entries,
            abort=abort,
        )
        return sorted(merged.values(), key=lambda t: sort_key(t.id))

    async def load_tasks(
        self,
        progress: ProgressCallback | None = None,
        abort: AbortSignal | None = None,
    ) -> list[Task]:
        """Full reconciliation pass over the working tree and active branches.

        A successful pass also refreshes the session's content store; an
        aborted one raises :class:`LoadCancelledError` and publishes nothing.
        """
        tasks = await self._reconcile(progress or self.progress, abort)
        if self._store is not None:
            self._store.publish(tasks)
        return tasks

    async def get_content_store(self) -> ContentStore:
        if self._store is None:
            self._store = ContentStore(
                self.storage, lambda: self._reconcile(self.progress), watch=self.enable_watchers
            )
        await self._store.ensure_initialized()
        return self._store

    async def get_search_service(self) -> SearchService:
        if self._search is None:
            self._search = SearchService(await self.get_content_store())
        await self._search.ensure_initialized()
        return self._search

    # ── queries ──────────────────────────────────────────────────

    async def query_tasks(
        self,
        filters: TaskListFilter | None = None,
        query: str | None = None,
        limit: int | None = None,
        include_cross_branch: bool = True,
    ) -> list[Task]:
        def _finish(tasks: Sequence[Task]) -> list[Task]:
            result = apply_task_filters(tasks, filters)
            if not include_cross_branch:
                result = [t for t in result if t.is_local_editable]
            if limit is not None and limit >= 0:
                result = result[:limit]
            return result

        text = (query or "").strip()
        if not text:
            store = await self.get_content_store()
            return _finish(store.get_tasks())

        search = await self.get_search_service()
        search_filters = None
        if filters is not None:
            search_filters = SearchFilters.build(
                status=filters.status,
                priority=filters.priority,
                assignee=filters.assignee,
                labels=filters.labels,
            )
        results = search.search(text, filters=search_filters)
        return _finish([r.task for r in results])

    async def get_task(self, task_id: str) -> Task | None:
        store = await self.get_content_store()
        found = store.get_task(task_id)
        if found is not None:
            return found
        return await asyncio.to_thread(self.storage.load_task, normalize_task_id(task_id))

    async def load_task_by_id(self, task_id: str) -> Task | None:
        """Look for *task_id* in the working tree, then local branches, then remotes."""
        canonical = normalize_task_id(task_id)
        local = await asyncio.to_thread(self.storage.load_task, canonical)
        if local is not None:
            return local
        if not await self.git.is_repository():
            return None
        found = await find_task_in_local_branches(self.git, self.config, canonical)
        if found is not None:
            return found
        return await find_task_in_remote_branches(self.git, self.config, canonical)

    # ── writes ───────────────────────────────────────────────────

    def _canonical_status(self, status: str) -> str:
        for known in self.config.statuses:
            if known.lower() == status.strip().lower():
                return known
        valid = ", ".join(self.config.statuses)
        raise ValidationError(f"Invalid status: {status}. Valid statuses are: {valid}")

    async def update_tasks_bulk(
        self,
        tasks: Sequence[Task],
        commit_message: str = "",
        auto_commit: bool | None = None,
    ) -> list[Task]:
        """Persist *tasks* to the working tree, all or nothing on validation."""
        for task in tasks:
            if not task.is_local_editable:
                raise CrossBranchWriteError(task.id, task.branch or "another branch")

        stamp = _now_stamp()
        now = datetime.now(timezone.utc)
        saved: list[Task] = []
        for task in tasks:
            record = dataclasses.replace(
                task,
                updated_date=stamp,
                source=task.source or TaskSource.LOCAL,
                branch=None,
                last_modified=now,
            )
            await asyncio.to_thread(self.storage.save_task, record)
            saved.append(record)

        if self._store is not None and self._store.has_snapshot:
            self._store.upsert_tasks(saved)

        should_commit = self.config.auto_commit if auto_commit is None else auto_commit
        if should_commit and saved:
            paths = [str(Path(t.file_path).relative_to(self.root)) for t in saved if t.file_path]
            await self.git.stage_paths(paths)
            await self.git.commit(commit_message or f"Update {len(saved)} tasks")
        return saved

    async def reorder_task(
        self,
        task_id: str,
        target_status: str,
        ordered_task_ids: Sequence[str],
        target_milestone: str | None | _Unset = UNSET,
        default_step: int = DEFAULT_ORDINAL_STEP,
        commit_message: str | None = None,
        auto_commit: bool | None = None,
    ) -> ReorderResult:
        """Move *task_id* to its place in *ordered_task_ids* within a bucket.

        *ordered_task_ids* is the full intended order of the target bucket,
        including the moved task. Only records whose ordinal, status or
        milestone actually changes are written.
        """
        task_id = normalize_task_id(str(task_id or ""))
        target_status = str(target_status or "").strip()
        ordered = [normalize_task_id(str(i or "")) for i in ordered_task_ids]
        ordered = [i for i in ordered if i]

        if not task_id:
            raise ValidationError("taskId is required")
        if not target_status:
            raise ValidationError("targetStatus is required")
        if not ordered:
            raise ValidationError("orderedTaskIds must include at least one task")
        if not any(task_ids_equal(task_id, oid) for oid in ordered):
            raise ValidationError("orderedTaskIds must include the task being moved")
        seen: set[str] = set()
        for oid in ordered:
            key = canonical_task_id(oid)
            if key in seen:
                raise ValidationError(f"Duplicate task id {oid} in orderedTaskIds")
            seen.add(key)
        target_status = self._canonical_status(target_status)

        loaded = await asyncio.gather(*(self.get_task(oid) for oid in ordered))
        valid = [t for t in loaded if t is not None]
        moved = next((t for t in valid if task_ids_equal(t.id, task_id)), None)
        if moved is None:
            raise TaskNotFoundError(task_id, "while reordering")
        if not moved.is_local_editable:
            raise CrossBranchWriteError(task_id, moved.branch or "another branch", "reordered")

        index = next(i for i, t in enumerate(valid) if t.id == moved.id)
        previous = valid[index - 1] if index > 0 else None
        following = valid[index + 1] if index < len(valid) - 1 else None
        placement = calculate_new_ordinal(previous, following, default_step)

        updates: dict[str, object] = {"status": target_status, "ordinal": placement.ordinal}
        if not isinstance(target_milestone, _Unset):
            milestone = (target_milestone or "").strip()
            updates["milestone"] = milestone or None
        updated_moved = dataclasses.replace(moved, **updates)

        in_order = [updated_moved if i == index else t for i, t in enumerate(valid)]
        resolved = {
            t.id: t
            for t in resolve_ordinal_conflicts(
                in_order,
                default_step=default_step,
                start_ordinal=default_step,
                force_sequential=placement.requires_rebalance,
            )
        }
        resolved.setdefault(updated_moved.id, updated_moved)

        originals = {t.id: t for t in valid}
        changed = [
            t
            for t in resolved.values()
            if (originals[t.id].ordinal, originals[t.id].bucket) != (t.ordinal, t.bucket)
        ]
        blocked = [t for t in changed if not t.is_local_editable]
        if blocked:
            other = blocked[0]
            raise CrossBranchWriteError(other.id, other.branch or "another branch", "renumbered")

        saved = changed
        if changed:
            saved = await self.update_tasks_bulk(
                changed,
                commit_message or f"Reorder tasks in {target_status}",
                auto_commit,
            )
        by_id = {t.id: t for t in saved}
        return ReorderResult(updated_task=by_id.get(moved.id, resolved[moved.id]), changed_tasks=saved)

    # ── sequences ────────────────────────────────────────────────

    async def _active_local_tasks(self) -> tuple[list[Task], list[Task]]:
        all_tasks = await asyncio.to_thread(self.storage.list_tasks)
        active = [t for t in all_tasks if not self.config.is_done(t.status)]
        return all_tasks, active

    async def list_active_sequences(self) -> SequencePlan:
        _, active = await self._active_local_tasks()
        return compute_sequences(active)

    async def move_task_in_sequences(
        self,
        task_id: str,
        *,
        unsequenced: bool = False,
        target_sequence_index: int | None = None,
    ) -> SequencePlan:
        task_id = normalize_task_id(str(task_id or "").strip())
        if not task_id:
            raise ValidationError("taskId is required")

        all_tasks, active = await self._active_local_tasks()
        if not any(t.id == task_id for t in all_tasks):
            raise TaskNotFoundError(task_id)
        if not any(t.id == task_id for t in active):
            raise ValidationError(f"Task {task_id} is done and has no sequence")

        if unsequenced:
            changed = plan_move_to_unsequenced(all_tasks, task_id, {t.id for t in active})
            message = f"Move {task_id} to Unsequenced"
        else:
            if target_sequence_index is None:
                raise ValidationError("targetSequenceIndex must be a number")
            if target_sequence_index < 1:
                raise ValidationError("targetSequenceIndex must be >= 1")
            plan = compute_sequences(active)
            changed = plan_move_to_sequence(
                all_tasks, plan.sequences, task_id, target_sequence_index, plan.unsequenced
            )
            message = f"Update deps/order for {task_id}"

        if changed:
            await self.update_tasks_bulk(changed, message)
        return await self.list_active_sequences()

    # ── ids ──────────────────────────────────────────────────────

    async def generate_next_id(self, parent: str | None = None) -> str:
        store = await self.get_content_store()
        ids = [t.id for t in store.get_tasks()]
        for lister in (
            self.storage.list_drafts,
            self.storage.list_archived_tasks,
            self.storage.list_completed_tasks,
        ):
            ids.extend(t.id for t in await asyncio.to_thread(lister))
        return next_task_id(ids, parent=parent, zero_padded=self.config.zero_padded_ids)

    # ── teardown ─────────────────────────────────────────────────

    def dispose(self) -> None:
        if self._search is not None:
            self._search.dispose()
            self._search = None
        if self._store is not None:
            self._store.dispose()
            self._store = None
