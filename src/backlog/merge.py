"""Fold working-tree, local-branch and remote copies into one view."""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Protocol

from backlog.errors import LoadCancelledError
from backlog.resolve import MOST_PROGRESSED, StatusRanking, recency, resolve_task_conflict
from backlog.tasks.model import BranchTaskStateEntry, StateType, Task, TaskSource

LOCAL_BRANCH_LABEL = "local"

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class AbortSignal(Protocol):
    def is_set(self) -> bool: ...


def check_abort(abort: AbortSignal | None) -> None:
    if abort is not None and abort.is_set():
        raise LoadCancelledError()


def build_latest_state_map(
    state_entries: Iterable[BranchTaskStateEntry] = (),
    local_tasks: Iterable[Task] = (),
) -> dict[str, BranchTaskStateEntry]:
    """Freshest known state per id across every scanned branch.

    Working-tree tasks count as ``task`` entries and win timestamp ties.
    """
    latest: dict[str, BranchTaskStateEntry] = {}

    def _update(entry: BranchTaskStateEntry, wins_ties: bool) -> None:
        existing = latest.get(entry.id)
        if existing is None:
            latest[entry.id] = entry
        elif entry.last_modified > existing.last_modified:
            latest[entry.id] = entry
        elif wins_ties and entry.last_modified == existing.last_modified:
            latest[entry.id] = entry

    for entry in state_entries:
        _update(entry, wins_ties=False)

    for task in local_tasks:
        if not task.id:
            continue
        stamp = task.last_modified or recency(task) or _EPOCH
        _update(
            BranchTaskStateEntry(
                id=task.id,
                type=StateType.TASK,
                branch=LOCAL_BRANCH_LABEL,
                path=task.file_path,
                last_modified=stamp,
            ),
            wins_ties=True,
        )
    return latest


def filter_tasks_by_state_snapshots(
    tasks: Iterable[Task], latest: dict[str, BranchTaskStateEntry]
) -> list[Task]:
    """Drop tasks whose most recent state on any branch is not an active task."""
    kept: list[Task] = []
    for task in tasks:
        entry = latest.get(task.id)
        if entry is None or entry.type is StateType.TASK:
            kept.append(task)
    return kept


def _fold(
    merged: dict[str, Task],
    incoming: Iterable[Task],
    ranking: StatusRanking,
    strategy: str,
    abort: AbortSignal | None,
) -> None:
    for task in incoming:
        check_abort(abort)
        existing = merged.get(task.id)
        if existing is None:
            merged[task.id] = task
        else:
            merged[task.id] = resolve_task_conflict(existing, task, ranking, strategy)


def merge_tasks(
    local_tasks: Sequence[Task],
    local_branch_tasks: Sequence[Task],
    remote_tasks: Sequence[Task],
    statuses: Sequence[str],
    strategy: str = MOST_PROGRESSED,
    *,
    state_entries: Sequence[BranchTaskStateEntry] | None = None,
    abort: AbortSignal | None = None,
) -> dict[str, Task]:
    """Reconcile three sources into one record per id.

    Resolution is a two-stage pairwise fold: each local-branch copy is
    resolved against the current winner, then each remote copy is. This is
    not a true n-way maximum; when the strategy's ordering is not total over
    the candidates, the arrival order within a stage can matter.

    *state_entries* is ``None`` when cross-branch checking is disabled, in
    which case the state-snapshot filter is skipped.

    The returned dict is new; on abort nothing partial escapes.
    """
    ranking = StatusRanking(statuses)
    check_abort(abort)

    merged: dict[str, Task] = {}
    for task in local_tasks:
        merged[task.id] = dataclasses.replace(task, source=task.source or TaskSource.LOCAL)

    _fold(merged, local_branch_tasks, ranking, strategy, abort)
    check_abort(abort)
    _fold(merged, remote_tasks, ranking, strategy, abort)
    check_abort(abort)

    if state_entries is None:
        return merged

    latest = build_latest_state_map(state_entries, local_tasks)
    return {t.id: t for t in filter_tasks_by_state_snapshots(merged.values(), latest)}
