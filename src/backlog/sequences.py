"""Execution waves derived from task dependencies.

Wave 1 holds every active task whose active dependencies are all satisfied
(or that has none); wave *n* holds the tasks whose dependencies all sit in
waves before *n*. Dependencies on tasks outside the active set, usually Done
ones, never block. Tasks caught in a cycle, depending on themselves, or
downstream of either end up unsequenced.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence as Seq

from backlog import log
from backlog.errors import TaskNotFoundError, ValidationError
from backlog.tasks.ids import canonical_task_id
from backlog.tasks.model import Sequence, SequencePlan, Task


def _active_deps(task: Task, active_ids: set[str]) -> list[str]:
    """Canonical ids of the dependencies of *task* that are active."""
    return [key for key in map(canonical_task_id, task.dependencies) if key in active_ids]


def _depends_on(task: Task, key: str) -> bool:
    return any(canonical_task_id(d) == key for d in task.dependencies)


def _without_dep(task: Task, key: str) -> Task:
    return _with_deps(task, [d for d in task.dependencies if canonical_task_id(d) != key])


def compute_sequences(active_tasks: Seq[Task]) -> SequencePlan:
    """Layer *active_tasks* into waves, keeping input order within each wave."""
    active_ids = {canonical_task_id(t.id) for t in active_tasks}
    wave_of: dict[str, int] = {}
    remaining = list(active_tasks)
    sequences: list[Sequence] = []

    while remaining:
        index = len(sequences) + 1
        ready: list[Task] = []
        blocked: list[Task] = []
        for task in remaining:
            deps = _active_deps(task, active_ids)
            if all(d in wave_of for d in deps):
                ready.append(task)
            else:
                blocked.append(task)
        if not ready:
            break
        for task in ready:
            wave_of[canonical_task_id(task.id)] = index
        sequences.append(Sequence(index=index, tasks=ready))
        remaining = blocked

    if remaining:
        log.debug(f"Unsequenced (cyclic or blocked by a cycle): {', '.join(t.id for t in remaining)}")
    return SequencePlan(unsequenced=remaining, sequences=sequences)


def _with_deps(task: Task, deps: list[str]) -> Task:
    return dataclasses.replace(task, dependencies=deps)


def _pinned_layers(
    others: list[Task], active_ids: set[str], moved_key: str, target_index: int
) -> dict[str, int] | None:
    """Waves with *moved_key* forced into wave *target_index*, other edges intact.

    Keys of the result are canonical ids. Past the last wave the moved task
    becomes a new last wave. Returns ``None`` when layering stalls before the
    target because the remaining tasks all wait on the moved one.
    """
    wave_of: dict[str, int] = {}
    remaining = list(others)
    index = 1
    while True:
        ready = [t for t in remaining if all(d in wave_of for d in _active_deps(t, active_ids))]
        place_here = moved_key not in wave_of and (index == target_index or not remaining)
        if not ready and not place_here:
            break
        for task in ready:
            wave_of[canonical_task_id(task.id)] = index
        if place_here:
            wave_of[moved_key] = index
        remaining = [t for t in remaining if canonical_task_id(t.id) not in wave_of]
        index += 1
    return wave_of if moved_key in wave_of else None


def plan_move_to_sequence(
    all_tasks: Seq[Task],
    sequences: Seq[Sequence],
    task_id: str,
    target_index: int,
    unsequenced: Seq[Task] = (),
) -> list[Task]:
    """Dependency edits that place *task_id* in wave *target_index*.

    The moved task keeps its dependencies on inactive tasks and on active
    tasks that stay ahead of the target; if none of those sits in wave
    ``target_index - 1`` it gains a dependency on every task there. When the
    target lies behind tasks that wait on the moved one, those direct
    dependents at or before the target wave drop their dependency on it, so
    the edit never introduces a cycle. A target past the last wave becomes a
    new last wave. Returns copies of only the tasks that changed.
    """
    if target_index < 1:
        raise ValidationError("targetSequenceIndex must be >= 1")

    moved_key = canonical_task_id(task_id)
    moved = next((t for t in all_tasks if canonical_task_id(t.id) == moved_key), None)
    if moved is None:
        raise TaskNotFoundError(task_id)

    active = [t for seq in sequences for t in seq.tasks] + list(unsequenced)
    active_ids = {canonical_task_id(t.id) for t in active} | {moved_key}
    others = [t for t in active if canonical_task_id(t.id) != moved_key]

    detach: set[str] = set()
    wave_of = _pinned_layers(others, active_ids, moved_key, target_index)
    if wave_of is None:
        # Dependents would block the target; lay the rest out without them.
        base = compute_sequences([_without_dep(t, moved_key) for t in others])
        wave_of = {canonical_task_id(t.id): seq.index for seq in base.sequences for t in seq.tasks}
        target_index = min(target_index, len(base.sequences) + 1)
        wave_of[moved_key] = target_index
        detach = {
            t.id
            for t in others
            if _depends_on(t, moved_key) and wave_of.get(canonical_task_id(t.id), target_index + 1) <= target_index
        }
    else:
        target_index = wave_of[moved_key]

    kept = [d for d in moved.dependencies if canonical_task_id(d) not in active_ids]
    ahead = [
        d for d in moved.dependencies
        if canonical_task_id(d) in active_ids
        and canonical_task_id(d) != moved_key
        and wave_of.get(canonical_task_id(d), target_index) < target_index
    ]
    if target_index > 1 and not any(wave_of[canonical_task_id(d)] == target_index - 1 for d in ahead):
        ahead_keys = {canonical_task_id(d) for d in ahead}
        ahead += [
            t.id
            for t in others
            if wave_of.get(canonical_task_id(t.id)) == target_index - 1
            and canonical_task_id(t.id) not in ahead_keys
        ]
    new_deps = kept + ahead

    changed: list[Task] = []
    if new_deps != moved.dependencies:
        changed.append(_with_deps(moved, new_deps))
    for task in all_tasks:
        if task.id in detach:
            changed.append(_without_dep(task, moved_key))
    return changed


def plan_move_to_unsequenced(all_tasks: Seq[Task], task_id: str, active_ids: set[str] | None = None) -> list[Task]:
    """Detach *task_id* from the active dependency graph.

    Its dependencies on other active tasks are removed; references to inactive
    tasks stay. Refused while another active task depends on it, since that
    task would lose its ordering silently.
    """
    moved_key = canonical_task_id(task_id)
    moved = next((t for t in all_tasks if canonical_task_id(t.id) == moved_key), None)
    if moved is None:
        raise TaskNotFoundError(task_id)
    if active_ids is None:
        active_ids = {t.id for t in all_tasks}
    active_keys = {canonical_task_id(i) for i in active_ids}

    dependents = [
        t.id
        for t in all_tasks
        if canonical_task_id(t.id) in active_keys
        and canonical_task_id(t.id) != moved_key
        and _depends_on(t, moved_key)
    ]
    if dependents:
        raise ValidationError(
            f"Cannot move {moved.id} to Unsequenced: {', '.join(dependents)} depend on it"
        )

    kept = [d for d in moved.dependencies if canonical_task_id(d) not in active_keys]
    if kept == moved.dependencies:
        return []
    return [_with_deps(moved, kept)]
