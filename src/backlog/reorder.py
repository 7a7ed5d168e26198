"""Ordinals: integer sort keys giving a stable custom order per bucket.

A bucket is ``(status, milestone)``. Ordinals are spaced ``DEFAULT_ORDINAL_STEP``
apart so a move usually lands on a midpoint and rewrites one record. When two
neighbours are adjacent integers there is no midpoint left and the bucket is
rebalanced onto a fresh sequential grid.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass

from backlog.tasks.model import Task

DEFAULT_ORDINAL_STEP = 1000


@dataclass(frozen=True)
class OrdinalResult:
    ordinal: int
    requires_rebalance: bool = False


def calculate_new_ordinal(
    previous: Task | None = None,
    next: Task | None = None,
    default_step: int = DEFAULT_ORDINAL_STEP,
) -> OrdinalResult:
    """Ordinal for a task placed between *previous* and *next*.

    Either neighbour may be ``None`` (an end of the bucket). A neighbour
    without an ordinal counts as absent.
    """
    prev_ord = previous.ordinal if previous is not None else None
    next_ord = next.ordinal if next is not None else None

    if prev_ord is None and next_ord is None:
        # A neighbour that exists but has never been ordered forces a full grid.
        unordered_neighbour = previous is not None or next is not None
        return OrdinalResult(default_step, requires_rebalance=unordered_neighbour)

    if prev_ord is None:
        assert next_ord is not None
        if previous is not None:
            return OrdinalResult(default_step, requires_rebalance=True)
        candidate = next_ord // 2
        if candidate >= 1 and candidate < next_ord:
            return OrdinalResult(candidate)
        return OrdinalResult(default_step, requires_rebalance=True)

    if next_ord is None:
        if next is not None:
            return OrdinalResult(prev_ord + default_step, requires_rebalance=True)
        return OrdinalResult(prev_ord + default_step)

    if next_ord - prev_ord > 1:
        return OrdinalResult(prev_ord + (next_ord - prev_ord) // 2)
    return OrdinalResult(prev_ord + default_step, requires_rebalance=True)


def _has_adjacent_duplicates(tasks: Sequence[Task]) -> bool:
    return any(
        a.ordinal is not None and a.ordinal == b.ordinal for a, b in zip(tasks, tasks[1:])
    )


def resolve_ordinal_conflicts(
    tasks: Sequence[Task],
    *,
    default_step: int = DEFAULT_ORDINAL_STEP,
    start_ordinal: int | None = None,
    force_sequential: bool = False,
) -> list[Task]:
    """Make ordinals unique and strictly increasing in the given order.

    *tasks* is one bucket in its intended order. Returns copies of only the
    tasks whose ordinal changed, so callers persist as few records as
    possible. With *force_sequential*, or when two neighbours share an
    ordinal, the whole bucket is laid out as ``start, start+step, ...``.
    Otherwise existing ordinals are kept wherever they already increase and
    only missing or out-of-order ones are pushed past their predecessor.
    """
    start = default_step if start_ordinal is None else start_ordinal
    sequential = force_sequential or _has_adjacent_duplicates(tasks)

    changed: list[Task] = []
    last: int | None = None
    for index, task in enumerate(tasks):
        if sequential:
            assigned = start + index * default_step
        elif task.ordinal is None:
            assigned = start if last is None else last + default_step
        elif last is not None and task.ordinal <= last:
            assigned = last + default_step
        else:
            assigned = task.ordinal
        if assigned != task.ordinal:
            changed.append(dataclasses.replace(task, ordinal=assigned))
        last = assigned
    return changed


def apply_ordinals(tasks: Sequence[Task], changed: Sequence[Task]) -> list[Task]:
    """*tasks* with the records from *changed* substituted by id."""
    by_id = {t.id: t for t in changed}
    return [by_id.get(t.id, t) for t in tasks]
