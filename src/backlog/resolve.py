"""Pick the authoritative copy when two branches disagree about a task."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone

from backlog.tasks.model import Task, TaskSource

MOST_RECENT = "most_recent"
MOST_PROGRESSED = "most_progressed"

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

# Higher wins a full tie; the working tree is preferred over any branch copy.
_SOURCE_PREFERENCE: dict[TaskSource | None, int] = {
    None: 3,
    TaskSource.LOCAL: 3,
    TaskSource.COMPLETED: 2,
    TaskSource.LOCAL_BRANCH: 1,
    TaskSource.REMOTE: 0,
}


class StatusRanking:
    """Ordered statuses with O(1) rank lookup; unknown statuses rank lowest."""

    def __init__(self, statuses: Sequence[str]) -> None:
        self.statuses = list(statuses)
        self._rank = {s.strip().lower(): i for i, s in enumerate(self.statuses)}

    def rank(self, status: str | None) -> int:
        return self._rank.get((status or "").strip().lower(), -1)


def _parse_date(value: str) -> datetime | None:
    value = (value or "").strip()
    if not value:
        return None
    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def recency(task: Task) -> datetime:
    """Best known modification time: ``last_modified``, then ``updated_date``, then ``created_date``."""
    if task.last_modified is not None:
        lm = task.last_modified
        return lm if lm.tzinfo else lm.replace(tzinfo=timezone.utc)
    return _parse_date(task.updated_date) or _parse_date(task.created_date) or _EPOCH


def _tiebreak(a: Task, b: Task) -> Task:
    pa, pb = _SOURCE_PREFERENCE.get(a.source, 0), _SOURCE_PREFERENCE.get(b.source, 0)
    if pa != pb:
        return a if pa > pb else b
    ba, bb = a.branch or "", b.branch or ""
    if ba != bb:
        return a if ba < bb else b
    return a


def _most_recent(a: Task, b: Task) -> Task:
    ra, rb = recency(a), recency(b)
    if ra != rb:
        return a if ra > rb else b
    return _tiebreak(a, b)


def resolve_task_conflict(
    a: Task,
    b: Task,
    statuses: Sequence[str] | StatusRanking,
    strategy: str = MOST_PROGRESSED,
) -> Task:
    """Return whichever of *a* and *b* should stand for the task.

    ``most_recent`` keeps the later-modified copy. ``most_progressed`` keeps
    the copy whose status sits further along *statuses*, and falls back to
    ``most_recent`` when both are equally far along. The outcome does not
    depend on argument order.
    """
    if strategy == MOST_RECENT:
        return _most_recent(a, b)

    ranking = statuses if isinstance(statuses, StatusRanking) else StatusRanking(statuses)
    ra, rb = ranking.rank(a.status), ranking.rank(b.status)
    if ra != rb:
        return a if ra > rb else b
    return _most_recent(a, b)
