"""Task id normalization, comparison and allocation."""

from __future__ import annotations

import re
from collections.abc import Iterable

TASK_PREFIX = "task-"

_ID_RE = re.compile(r"^task-(\d+)((?:\.\d+)*)$", re.IGNORECASE)
_FILENAME_ID_RE = re.compile(r"^(task-\d+(?:\.\d+)*)", re.IGNORECASE)


def normalize_task_id(raw: str) -> str:
    """Return the canonical ``task-<n>[.<m>]`` form of *raw*.

    Accepts bare numbers (``"7"``, ``"7.1"``) and any prefix casing.
    """
    value = str(raw or "").strip()
    if not value:
        return ""
    if value.lower().startswith(TASK_PREFIX):
        return TASK_PREFIX + value[len(TASK_PREFIX):]
    return TASK_PREFIX + value


def _numeric_parts(task_id: str) -> tuple[int, ...] | None:
    m = _ID_RE.match(normalize_task_id(task_id))
    if not m:
        return None
    parts = [m.group(1)] + [p for p in m.group(2).split(".") if p]
    return tuple(int(p) for p in parts)


def canonical_task_id(raw: str) -> str:
    """Comparison key for *raw*: lowercase prefix, no zero padding."""
    parts = _numeric_parts(raw)
    if parts is None:
        return normalize_task_id(raw).lower()
    return TASK_PREFIX + ".".join(str(p) for p in parts)


def task_ids_equal(a: str, b: str) -> bool:
    """Compare ids ignoring prefix case and zero padding (``task-01`` == ``TASK-1``)."""
    return canonical_task_id(a) == canonical_task_id(b)


def id_from_filename(name: str) -> str | None:
    """Extract ``task-<n>`` from a record filename like ``task-12 - Fix login.md``."""
    m = _FILENAME_ID_RE.match(name)
    return m.group(1).lower() if m else None


def sort_key(task_id: str) -> tuple:
    """Natural order: ``task-2`` sorts before ``task-10``."""
    parts = _numeric_parts(task_id)
    if parts is None:
        return (1, task_id)
    return (0, parts)


def next_task_id(
    existing_ids: Iterable[str],
    parent: str | None = None,
    zero_padded: int | None = None,
) -> str:
    """Allocate the next free id across every known id.

    Callers pass active, draft, archived and completed ids so ids are never
    reused after everything in the active list is closed out.
    """
    ids = list(existing_ids)

    if parent:
        prefix = next((i for i in ids if task_ids_equal(parent, i)), normalize_task_id(parent))
        top = _numeric_parts(prefix)
        highest = 0
        for task_id in ids:
            parts = _numeric_parts(task_id)
            if parts is None or top is None:
                continue
            if len(parts) > len(top) and parts[: len(top)] == top:
                highest = max(highest, parts[len(top)])
        sub = highest + 1
        if zero_padded and zero_padded > 0:
            return f"{prefix}.{sub:02d}"
        return f"{prefix}.{sub}"

    highest = 0
    for task_id in ids:
        parts = _numeric_parts(task_id)
        if parts:
            highest = max(highest, parts[0])
    num = highest + 1
    if zero_padded and zero_padded > 0:
        return f"{TASK_PREFIX}{num:0{zero_padded}d}"
    return f"{TASK_PREFIX}{num}"
