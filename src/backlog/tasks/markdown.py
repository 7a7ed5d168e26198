"""Markdown task records with a YAML frontmatter header.

A record looks like::

    ---
    id: task-12
    title: Fix login redirect
    status: In Progress
    assignee: ["@alice"]
    created_date: 2025-03-02 10:15
    labels: [auth]
    dependencies: [task-9]
    ordinal: 2000
    ---

    Free-form description body.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

import yaml

from backlog.tasks.ids import normalize_task_id
from backlog.tasks.model import PRIORITIES, Task

_FRONTMATTER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|$)", re.DOTALL)
_PEOPLE_LINE_RE = re.compile(r"^(\s*(?:assignee|reporter):\s*)(.*)$")


class RecordFormatError(ValueError):
    """Raised when a record's frontmatter cannot be parsed."""


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _preprocess(frontmatter: str) -> str:
    """Quote ``@handle`` values, which plain YAML rejects."""
    out: list[str] = []
    for line in frontmatter.splitlines():
        m = _PEOPLE_LINE_RE.match(line)
        if not m:
            out.append(line)
            continue
        prefix, value = m.group(1), m.group(2).strip()
        if value.startswith("[") and value.endswith("]"):
            items = [i.strip() for i in value[1:-1].split(",") if i.strip()]
            items = [i if i[0] in "'\"" else _quote(i) if i.startswith("@") else i for i in items]
            out.append(f"{prefix}[{', '.join(items)}]")
        elif value and value[0] not in "[-'\"":
            out.append(f"{prefix}{_quote(value)}")
        else:
            out.append(line)
    return "\n".join(out)


def _normalize_date(value: Any) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip().strip("'\"")
    if re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}$", text):
        return text.replace("T", " ")
    return text


def _str_list(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [s.strip() for s in str(value).split(",") if s.strip()]


def split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    m = _FRONTMATTER_RE.match(content)
    if not m:
        return {}, content.strip()
    try:
        data = yaml.safe_load(_preprocess(m.group(1))) or {}
    except yaml.YAMLError as exc:
        raise RecordFormatError(f"Invalid frontmatter: {exc}") from exc
    if not isinstance(data, dict):
        raise RecordFormatError("Frontmatter must be a mapping")
    return data, content[m.end():].strip()


def parse_task(content: str) -> Task:
    """Parse a task record. Raises :class:`RecordFormatError` on bad frontmatter."""
    fm, body = split_frontmatter(content)

    raw_id = str(fm.get("id") or "").strip()
    if not raw_id:
        raise RecordFormatError("Task record has no id")

    priority = fm.get("priority")
    priority = str(priority).strip().lower() if priority else None
    if priority not in PRIORITIES:
        priority = None

    ordinal = fm.get("ordinal")
    try:
        ordinal = int(ordinal) if ordinal is not None and ordinal != "" else None
    except (TypeError, ValueError):
        ordinal = None

    milestone = fm.get("milestone")
    parent = fm.get("parent_task_id") or fm.get("parent")

    return Task(
        id=normalize_task_id(raw_id),
        title=str(fm.get("title") or ""),
        status=str(fm.get("status") or ""),
        assignee=_str_list(fm.get("assignee")),
        reporter=str(fm.get("reporter") or ""),
        created_date=_normalize_date(fm.get("created_date")),
        updated_date=_normalize_date(fm.get("updated_date")),
        labels=_str_list(fm.get("labels")),
        milestone=str(milestone).strip() if milestone else None,
        dependencies=[normalize_task_id(d) for d in _str_list(fm.get("dependencies"))],
        description=body,
        parent_task_id=normalize_task_id(str(parent)) if parent else None,
        subtasks=[normalize_task_id(s) for s in _str_list(fm.get("subtasks"))],
        priority=priority,
        ordinal=ordinal,
    )


def serialize_task(task: Task) -> str:
    fm: dict[str, Any] = {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "assignee": list(task.assignee),
    }
    if task.reporter:
        fm["reporter"] = task.reporter
    fm["created_date"] = task.created_date
    if task.updated_date:
        fm["updated_date"] = task.updated_date
    fm["labels"] = list(task.labels)
    if task.milestone:
        fm["milestone"] = task.milestone
    fm["dependencies"] = list(task.dependencies)
    if task.parent_task_id:
        fm["parent_task_id"] = task.parent_task_id
    if task.subtasks:
        fm["subtasks"] = list(task.subtasks)
    if task.priority:
        fm["priority"] = task.priority
    if task.ordinal is not None:
        fm["ordinal"] = task.ordinal

    header = yaml.safe_dump(fm, sort_keys=False, allow_unicode=True, default_flow_style=None)
    body = task.description.strip()
    text = f"---\n{header}---\n"
    if body:
        text += f"\n{body}\n"
    return text
