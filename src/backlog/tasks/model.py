"""Task records and the transient types produced while reconciling branches."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskSource(str, Enum):
    """Where the authoritative copy of a task currently resides."""

    LOCAL = "local"
    LOCAL_BRANCH = "local-branch"
    REMOTE = "remote"
    COMPLETED = "completed"


class StateType(str, Enum):
    """Directory a record occupies on some branch."""

    TASK = "task"
    DRAFT = "draft"
    ARCHIVED = "archived"
    COMPLETED = "completed"


PRIORITIES: tuple[str, ...] = ("high", "medium", "low")


@dataclass
class Task:
    id: str
    title: str = ""
    status: str = ""
    assignee: list[str] = field(default_factory=list)
    reporter: str = ""
    created_date: str = ""
    updated_date: str = ""
    labels: list[str] = field(default_factory=list)
    milestone: str | None = None
    dependencies: list[str] = field(default_factory=list)
    description: str = ""
    parent_task_id: str | None = None
    subtasks: list[str] = field(default_factory=list)
    priority: str | None = None
    ordinal: int | None = None

    # Provenance, never persisted
    branch: str | None = None
    source: TaskSource | None = None
    last_modified: datetime | None = None
    file_path: str = ""

    @property
    def is_local_editable(self) -> bool:
        return self.source in (None, TaskSource.LOCAL, TaskSource.COMPLETED)

    @property
    def bucket(self) -> tuple[str, str]:
        """Ordinal bucket key: ``(status, milestone)``."""
        return (self.status, self.milestone or "")


@dataclass(frozen=True)
class BranchTaskStateEntry:
    """One record seen on one branch during a scan."""

    id: str
    type: StateType
    branch: str
    path: str
    last_modified: datetime


@dataclass
class Sequence:
    index: int
    tasks: list[Task] = field(default_factory=list)

    def ids(self) -> list[str]:
        return [t.id for t in self.tasks]


@dataclass
class SequencePlan:
    """Execution waves over active tasks, plus the tasks no wave can hold."""

    unsequenced: list[Task] = field(default_factory=list)
    sequences: list[Sequence] = field(default_factory=list)

    def index_of(self, task_id: str) -> int | None:
        for seq in self.sequences:
            if any(t.id == task_id for t in seq.tasks):
                return seq.index
        return None
