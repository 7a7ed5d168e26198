"""Fuzzy lookup over the content store's reconciled tasks."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from difflib import SequenceMatcher

from backlog.content_store import ContentStore
from backlog.tasks.ids import sort_key, task_ids_equal
from backlog.tasks.model import Task

MIN_SCORE = 0.6

# Field weights: a hit in the title outranks one buried in the description.
_WEIGHTS = {"id": 1.0, "title": 1.0, "labels": 0.9, "description": 0.7}


@dataclass
class SearchFilters:
    status: list[str] = field(default_factory=list)
    priority: list[str] = field(default_factory=list)
    assignee: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)

    @classmethod
    def build(cls, **kwargs: str | Iterable[str] | None) -> SearchFilters:
        def _norm(value: str | Iterable[str] | None) -> list[str]:
            if value is None:
                return []
            items = [value] if isinstance(value, str) else list(value)
            return [i.strip().lower() for i in items if i and i.strip()]

        return cls(**{k: _norm(v) for k, v in kwargs.items()})

    def matches(self, task: Task) -> bool:
        if self.status and (task.status or "").lower() not in self.status:
            return False
        if self.priority and (task.priority or "").lower() not in self.priority:
            return False
        if self.assignee and not {a.lower() for a in task.assignee} & set(self.assignee):
            return False
        if self.labels and not {lbl.lower() for lbl in task.labels} & set(self.labels):
            return False
        return True


@dataclass
class TaskSearchResult:
    task: Task
    score: float


@dataclass
class _Entry:
    task: Task
    fields: dict[str, str]
    words: dict[str, list[str]]


def _index_entry(task: Task) -> _Entry:
    fields = {
        "id": task.id.lower(),
        "title": task.title.lower(),
        "labels": " ".join(task.labels).lower(),
        "description": task.description.lower(),
    }
    return _Entry(task=task, fields=fields, words={k: v.split() for k, v in fields.items()})


def _word_score(token: str, words: list[str]) -> float:
    best = 0.0
    for word in words:
        if token == word:
            return 1.0
        if word.startswith(token):
            best = max(best, 0.9)
            continue
        best = max(best, SequenceMatcher(None, token, word).ratio())
    return best


def score_task(query: str, entry: _Entry) -> float:
    """Relevance of *entry* to *query* in ``[0, 1]``."""
    q = query.strip().lower()
    if not q:
        return 0.0
    if task_ids_equal(q, entry.task.id):
        return 1.0

    tokens = q.split()
    best = 0.0
    for name, weight in _WEIGHTS.items():
        text = entry.fields[name]
        if not text:
            continue
        if q in text:
            best = max(best, weight * 0.95)
            continue
        per_token = [_word_score(tok, entry.words[name]) for tok in tokens]
        best = max(best, weight * (sum(per_token) / len(per_token)))
    return best


class SearchService:
    """Index of the store's tasks, rebuilt whenever the store swaps snapshots."""

    def __init__(self, store: ContentStore) -> None:
        self._store = store
        self._entries: list[_Entry] = []
        self._unsubscribe: Callable[[], None] | None = None

    async def ensure_initialized(self) -> None:
        await self._store.ensure_initialized()
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(self._reindex)
            self._reindex(self._store.get_tasks())

    def _reindex(self, tasks: list[Task]) -> None:
        self._entries = [_index_entry(t) for t in tasks]

    def search(
        self,
        query: str,
        *,
        limit: int | None = None,
        filters: SearchFilters | None = None,
    ) -> list[TaskSearchResult]:
        results: list[TaskSearchResult] = []
        for entry in self._entries:
            if filters is not None and not filters.matches(entry.task):
                continue
            score = score_task(query, entry)
            if score >= MIN_SCORE:
                results.append(TaskSearchResult(task=entry.task, score=round(score, 4)))
        results.sort(key=lambda r: (-r.score, sort_key(r.task.id)))
        if limit is not None and limit >= 0:
            return results[:limit]
        return results

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._entries = []
