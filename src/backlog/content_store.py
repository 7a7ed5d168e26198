"""Cached, invalidation-aware view of the reconciled task set.

State machine::

    UNINITIALIZED -> HYDRATING -> READY
    READY -> HYDRATING            (invalidated, refresh requested)
    any -> DISPOSED

Only one hydration runs at a time. Callers arriving while it runs await the
same ``asyncio.Task``. The snapshot dict is replaced wholesale after a
successful load, never edited in place, so a reader sees either the old or
the new view.

Load failures: with a previous snapshot the error is logged and the old
snapshot keeps being served; with none the error propagates. A cancelled
load always propagates and leaves the snapshot as it was.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import Protocol

from backlog import log
from backlog.errors import BacklogError, LoadCancelledError, StoreNotReadyError
from backlog.tasks.ids import task_ids_equal
from backlog.tasks.model import Task

TaskLoader = Callable[[], Awaitable[list[Task]]]
StoreListener = Callable[[list[Task]], None]


class ChangeSource(Protocol):
    def on_change(self, callback: Callable[[], None]) -> Callable[[], None]: ...


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    HYDRATING = "hydrating"
    READY = "ready"
    DISPOSED = "disposed"


class ContentStore:
    def __init__(self, storage: ChangeSource, loader: TaskLoader, *, watch: bool = False) -> None:
        self._storage = storage
        self._loader = loader
        self._watch = watch

        self._tasks: dict[str, Task] | None = None
        self._state = StoreState.UNINITIALIZED
        self._stale = False
        self._inflight: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._listeners: list[StoreListener] = []
        self._unsubscribe: Callable[[], None] | None = None

        self.version = 0
        self.last_error: BaseException | None = None

    # ── state ────────────────────────────────────────────────────

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def is_stale(self) -> bool:
        return self._stale

    @property
    def has_snapshot(self) -> bool:
        return self._tasks is not None

    # ── reads ────────────────────────────────────────────────────

    def get_tasks(self) -> list[Task]:
        """Current snapshot. Records are shared; copy before mutating."""
        if self._tasks is None:
            raise StoreNotReadyError("Content store has not been initialized")
        return list(self._tasks.values())

    def get_task(self, task_id: str) -> Task | None:
        if self._tasks is None:
            raise StoreNotReadyError("Content store has not been initialized")
        found = self._tasks.get(task_id)
        if found is not None:
            return found
        return next((t for t in self._tasks.values() if task_ids_equal(task_id, t.id)), None)

    # ── hydration ────────────────────────────────────────────────

    async def ensure_initialized(self) -> None:
        if self._state is StoreState.DISPOSED:
            raise BacklogError("Content store has been disposed")
        if self._watch and self._unsubscribe is None:
            self._unsubscribe = self._storage.on_change(self._on_storage_change)
        if self._state is StoreState.READY and not self._stale:
            return
        await self._hydrate()

    async def refresh(self) -> None:
        """Rebuild now, joining a rebuild already in flight."""
        if self._state is StoreState.DISPOSED:
            raise BacklogError("Content store has been disposed")
        self._stale = True
        await self._hydrate()

    def invalidate(self) -> None:
        """Mark the snapshot stale; the next :meth:`ensure_initialized` rebuilds."""
        if self._state is not StoreState.DISPOSED:
            self._stale = True

    async def _hydrate(self) -> None:
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._rebuild())
        await asyncio.shield(self._inflight)

    async def _rebuild(self) -> None:
        if self._state is StoreState.DISPOSED:
            self._inflight = None
            return
        self._state = StoreState.HYDRATING
        self._stale = False
        try:
            tasks = await self._loader()
        except LoadCancelledError:
            if self._state is StoreState.DISPOSED:
                raise
            self._stale = True
            self._state = StoreState.READY if self._tasks is not None else StoreState.UNINITIALIZED
            raise
        except Exception as exc:
            if self._state is StoreState.DISPOSED:
                raise
            self.last_error = exc
            if self._tasks is None:
                self._state = StoreState.UNINITIALIZED
                raise
            log.warn(f"Task reload failed, keeping previous snapshot: {exc}")
            self._state = StoreState.READY
            return
        finally:
            self._inflight = None

        if self._state is StoreState.DISPOSED:
            return
        self._swap({t.id: t for t in tasks})
        self.last_error = None
        self._state = StoreState.READY
        log.debug(f"Content store ready: {len(tasks)} tasks (v{self.version})")

    def _swap(self, tasks: dict[str, Task]) -> None:
        self._tasks = tasks
        self.version += 1
        snapshot = list(tasks.values())
        for listener in list(self._listeners):
            listener(snapshot)

    # ── invalidation from storage ────────────────────────────────

    def _on_storage_change(self) -> None:
        if self._state is StoreState.DISPOSED:
            return
        self._stale = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._background_refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_refresh(self) -> None:
        try:
            await self.ensure_initialized()
        except BacklogError as exc:
            log.debug(f"Background refresh skipped: {exc}")

    # ── external publication ─────────────────────────────────────

    def publish(self, tasks: Iterable[Task]) -> None:
        """Adopt a complete, freshly reconciled task list as the snapshot.

        Ignored while a hydration is in flight; that hydration will publish.
        """
        if self._state in (StoreState.DISPOSED, StoreState.HYDRATING):
            return
        self._swap({t.id: t for t in tasks})
        self._stale = False
        self._state = StoreState.READY

    # ── local writes ─────────────────────────────────────────────

    def upsert_tasks(self, tasks: Iterable[Task]) -> None:
        """Publish locally saved records without a full rescan."""
        if self._tasks is None:
            return
        updated = dict(self._tasks)
        for task in tasks:
            updated[task.id] = task
        self._swap(updated)

    # ── listeners and teardown ───────────────────────────────────

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        self._listeners.clear()
        self._tasks = None
        self._state = StoreState.DISPOSED
