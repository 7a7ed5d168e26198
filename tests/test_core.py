"""Tests for backlog.core.Core against a temp working tree and an in-memory gateway."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from backlog.config import BacklogConfig
from backlog.core import UNSET, Core, TaskListFilter
from backlog.errors import (
    CrossBranchWriteError,
    LoadCancelledError,
    TaskNotFoundError,
    ValidationError,
)
from backlog.storage import FileSystemStorage
from backlog.tasks.model import TaskSource


@pytest.fixture
def core_factory(tmp_path: Path, fake_git):
    """Build a Core over tmp_path with the in-memory gateway."""
    cores: list[Core] = []

    def _make(config: BacklogConfig | None = None) -> Core:
        core = Core(tmp_path, config=config or BacklogConfig(remote_operations=False), git=fake_git)
        cores.append(core)
        return core

    yield _make
    for core in cores:
        core.dispose()


def _ordinals(root: Path) -> dict[str, int | None]:
    return {t.id: t.ordinal for t in FileSystemStorage(root).list_tasks()}


# ═══════════════════════════════════════════════════════════════════════
# Loading and queries
# ═══════════════════════════════════════════════════════════════════════


class TestLoadTasks:
    def test_merges_working_tree_and_branches(
        self, tmp_path: Path, write_tasks, make_task, fake_git, core_factory
    ) -> None:
        write_tasks(tmp_path, make_task("task-1"), make_task("task-2"))
        fake_git.add_branch("feature", make_task("task-3", title="Elsewhere"))

        tasks = asyncio.run(core_factory().load_tasks())

        assert [t.id for t in tasks] == ["task-1", "task-2", "task-3"]
        assert tasks[2].source is TaskSource.LOCAL_BRANCH

    def test_archived_on_branch_hides_local_copy(
        self, tmp_path: Path, write_tasks, make_task, fake_git, core_factory
    ) -> None:
        storage = write_tasks(tmp_path, make_task("task-1"), make_task("task-2"))
        branch = fake_git.add_branch("feature")
        # Branch commit is newer than the working-tree files.
        branch.committed_at = max(t.last_modified for t in storage.list_tasks()).replace(
            year=2100
        )
        fake_git.put(branch, "backlog/archive/tasks/task-2 - Task-task-2.md", make_task("task-2"))

        tasks = asyncio.run(core_factory().load_tasks())

        assert [t.id for t in tasks] == ["task-1"]

    def test_cross_branch_disabled_ignores_branches(
        self, tmp_path: Path, write_tasks, make_task, fake_git, core_factory
    ) -> None:
        write_tasks(tmp_path, make_task("task-1"))
        fake_git.add_branch("feature", make_task("task-3"))

        tasks = asyncio.run(core_factory(BacklogConfig(check_active_branches=False)).load_tasks())

        assert [t.id for t in tasks] == ["task-1"]

    def test_cancelled_load_leaves_store_untouched(
        self, tmp_path: Path, write_tasks, make_task, core_factory
    ) -> None:
        write_tasks(tmp_path, make_task("task-1"))
        core = core_factory()

        async def scenario() -> None:
            store = await core.get_content_store()
            version = store.version
            abort = asyncio.Event()
            abort.set()
            with pytest.raises(LoadCancelledError):
                await core.load_tasks(abort=abort)
            assert store.version == version
            assert [t.id for t in store.get_tasks()] == ["task-1"]

        asyncio.run(scenario())

    def test_successful_load_publishes_to_store(
        self, tmp_path: Path, write_tasks, make_task, core_factory
    ) -> None:
        write_tasks(tmp_path, make_task("task-1"))
        core = core_factory()

        async def scenario() -> list[str]:
            store = await core.get_content_store()
            write_tasks(tmp_path, make_task("task-2"))
            await core.load_tasks()
            return [t.id for t in store.get_tasks()]

        assert asyncio.run(scenario()) == ["task-1", "task-2"]


class TestQueries:
    @pytest.fixture
    def populated(self, tmp_path: Path, write_tasks, make_task, fake_git):
        write_tasks(
            tmp_path,
            make_task("task-1", title="Fix login redirect", status="In Progress", labels=["auth"]),
            make_task("task-2", title="Write docs", priority="low", assignee=["@alice"]),
            make_task("task-3", title="Login rate limiting", parent_task_id="task-1"),
        )
        fake_git.add_branch("feature", make_task("task-4", title="Export CSV"))

    def test_filters(self, populated, core_factory) -> None:
        core = core_factory()

        in_progress = asyncio.run(core.query_tasks(TaskListFilter(status="in progress")))
        assert [t.id for t in in_progress] == ["task-1"]

        by_assignee = asyncio.run(core.query_tasks(TaskListFilter(assignee="@Alice")))
        assert [t.id for t in by_assignee] == ["task-2"]

        subtasks = asyncio.run(core.query_tasks(TaskListFilter(parent_task_id="1")))
        assert [t.id for t in subtasks] == ["task-3"]

        labelled = asyncio.run(core.query_tasks(TaskListFilter(labels=["AUTH"])))
        assert [t.id for t in labelled] == ["task-1"]

    def test_local_only_and_limit(self, populated, core_factory) -> None:
        core = core_factory()
        assert len(asyncio.run(core.query_tasks())) == 4
        local = asyncio.run(core.query_tasks(include_cross_branch=False))
        assert [t.id for t in local] == ["task-1", "task-2", "task-3"]
        assert len(asyncio.run(core.query_tasks(limit=2))) == 2

    def test_search(self, populated, core_factory) -> None:
        core = core_factory()
        hits = asyncio.run(core.query_tasks(query="login"))
        assert {t.id for t in hits} == {"task-1", "task-3"}

    def test_search_with_filters(self, populated, core_factory) -> None:
        core = core_factory()
        hits = asyncio.run(core.query_tasks(TaskListFilter(status="To Do"), query="login"))
        assert [t.id for t in hits] == ["task-3"]

    def test_get_task_falls_back_to_branches(self, populated, core_factory) -> None:
        core = core_factory()
        found = asyncio.run(core.load_task_by_id("4"))
        assert found is not None and found.branch == "feature"
        assert asyncio.run(core.load_task_by_id("task-99")) is None

    def test_get_task_from_store(self, populated, core_factory) -> None:
        core = core_factory()
        assert asyncio.run(core.get_task("TASK-2")).title == "Write docs"


# ═══════════════════════════════════════════════════════════════════════
# Reorder
# ═══════════════════════════════════════════════════════════════════════


class TestReorderValidation:
    @pytest.mark.parametrize(
        "task_id, status, order, message",
        [
            ("", "To Do", ["task-1"], "taskId"),
            ("task-1", "", ["task-1"], "targetStatus"),
            ("task-1", "To Do", [], "at least one"),
            ("task-1", "To Do", ["task-2"], "must include the task"),
            ("task-1", "To Do", ["task-1", "task-2", "task-1"], "Duplicate"),
            ("task-1", "To Do", ["task-2", "task-1", "task-01"], "Duplicate"),
            ("task-1", "Blocked", ["task-1"], "Invalid status"),
        ],
    )
    def test_rejected_before_any_write(
        self, tmp_path: Path, write_tasks, make_task, core_factory, task_id, status, order, message
    ) -> None:
        write_tasks(tmp_path, make_task("task-1", ordinal=1000), make_task("task-2", ordinal=2000))
        before = _ordinals(tmp_path)

        with pytest.raises(ValidationError, match=message):
            asyncio.run(core_factory().reorder_task(task_id, status, order))

        assert _ordinals(tmp_path) == before

    def test_unknown_task(self, tmp_path: Path, write_tasks, make_task, core_factory) -> None:
        write_tasks(tmp_path, make_task("task-1"))
        with pytest.raises(TaskNotFoundError):
            asyncio.run(core_factory().reorder_task("task-9", "To Do", ["task-9", "task-1"]))


class TestReorder:
    def test_midpoint_writes_only_moved_task(
        self, tmp_path: Path, write_tasks, make_task, core_factory
    ) -> None:
        write_tasks(
            tmp_path,
            make_task("task-1", ordinal=1000),
            make_task("task-2", ordinal=2000),
            make_task("task-3", ordinal=3000),
        )

        result = asyncio.run(
            core_factory().reorder_task("3", "To Do", ["task-1", "task-3", "task-2"])
        )

        assert result.updated_task.ordinal == 1500
        assert [t.id for t in result.changed_tasks] == ["task-3"]
        assert _ordinals(tmp_path) == {"task-1": 1000, "task-2": 2000, "task-3": 1500}

    def test_adjacent_ordinals_rebalance_bucket(
        self, tmp_path: Path, write_tasks, make_task, core_factory
    ) -> None:
        write_tasks(
            tmp_path,
            make_task("task-1", ordinal=1000),
            make_task("task-2", ordinal=1001),
            make_task("task-3", ordinal=5000),
        )

        result = asyncio.run(
            core_factory().reorder_task("task-3", "To Do", ["task-1", "task-3", "task-2"])
        )

        assert _ordinals(tmp_path) == {"task-1": 1000, "task-2": 3000, "task-3": 2000}
        assert {t.id for t in result.changed_tasks} == {"task-2", "task-3"}

    def test_status_and_milestone_change(
        self, tmp_path: Path, write_tasks, make_task, core_factory
    ) -> None:
        write_tasks(
            tmp_path,
            make_task("task-1", status="In Progress", ordinal=1000),
            make_task("task-2", milestone="v1"),
        )

        result = asyncio.run(
            core_factory().reorder_task(
                "task-2", "in progress", ["task-1", "task-2"], target_milestone=None
            )
        )

        saved = FileSystemStorage(tmp_path).load_task("task-2")
        assert result.updated_task.status == "In Progress"
        assert saved.status == "In Progress"
        assert saved.milestone is None
        assert saved.ordinal == 2000

    def test_milestone_untouched_when_unset(
        self, tmp_path: Path, write_tasks, make_task, core_factory
    ) -> None:
        write_tasks(tmp_path, make_task("task-1", milestone="v1"))
        asyncio.run(
            core_factory().reorder_task("task-1", "To Do", ["task-1"], target_milestone=UNSET)
        )
        assert FileSystemStorage(tmp_path).load_task("task-1").milestone == "v1"

    def test_store_sees_reorder_without_rescan(
        self, tmp_path: Path, write_tasks, make_task, core_factory
    ) -> None:
        write_tasks(tmp_path, make_task("task-1", ordinal=1000), make_task("task-2", ordinal=2000))
        core = core_factory()

        async def scenario() -> int | None:
            store = await core.get_content_store()
            await core.reorder_task("task-2", "To Do", ["task-2", "task-1"])
            return store.get_task("task-2").ordinal

        assert asyncio.run(scenario()) == 500

    def test_auto_commit(self, tmp_path: Path, write_tasks, make_task, fake_git, core_factory) -> None:
        write_tasks(tmp_path, make_task("task-1"))
        asyncio.run(core_factory().reorder_task("task-1", "Done", ["task-1"], auto_commit=True))
        assert fake_git.commits == ["Reorder tasks in Done"]
        assert fake_git.staged and fake_git.staged[0].startswith("backlog")


class TestCrossBranchWrites:
    def test_reorder_of_branch_task_rejected(
        self, tmp_path: Path, write_tasks, make_task, fake_git, core_factory
    ) -> None:
        write_tasks(tmp_path, make_task("task-1"))
        fake_git.add_branch("feature", make_task("task-9"))

        with pytest.raises(CrossBranchWriteError, match='branch "feature"'):
            asyncio.run(core_factory().reorder_task("task-9", "To Do", ["task-9"]))

        assert FileSystemStorage(tmp_path).load_task("task-9") is None

    def test_renumbering_branch_task_rejected(
        self, tmp_path: Path, write_tasks, make_task, fake_git, core_factory
    ) -> None:
        write_tasks(tmp_path, make_task("task-1", ordinal=None), make_task("task-8", ordinal=1000))
        fake_git.add_branch("feature", make_task("task-9", ordinal=1001))
        before = _ordinals(tmp_path)

        with pytest.raises(CrossBranchWriteError, match="renumbered"):
            asyncio.run(
                core_factory().reorder_task("task-1", "To Do", ["task-8", "task-1", "task-9"])
            )

        assert _ordinals(tmp_path) == before

    def test_bulk_update_is_all_or_nothing(
        self, tmp_path: Path, write_tasks, make_task, core_factory
    ) -> None:
        remote = make_task("task-5", source=TaskSource.REMOTE, branch="origin/x")
        with pytest.raises(CrossBranchWriteError):
            asyncio.run(core_factory().update_tasks_bulk([make_task("task-4"), remote]))
        assert FileSystemStorage(tmp_path).list_tasks() == []


# ═══════════════════════════════════════════════════════════════════════
# Sequences and ids
# ═══════════════════════════════════════════════════════════════════════


class TestSequences:
    @pytest.fixture
    def chain(self, tmp_path: Path, write_tasks, make_task) -> None:
        write_tasks(
            tmp_path,
            make_task("task-1", status="Done"),
            make_task("task-2", dependencies=["task-1"]),
            make_task("task-3", dependencies=["task-2"]),
            make_task("task-4", dependencies=["task-3"]),
        )

    def test_done_dependencies_do_not_block(self, chain, core_factory) -> None:
        plan = asyncio.run(core_factory().list_active_sequences())
        assert [s.ids() for s in plan.sequences] == [["task-2"], ["task-3"], ["task-4"]]

    def test_move_to_first_wave(self, tmp_path: Path, chain, core_factory) -> None:
        plan = asyncio.run(core_factory().move_task_in_sequences("task-4", target_sequence_index=1))

        assert [s.ids() for s in plan.sequences] == [["task-2", "task-4"], ["task-3"]]
        saved = FileSystemStorage(tmp_path).load_task("task-4")
        assert saved.dependencies == []

    def test_move_to_unsequenced(self, tmp_path: Path, chain, core_factory) -> None:
        core = core_factory()
        with pytest.raises(ValidationError, match="task-3"):
            asyncio.run(core.move_task_in_sequences("task-2", unsequenced=True))

        asyncio.run(core.move_task_in_sequences("task-4", unsequenced=True))
        assert FileSystemStorage(tmp_path).load_task("task-4").dependencies == []

    def test_invalid_requests(self, chain, core_factory) -> None:
        core = core_factory()
        with pytest.raises(ValidationError, match=">= 1"):
            asyncio.run(core.move_task_in_sequences("task-2", target_sequence_index=0))
        with pytest.raises(ValidationError, match="number"):
            asyncio.run(core.move_task_in_sequences("task-2"))
        with pytest.raises(ValidationError, match="done"):
            asyncio.run(core.move_task_in_sequences("task-1", target_sequence_index=1))
        with pytest.raises(TaskNotFoundError):
            asyncio.run(core.move_task_in_sequences("task-42", target_sequence_index=1))


class TestGenerateNextId:
    def test_counts_completed_tasks(self, tmp_path: Path, write_tasks, make_task, core_factory) -> None:
        write_tasks(
            tmp_path,
            make_task("task-1"),
            make_task("task-2"),
            make_task("task-5", source=TaskSource.COMPLETED),
        )
        assert asyncio.run(core_factory().generate_next_id()) == "task-6"

    def test_counts_branch_tasks(self, tmp_path: Path, write_tasks, make_task, fake_git, core_factory) -> None:
        write_tasks(tmp_path, make_task("task-1"))
        fake_git.add_branch("feature", make_task("task-7"))
        assert asyncio.run(core_factory().generate_next_id()) == "task-8"

    def test_subtask(self, tmp_path: Path, write_tasks, make_task, core_factory) -> None:
        write_tasks(tmp_path, make_task("task-3"), make_task("task-3.1"))
        assert asyncio.run(core_factory().generate_next_id("3")) == "task-3.2"
