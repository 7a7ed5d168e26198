"""backlog CLI: inspect reconciled tasks, reorder them, manage sequences.

Installed as the ``backlog`` console_script.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click
from rich.table import Table

from backlog import __version__, log
from backlog.config import resolve_repo_root
from backlog.core import UNSET, Core, TaskListFilter
from backlog.errors import BacklogError, LoadCancelledError
from backlog.tasks.model import SequencePlan, Task

T = TypeVar("T")

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def _parse_ids_option(raw: str, param_hint: str) -> list[str]:
    """Split a comma-separated id list, rejecting empty entries."""
    if not raw.strip():
        raise click.BadParameter("At least one task id is required.", param_hint=param_hint)
    ids = [item.strip() for item in raw.split(",")]
    if any(not item for item in ids):
        raise click.BadParameter(
            "Task list cannot contain empty values (example: --order task-3,task-1,task-2).",
            param_hint=param_hint,
        )
    return ids


def _run(ctx: click.Context, action: Callable[[Core], Awaitable[T]]) -> T:
    """Run *action* against a fresh Core; report backlog errors and exit 1."""
    root: Path = ctx.obj["root"]

    async def _session() -> T:
        core = Core(root, enable_watchers=False, progress=log.progress_reporter())
        try:
            return await action(core)
        finally:
            core.dispose()

    try:
        return asyncio.run(_session())
    except LoadCancelledError as exc:
        log.warn(f"{exc}; try again")
        sys.exit(130)
    except BacklogError as exc:
        log.error(str(exc))
        sys.exit(1)


def _provenance(task: Task) -> str:
    if task.branch:
        return f"{task.source.value if task.source else 'branch'}:{task.branch}"
    return task.source.value if task.source else "local"


def _task_table(tasks: list[Task], title: str = "") -> Table:
    table = Table(title=title or None, show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Ordinal", justify="right")
    table.add_column("Source", style="dim")
    for task in tasks:
        table.add_row(
            task.id,
            task.title,
            task.status,
            task.priority or "",
            "" if task.ordinal is None else str(task.ordinal),
            _provenance(task),
        )
    return table


def _print_plan(plan: SequencePlan) -> None:
    if not plan.sequences and not plan.unsequenced:
        log.info("No active tasks.")
        return
    for seq in plan.sequences:
        log.console.print(f"[bold]Sequence {seq.index}[/bold]")
        for task in seq.tasks:
            deps = f" [dim](depends on {', '.join(task.dependencies)})[/dim]" if task.dependencies else ""
            log.console.print(f"  {task.id}  {task.title}{deps}")
    if plan.unsequenced:
        log.console.print("[bold yellow]Unsequenced[/bold yellow]")
        for task in plan.unsequenced:
            log.console.print(f"  {task.id}  {task.title}")


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Repository root (default: git top-level of the current directory)",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.option("-q", "--quiet", is_flag=True, help="Only print warnings and errors")
@click.version_option(__version__, prog_name="backlog")
@click.pass_context
def main(ctx: click.Context, root: Path | None, verbose: bool, quiet: bool) -> None:
    """backlog: tasks reconciled across every active branch.

    \b
    EXAMPLES:
      backlog task list                          # Every task, all branches
      backlog task list --local-only -s "To Do"  # Editable tasks in one column
      backlog task list --search login           # Fuzzy search
      backlog task reorder task-7 -s "In Progress" --order task-3,task-7,task-1
      backlog sequence list
      backlog sequence move task-7 --to 2
    """
    log.set_verbose(verbose)
    log.set_quiet(quiet)
    ctx.ensure_object(dict)
    ctx.obj["root"] = (root or resolve_repo_root()).resolve()


# ── task ─────────────────────────────────────────────────────────────


@main.group()
def task() -> None:
    """Inspect and reorder tasks."""


@task.command("list")
@click.option("--status", "-s", default="", help="Only tasks with this status")
@click.option("--assignee", "-a", default="", help="Only tasks assigned to this person")
@click.option("--priority", "-p", type=click.Choice(["high", "medium", "low"]), default=None)
@click.option("--label", "-l", "labels", multiple=True, help="Only tasks with any of these labels")
@click.option("--parent", default="", help="Only subtasks of this task")
@click.option("--search", "query", default="", help="Fuzzy search query")
@click.option("--limit", type=int, default=None, help="Show at most N tasks")
@click.option("--local-only", is_flag=True, help="Hide tasks that live on other branches")
@click.pass_context
def task_list(
    ctx: click.Context,
    status: str,
    assignee: str,
    priority: str | None,
    labels: tuple[str, ...],
    parent: str,
    query: str,
    limit: int | None,
    local_only: bool,
) -> None:
    """List tasks from the working tree and every active branch."""
    filters = TaskListFilter(
        status=status or None,
        assignee=assignee or None,
        priority=priority,
        parent_task_id=parent or None,
        labels=list(labels),
    )

    tasks = _run(
        ctx,
        lambda core: core.query_tasks(
            filters=filters, query=query, limit=limit, include_cross_branch=not local_only
        ),
    )
    if not tasks:
        log.info("No tasks found.")
        return
    log.console.print(_task_table(tasks))


@task.command("view")
@click.argument("task_id")
@click.pass_context
def task_view(ctx: click.Context, task_id: str) -> None:
    """Show one task, looking on other branches if it is not local."""

    async def _view(core: Core) -> Task | None:
        found = await core.get_task(task_id)
        return found or await core.load_task_by_id(task_id)

    found = _run(ctx, _view)
    if found is None:
        log.error(f"Task {task_id} not found")
        sys.exit(1)

    log.console.print(f"[bold cyan]{found.id}[/bold cyan]  [bold]{found.title}[/bold]")
    log.console.print(f"Status: {found.status}    Source: {_provenance(found)}")
    if found.milestone:
        log.console.print(f"Milestone: {found.milestone}")
    if found.priority:
        log.console.print(f"Priority: {found.priority}")
    if found.dependencies:
        log.console.print(f"Depends on: {', '.join(found.dependencies)}")
    if found.labels:
        log.console.print(f"Labels: {', '.join(found.labels)}")
    if found.description:
        log.console.print()
        log.console.print(found.description)


@task.command("reorder")
@click.argument("task_id")
@click.option("--status", "-s", "target_status", required=True, help="Status column the task lands in")
@click.option("--order", "order", required=True, help="Comma-separated ids of the column in final order")
@click.option("--milestone", default=None, help="Move the task to this milestone")
@click.option("--no-milestone", is_flag=True, help="Remove the task from its milestone")
@click.option("--commit/--no-commit", "auto_commit", default=None, help="Commit the change (default: config)")
@click.pass_context
def task_reorder(
    ctx: click.Context,
    task_id: str,
    target_status: str,
    order: str,
    milestone: str | None,
    no_milestone: bool,
    auto_commit: bool | None,
) -> None:
    """Move TASK_ID within (or into) a status column."""
    if milestone is not None and no_milestone:
        raise click.UsageError("Cannot combine --milestone with --no-milestone.")
    ordered = _parse_ids_option(order, "--order")
    target_milestone = None if no_milestone else milestone if milestone is not None else UNSET

    result = _run(
        ctx,
        lambda core: core.reorder_task(
            task_id,
            target_status,
            ordered,
            target_milestone=target_milestone,
            auto_commit=auto_commit,
        ),
    )
    moved = result.updated_task
    log.success(f"{moved.id} -> {moved.status} (ordinal {moved.ordinal})")
    others = [t.id for t in result.changed_tasks if t.id != moved.id]
    if others:
        log.info(f"Renumbered: {', '.join(others)}")


# ── sequence ─────────────────────────────────────────────────────────


@main.group()
def sequence() -> None:
    """Dependency-ordered execution waves of active tasks."""


@sequence.command("list")
@click.pass_context
def sequence_list(ctx: click.Context) -> None:
    """Show active tasks grouped into waves."""
    _print_plan(_run(ctx, lambda core: core.list_active_sequences()))


@sequence.command("move")
@click.argument("task_id")
@click.option("--to", "target", type=int, default=None, help="Target sequence (1-based)")
@click.option("--unsequenced", is_flag=True, help="Detach the task from other active tasks")
@click.pass_context
def sequence_move(ctx: click.Context, task_id: str, target: int | None, unsequenced: bool) -> None:
    """Rewrite dependencies so TASK_ID lands in another sequence."""
    if unsequenced == (target is not None):
        raise click.UsageError("Use exactly one of --to N or --unsequenced.")
    plan = _run(
        ctx,
        lambda core: core.move_task_in_sequences(
            task_id, unsequenced=unsequenced, target_sequence_index=target
        ),
    )
    log.success(f"Moved {task_id}")
    _print_plan(plan)
