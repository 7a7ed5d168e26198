"""Git gateway: branch listing, tree reads and commits for the backlog."""

from __future__ import annotations

import asyncio
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from backlog import log
from backlog.errors import GitError


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing output."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        cwd=cwd,
        check=check,
    )


def _from_unix(raw: str) -> datetime:
    try:
        return datetime.fromtimestamp(int(raw.strip()), tz=timezone.utc)
    except ValueError:
        return datetime.fromtimestamp(0, tz=timezone.utc)


@dataclass(frozen=True)
class BranchRef:
    name: str
    is_remote: bool
    committed_at: datetime


@dataclass(frozen=True)
class TreeEntry:
    path: str
    sha: str


class GitGateway:
    """Read-mostly access to a repository's branches.

    Every method is a coroutine; the git subprocess runs in a worker thread so
    scans of several branches overlap.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        return _git(*args, cwd=self.root)

    async def _arun(self, *args: str) -> subprocess.CompletedProcess[str]:
        return await asyncio.to_thread(self._run, *args)

    async def _output(self, *args: str) -> str:
        r = await self._arun(*args)
        if r.returncode != 0:
            raise GitError(args, r.returncode, r.stderr)
        return r.stdout

    # ── repository state ─────────────────────────────────────────

    async def is_repository(self) -> bool:
        r = await self._arun("rev-parse", "--is-inside-work-tree")
        return r.returncode == 0 and r.stdout.strip() == "true"

    async def current_branch(self) -> str:
        r = await self._arun("rev-parse", "--abbrev-ref", "HEAD")
        return r.stdout.strip() if r.returncode == 0 else ""

    async def has_any_remote(self) -> bool:
        r = await self._arun("remote")
        return r.returncode == 0 and bool(r.stdout.strip())

    async def get_current_user(self) -> str:
        r = await self._arun("config", "user.name")
        return r.stdout.strip() if r.returncode == 0 else ""

    async def fetch(self) -> None:
        """Fetch all remotes. Raises :class:`GitError` so callers can classify it."""
        args = ("fetch", "--all", "--prune", "--quiet")
        r = await self._arun(*args)
        if r.returncode != 0:
            raise GitError(args, r.returncode, r.stderr)

    # ── branches ─────────────────────────────────────────────────

    async def list_branch_refs(self) -> list[BranchRef]:
        """All local and remote-tracking branches with their tip commit time."""
        out = await self._output(
            "for-each-ref",
            "--format=%(refname)%09%(committerdate:unix)",
            "refs/heads",
            "refs/remotes",
        )
        refs: list[BranchRef] = []
        for line in out.splitlines():
            if "\t" not in line:
                continue
            refname, stamp = line.split("\t", 1)
            if refname.startswith("refs/heads/"):
                refs.append(BranchRef(refname[len("refs/heads/"):], False, _from_unix(stamp)))
            elif refname.startswith("refs/remotes/"):
                name = refname[len("refs/remotes/"):]
                if name.endswith("/HEAD"):
                    continue
                refs.append(BranchRef(name, True, _from_unix(stamp)))
        return refs

    async def list_all_branches(self) -> list[str]:
        return [ref.name for ref in await self.list_branch_refs()]

    # ── trees and blobs ──────────────────────────────────────────

    async def list_files_in_tree(self, ref: str, path_prefix: str) -> list[TreeEntry]:
        out = await self._output("ls-tree", "-r", "--full-tree", ref, "--", path_prefix)
        entries: list[TreeEntry] = []
        for line in out.splitlines():
            meta, _, path = line.partition("\t")
            parts = meta.split()
            if len(parts) == 3 and parts[1] == "blob" and path:
                entries.append(TreeEntry(path=path, sha=parts[2]))
        return entries

    async def read_file_at_revision(self, ref: str, path: str) -> str:
        return await self._output("show", f"{ref}:{path}")

    async def read_blob(self, sha: str) -> str:
        return await self._output("cat-file", "-p", sha)

    async def file_modified_times(self, ref: str, path_prefix: str) -> dict[str, datetime]:
        """Last commit time per path under *path_prefix* on *ref*."""
        out = await self._output(
            "log", "--format=%x00%ct", "--name-only", ref, "--", path_prefix
        )
        times: dict[str, datetime] = {}
        current: datetime | None = None
        for line in out.splitlines():
            if line.startswith("\x00"):
                current = _from_unix(line[1:])
                continue
            path = line.strip()
            if path and current is not None and path not in times:
                times[path] = current
        return times

    # ── writes ───────────────────────────────────────────────────

    async def stage_paths(self, paths: list[str]) -> bool:
        if not paths:
            return True
        r = await self._arun("add", "--all", "--", *paths)
        if r.returncode != 0:
            log.warn(f"git add failed: {r.stderr.strip()}")
        return r.returncode == 0

    async def commit(self, message: str) -> bool:
        r = await self._arun("commit", "-m", message)
        if r.returncode != 0:
            log.warn(f"git commit failed: {(r.stderr or r.stdout).strip()}")
        return r.returncode == 0
