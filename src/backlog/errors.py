"""Exception taxonomy and git failure classification."""

from __future__ import annotations


class BacklogError(Exception):
    """Base class for every error raised by backlog."""


class TaskNotFoundError(BacklogError):
    def __init__(self, task_id: str, context: str = "") -> None:
        self.task_id = task_id
        suffix = f" {context}" if context else ""
        super().__init__(f"Task {task_id} not found{suffix}")


class ValidationError(BacklogError):
    """Malformed request, rejected before any record is written."""


class CrossBranchWriteError(BacklogError):
    """A mutation targeted a record whose authoritative copy lives elsewhere."""

    def __init__(self, task_id: str, branch: str, action: str = "modified") -> None:
        self.task_id = task_id
        self.branch = branch
        super().__init__(
            f'Task {task_id} exists in branch "{branch}" and cannot be {action} '
            "from the current branch. Switch to that branch to modify it."
        )


class LoadCancelledError(BacklogError):
    """A task load was aborted. Retry later; this is not a data problem."""

    def __init__(self, msg: str = "Loading cancelled") -> None:
        super().__init__(msg)


class StoreNotReadyError(BacklogError):
    """The content store was read before its first successful hydration."""


class ConfigError(BacklogError):
    pass


class GitError(BacklogError):
    """A git command failed where the caller needed its output."""

    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str = "") -> None:
        self.git_args = args
        self.returncode = returncode
        self.stderr = stderr.strip()
        cmd = " ".join(("git", *args))
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"`{cmd}` exited with {returncode}{detail}")


# ── git stderr classification ────────────────────────────────────────

NETWORK_FAILURE_PATTERNS: tuple[str, ...] = (
    "could not resolve host",
    "could not read from remote repository",
    "connection timed out",
    "connection refused",
    "network is unreachable",
    "operation timed out",
    "ssl",
    "tls",
    "econnreset",
    "etimedout",
    "permission denied (publickey)",
    "authentication failed",
)

MISSING_REF_PATTERNS: tuple[str, ...] = (
    "unknown revision",
    "bad revision",
    "not a valid object name",
    "invalid object name",
    "does not exist in",
    "exists on disk, but not in",
    "ambiguous argument",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def looks_like_network_failure(text: str) -> bool:
    """Return ``True`` when git stderr points at the network or the remote host."""
    if not text:
        return False
    return _contains_any(text, NETWORK_FAILURE_PATTERNS)


def looks_like_missing_ref(text: str) -> bool:
    """Return ``True`` when git could not find the branch, revision or path."""
    if not text:
        return False
    return _contains_any(text, MISSING_REF_PATTERNS)


def describe_git_failure(err: BaseException) -> str:
    """Short human label for a failed scan, used in warnings."""
    stderr = err.stderr if isinstance(err, GitError) else str(err)
    if looks_like_network_failure(stderr):
        return f"network unavailable ({stderr})"
    if looks_like_missing_ref(stderr):
        return f"unreadable ref ({stderr})"
    return str(err)
