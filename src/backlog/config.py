"""Configuration defaults, env vars, and the ``backlog/config.yml`` file."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from backlog import log
from backlog.errors import ConfigError
from backlog.io_utils import read_text, write_text

BACKLOG_DIR = "backlog"
CONFIG_FILENAME = "config.yml"

DEFAULT_STATUSES: tuple[str, ...] = ("To Do", "In Progress", "Done")
RESOLUTION_STRATEGIES: tuple[str, ...] = ("most_recent", "most_progressed")
DEFAULT_ACTIVE_BRANCH_DAYS = 30

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_flag(name: str) -> bool | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    log.warn(f"Ignoring {name}={raw!r}: expected a boolean")
    return None


@dataclass
class BacklogConfig:
    """Project configuration as read from ``backlog/config.yml``."""

    project_name: str = ""
    statuses: list[str] = field(default_factory=lambda: list(DEFAULT_STATUSES))
    default_status: str = ""
    task_resolution_strategy: str = "most_progressed"

    # Cross-branch reconciliation
    check_active_branches: bool = True
    active_branch_days: int = DEFAULT_ACTIVE_BRANCH_DAYS
    remote_operations: bool = True
    scan_concurrency: int = 8

    # Ids and commits
    zero_padded_ids: int | None = None
    auto_commit: bool = False

    def __post_init__(self) -> None:
        remote = _env_flag("BACKLOG_REMOTE_OPERATIONS")
        if remote is not None:
            self.remote_operations = remote
        check = _env_flag("BACKLOG_CHECK_ACTIVE_BRANCHES")
        if check is not None:
            self.check_active_branches = check

        if not self.statuses:
            raise ConfigError("statuses must list at least one status")
        if self.task_resolution_strategy not in RESOLUTION_STRATEGIES:
            allowed = ", ".join(RESOLUTION_STRATEGIES)
            raise ConfigError(
                f"Unknown task_resolution_strategy {self.task_resolution_strategy!r}. "
                f"Valid strategies: {allowed}."
            )
        if self.active_branch_days < 0:
            raise ConfigError("active_branch_days cannot be negative")
        if self.scan_concurrency < 1:
            self.scan_concurrency = 1
        if not self.default_status:
            self.default_status = self.statuses[0]

    @property
    def terminal_status(self) -> str:
        """The last configured status marks a task as finished."""
        return self.statuses[-1]

    def is_done(self, status: str | None) -> bool:
        value = (status or "").strip().lower()
        return value == self.terminal_status.lower() or value == "done"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            data[f.name] = list(value) if isinstance(value, list) else value
        return data


def config_path(root: Path) -> Path:
    return root / BACKLOG_DIR / CONFIG_FILENAME


def load_config(root: Path) -> BacklogConfig:
    """Load ``backlog/config.yml`` under *root*; missing file means defaults."""
    path = config_path(root)
    if not path.is_file():
        log.debug(f"No config at {path}, using defaults")
        return BacklogConfig()

    try:
        raw = yaml.safe_load(read_text(path)) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    known = {f.name for f in fields(BacklogConfig)}
    unknown = sorted(k for k in raw if k not in known)
    if unknown:
        log.debug(f"Ignoring unknown config keys: {', '.join(unknown)}")

    kwargs = {k: v for k, v in raw.items() if k in known}
    if "statuses" in kwargs:
        kwargs["statuses"] = [str(s) for s in kwargs["statuses"] or []]
    return BacklogConfig(**kwargs)


def save_config(root: Path, cfg: BacklogConfig) -> None:
    path = config_path(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    write_text(path, yaml.safe_dump(cfg.to_dict(), sort_keys=False, allow_unicode=True))


def resolve_repo_root(cwd: Path | None = None) -> Path:
    """Return the git repository root, falling back to cwd."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
            cwd=cwd,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return cwd or Path.cwd()
