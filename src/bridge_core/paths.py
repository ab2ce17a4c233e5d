from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

STATE_FILE_NAME = ".chat-bridge-state.json"
LOCK_FILE_NAME = ".chat-bridge.pid"
PROJECT_META_DIR_NAME = ".chat-bridge"
HISTORY_FILE_NAME = "history.jsonl"

# Browser profile locks left behind by the transport when it holds the session.
DEFAULT_SESSION_ARTIFACTS = (
    ".wwebjs_auth/session/SingletonLock",
    ".wwebjs_auth/session/SingletonCookie",
    ".wwebjs_auth/session/lockfile",
)


@dataclass(frozen=True)
class BridgePaths:
    projects_root: Path
    state_file: Path
    lock_file: Path
    session_artifacts: tuple[Path, ...] = field(default_factory=tuple)


def expand_home(path: str) -> str:
    if path.startswith("~"):
        return path.replace("~", str(Path.home()), 1)
    return path


def default_projects_root(home: Path | None = None) -> Path:
    resolved_home = (home or Path.home()).expanduser()
    return resolved_home / "claude-projects"


def resolve_projects_root(
    paths_values: Mapping[str, Any] | None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Path:
    env = os.environ if environ is None else environ
    from_env = str(env.get("PROJECTS_ROOT") or "").strip()
    if from_env:
        return Path(expand_home(from_env)).resolve()
    if paths_values is not None:
        configured = str(paths_values.get("projects_root") or "").strip()
        if configured:
            return Path(expand_home(configured)).resolve()
    return default_projects_root()


def resolve_bridge_paths(
    paths_values: Mapping[str, Any] | None,
    *,
    cwd: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BridgePaths:
    values = dict(paths_values or {})
    base = (cwd or Path.cwd()).resolve()
    projects_root = resolve_projects_root(values, environ=environ)

    lock_raw = str(values.get("lock_file") or "").strip()
    lock_file = Path(expand_home(lock_raw)) if lock_raw else base / LOCK_FILE_NAME
    if not lock_file.is_absolute():
        lock_file = base / lock_file

    artifacts_raw = values.get("session_artifacts")
    if artifacts_raw is None:
        artifacts_raw = list(DEFAULT_SESSION_ARTIFACTS)
    artifacts = tuple(base / str(item) for item in artifacts_raw if str(item or "").strip())

    return BridgePaths(
        projects_root=projects_root,
        state_file=projects_root / STATE_FILE_NAME,
        lock_file=lock_file,
        session_artifacts=artifacts,
    )


def history_path(project_path: Path) -> Path:
    return Path(project_path) / PROJECT_META_DIR_NAME / HISTORY_FILE_NAME
