from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path


def repo_root(start_file: Path) -> Path:
    resolved = start_file.resolve()
    for parent in resolved.parents:
        if (parent / "pyproject.toml").exists():
            return parent
    return resolved.parent


def default_config_file(repo_root: Path) -> Path:
    return repo_root / "config" / "bridge.config.toml"


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def truncate(text: str, max_length: int = 50) -> str:
    return f"{text[:max_length]}..." if len(text) > max_length else text
