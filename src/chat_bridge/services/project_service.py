from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from bridge_core.errors import PersistenceFailed
from bridge_core.logging import log_extra
from bridge_core.paths import PROJECT_META_DIR_NAME

LOGGER = logging.getLogger("chat_bridge.projects")

_DISALLOWED_CHARS = re.compile(r"[^a-zA-Z0-9\-_\s]")
_WHITESPACE_RUN = re.compile(r"\s+")
_DASH_RUN = re.compile(r"-+")
_EDGE_DASH = re.compile(r"^-|-$")

_CLAUDE_MD_TEMPLATE = """# {project_name}

Created via chat-bridge on {created}.

## Project Context

Add project-specific context, conventions, and instructions here.
Claude will read this file to understand the project.

## Tech Stack

- (Add your tech stack here)

## Important Files

- (List important files and their purposes)
"""


def sanitize_project_name(conversation_name: str, *, prefix: str) -> str:
    """Map a conversation display name to a directory-safe project name.

    >>> sanitize_project_name("Claude: My App!", prefix="Claude:")
    'My-App'
    """
    value = str(conversation_name or "").replace(prefix, "", 1).strip()
    value = _DISALLOWED_CHARS.sub("", value)
    value = _WHITESPACE_RUN.sub("-", value)
    value = _DASH_RUN.sub("-", value)
    return _EDGE_DASH.sub("", value)


class ProjectService:
    def __init__(self, *, projects_root: Path, group_prefix: str) -> None:
        self.projects_root = Path(projects_root)
        self.group_prefix = str(group_prefix)

    def is_project_conversation(self, conversation_name: str) -> bool:
        return str(conversation_name or "").startswith(self.group_prefix)

    def project_name(self, conversation_name: str) -> str:
        return sanitize_project_name(conversation_name, prefix=self.group_prefix)

    def project_path(self, project_name: str) -> Path:
        return self.projects_root / project_name

    def ensure_projects_root(self) -> None:
        if not self.projects_root.exists():
            LOGGER.info(
                "Creating projects root: %s",
                self.projects_root,
                extra=log_extra(component="projects", operation="ensure_root", result="created"),
            )
        self.projects_root.mkdir(parents=True, exist_ok=True)

    def ensure_project_exists(self, project_name: str) -> Path:
        project_path = self.project_path(project_name)
        if project_path.is_dir():
            return project_path
        LOGGER.info(
            "Creating project directory: %s",
            project_path,
            extra=log_extra(component="projects", operation="ensure_project", project=project_name),
        )
        created = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        try:
            project_path.mkdir(parents=True, exist_ok=True)
            (project_path / "CLAUDE.md").write_text(
                _CLAUDE_MD_TEMPLATE.format(project_name=project_name, created=created),
                encoding="utf-8",
            )
            (project_path / PROJECT_META_DIR_NAME).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceFailed(f"Unable to create project directory {project_path}: {exc}") from exc
        LOGGER.info(
            'Project "%s" initialized',
            project_name,
            extra=log_extra(component="projects", operation="ensure_project", result="created", project=project_name),
        )
        return project_path

    def project_directories(self) -> list[Path]:
        if not self.projects_root.is_dir():
            return []
        return sorted(
            entry for entry in self.projects_root.iterdir() if entry.is_dir() and not entry.name.startswith(".")
        )


__all__ = ["ProjectService", "sanitize_project_name"]
