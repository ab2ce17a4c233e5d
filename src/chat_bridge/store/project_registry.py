from __future__ import annotations

import logging
from dataclasses import dataclass

from bridge_core.errors import PersistenceFailed
from bridge_core.logging import log_extra

from .state_store import PROJECTS_SECTION, BridgeStateStore

LOGGER = logging.getLogger("chat_bridge.store")


@dataclass(frozen=True)
class ClaimResult:
    project_name: str
    owner_id: str
    created: bool

    def owned_by(self, conversation_id: str) -> bool:
        return self.owner_id == conversation_id


class ProjectRegistry:
    """First-writer-wins mapping from project name to owning conversation."""

    def __init__(self, *, state_store: BridgeStateStore) -> None:
        self._state_store = state_store

    def owner(self, project_name: str) -> str | None:
        value = self._state_store.get(PROJECTS_SECTION, project_name)
        return str(value) if value else None

    def claim(self, project_name: str, conversation_id: str) -> ClaimResult:
        try:
            owner, created = self._state_store.set_if_absent(PROJECTS_SECTION, project_name, conversation_id)
        except PersistenceFailed as exc:
            # The claim is held in memory even when the write failed.
            LOGGER.error(
                "Failed to save project claims: %s",
                exc,
                extra=log_extra(
                    component="projects",
                    operation="claim",
                    result="error",
                    conversation_id=conversation_id,
                    project=project_name,
                    error_class=type(exc).__name__,
                ),
            )
            owner = self.owner(project_name) or conversation_id
            created = owner == conversation_id
        return ClaimResult(project_name=project_name, owner_id=str(owner), created=created)

    def all_claims(self) -> dict[str, str]:
        return {name: str(owner) for name, owner in self._state_store.snapshot(PROJECTS_SECTION).items()}
