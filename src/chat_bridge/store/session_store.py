from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable

from bridge_core.errors import PersistenceFailed
from bridge_core.logging import log_extra
from bridge_core.shared import iso_now

from .state_store import SESSIONS_SECTION, BridgeStateStore

LOGGER = logging.getLogger("chat_bridge.store")


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    project_path: str
    conversation_name: str
    last_activity: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Any) -> "SessionRecord | None":
        if not isinstance(raw, dict):
            return None
        session_id = str(raw.get("session_id") or "").strip()
        project_path = str(raw.get("project_path") or "").strip()
        if not session_id or not project_path:
            return None
        return cls(
            session_id=session_id,
            project_path=project_path,
            conversation_name=str(raw.get("conversation_name") or ""),
            last_activity=str(raw.get("last_activity") or ""),
        )


class SessionStore:
    """Resumable agent sessions keyed by conversation id."""

    def __init__(self, *, state_store: BridgeStateStore, clock: Callable[[], str] = iso_now) -> None:
        self._state_store = state_store
        self._clock = clock

    def get(self, conversation_id: str) -> SessionRecord | None:
        return SessionRecord.from_dict(self._state_store.get(SESSIONS_SECTION, conversation_id))

    def set(self, conversation_id: str, record: SessionRecord) -> SessionRecord:
        existing = self.get(conversation_id)
        if existing is not None and existing.project_path != record.project_path:
            LOGGER.warning(
                "Keeping original project path %s for conversation (ignored %s)",
                existing.project_path,
                record.project_path,
                extra=log_extra(component="sessions", operation="set", conversation_id=conversation_id),
            )
            record = replace(record, project_path=existing.project_path)
        self._persist(conversation_id, record, operation="set")
        return record

    def record_session(
        self,
        conversation_id: str,
        *,
        session_id: str,
        project_path: str,
        conversation_name: str,
    ) -> SessionRecord:
        return self.set(
            conversation_id,
            SessionRecord(
                session_id=session_id,
                project_path=project_path,
                conversation_name=conversation_name,
                last_activity=self._clock(),
            ),
        )

    def touch(self, conversation_id: str) -> SessionRecord | None:
        existing = self.get(conversation_id)
        if existing is None:
            return None
        refreshed = replace(existing, last_activity=self._clock())
        self._persist(conversation_id, refreshed, operation="touch")
        return refreshed

    def delete(self, conversation_id: str) -> bool:
        try:
            return self._state_store.delete(SESSIONS_SECTION, conversation_id)
        except PersistenceFailed as exc:
            LOGGER.error(
                "Failed to save sessions: %s",
                exc,
                extra=log_extra(
                    component="sessions",
                    operation="delete",
                    result="error",
                    conversation_id=conversation_id,
                    error_class=type(exc).__name__,
                ),
            )
            return True

    def all_sessions(self) -> dict[str, SessionRecord]:
        sessions: dict[str, SessionRecord] = {}
        for conversation_id, raw in self._state_store.snapshot(SESSIONS_SECTION).items():
            record = SessionRecord.from_dict(raw)
            if record is not None:
                sessions[conversation_id] = record
        return sessions

    def _persist(self, conversation_id: str, record: SessionRecord, *, operation: str) -> None:
        try:
            self._state_store.set(SESSIONS_SECTION, conversation_id, record.to_dict())
        except PersistenceFailed as exc:
            LOGGER.error(
                "Failed to save sessions: %s",
                exc,
                extra=log_extra(
                    component="sessions",
                    operation=operation,
                    result="error",
                    conversation_id=conversation_id,
                    error_class=type(exc).__name__,
                ),
            )
