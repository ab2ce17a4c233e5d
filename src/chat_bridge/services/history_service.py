from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Literal

from bridge_core.logging import log_extra
from bridge_core.paths import history_path

LOGGER = logging.getLogger("chat_bridge.history")

AGENT_SENDER_ID = "agent"
AGENT_SENDER_NAME = "Claude"


@dataclass(frozen=True)
class StoredMessage:
    id: str
    timestamp: str
    conversation_id: str
    conversation_name: str
    role: Literal["user", "assistant"]
    sender_id: str
    sender_name: str
    content: str


class HistoryService:
    """Append-only JSONL audit log, one file per project.

    Writes are best effort: failures are logged and never raised.
    """

    def append(self, project_path: Path, message: StoredMessage) -> bool:
        path = history_path(project_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fp:
                fp.write(json.dumps(asdict(message), ensure_ascii=False) + "\n")
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.error(
                "Failed to append to history: %s",
                exc,
                extra=log_extra(
                    component="history",
                    operation="append",
                    result="error",
                    conversation_id=message.conversation_id,
                    error_class=type(exc).__name__,
                ),
            )
            return False
        LOGGER.debug(
            "Appended to history: %s message",
            message.role,
            extra=log_extra(component="history", operation="append", result="ok", conversation_id=message.conversation_id),
        )
        return True

    def read(self, project_path: Path) -> list[StoredMessage]:
        path = history_path(project_path)
        if not path.exists():
            return []
        messages: list[StoredMessage] = []
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            LOGGER.error("Failed to read history: %s", exc, extra=log_extra(component="history", operation="read", result="error"))
            return []
        for line in lines:
            if not line.strip():
                continue
            try:
                messages.append(StoredMessage(**json.loads(line)))
            except (TypeError, ValueError):
                LOGGER.warning("Skipping malformed history line in %s", path, extra=log_extra(component="history", operation="read"))
        return messages

    def count(self, project_path: Path) -> int:
        path = history_path(project_path)
        if not path.exists():
            return 0
        try:
            return sum(1 for line in path.read_text(encoding="utf-8").splitlines() if line.strip())
        except OSError:
            return 0


__all__ = ["AGENT_SENDER_ID", "AGENT_SENDER_NAME", "HistoryService", "StoredMessage"]
