from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from bridge_core.config import DEFAULT_ALLOWED_TOOLS, DEFAULT_PERMISSION_MODE
from bridge_core.errors import InvocationFailed, error_message
from bridge_core.logging import log_extra
from bridge_core.shared import iso_now, truncate
from chat_bridge.integrations.agent_backend import AgentBackend, AgentRequest, EventFold, ToolUseEvent
from chat_bridge.messages import error_notice
from chat_bridge.services.history_service import (
    AGENT_SENDER_ID,
    AGENT_SENDER_NAME,
    HistoryService,
    StoredMessage,
)
from chat_bridge.store.session_store import SessionStore

LOGGER = logging.getLogger("chat_bridge.invocation")


@dataclass(frozen=True)
class InvocationRequest:
    conversation_id: str
    conversation_name: str
    project_path: Path
    text: str
    sender_id: str
    sender_name: str
    message_id: str


class InvocationPipeline:
    """Runs one job against the agent backend and keeps session state current.

    Backend failures never escape: they become the returned text, and any
    session id seen before the failure is still recorded.
    """

    def __init__(
        self,
        *,
        backend: AgentBackend,
        sessions: SessionStore,
        history: HistoryService,
        allowed_tools: tuple[str, ...] = DEFAULT_ALLOWED_TOOLS,
        permission_mode: str = DEFAULT_PERMISSION_MODE,
        model: str | None = None,
    ) -> None:
        self._backend = backend
        self._sessions = sessions
        self._history = history
        self._allowed_tools = tuple(allowed_tools)
        self._permission_mode = permission_mode
        self._model = model

    async def run(self, request: InvocationRequest) -> str:
        started = time.monotonic()
        conversation_id = request.conversation_id
        existing = self._sessions.get(conversation_id)
        LOGGER.debug(
            "Query for %s: %s",
            request.conversation_name,
            truncate(request.text),
            extra=log_extra(component="invocation", operation="query", conversation_id=conversation_id),
        )
        if existing is not None:
            LOGGER.debug(
                "Resuming session: %s",
                existing.session_id,
                extra=log_extra(component="invocation", operation="resume", conversation_id=conversation_id),
            )

        self._history.append(
            request.project_path,
            StoredMessage(
                id=request.message_id,
                timestamp=iso_now(),
                conversation_id=conversation_id,
                conversation_name=request.conversation_name,
                role="user",
                sender_id=request.sender_id,
                sender_name=request.sender_name,
                content=request.text,
            ),
        )

        agent_request = AgentRequest(
            prompt=request.text,
            working_directory=request.project_path,
            allowed_tools=self._allowed_tools,
            permission_mode=self._permission_mode,
            resume=existing.session_id if existing is not None else None,
            model=self._model,
        )
        fold = EventFold()
        try:
            async for event in self._backend.stream(agent_request):
                if isinstance(event, ToolUseEvent):
                    LOGGER.debug(
                        "Tool: %s",
                        event.name,
                        extra=log_extra(component="invocation", operation="tool_use", conversation_id=conversation_id),
                    )
                fold.feed(event)
            if fold.is_error:
                raise InvocationFailed(fold.error_detail())
            result = fold.result
            LOGGER.info(
                "[%s] Agent responded (%s chars, %s tool calls)",
                request.conversation_name,
                len(result),
                len(fold.tools_used),
                extra=log_extra(
                    component="invocation",
                    operation="query",
                    result="ok",
                    conversation_id=conversation_id,
                    duration_ms=int((time.monotonic() - started) * 1000),
                ),
            )
        except Exception as exc:
            detail = error_message(exc)
            LOGGER.error(
                "Agent query failed: %s",
                detail,
                extra=log_extra(
                    component="invocation",
                    operation="query",
                    result="error",
                    conversation_id=conversation_id,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error_class=type(exc).__name__,
                ),
            )
            result = error_notice(detail)

        if fold.session_id:
            self._sessions.record_session(
                conversation_id,
                session_id=fold.session_id,
                project_path=str(request.project_path),
                conversation_name=request.conversation_name,
            )
        elif existing is not None:
            self._sessions.touch(conversation_id)

        self._history.append(
            request.project_path,
            StoredMessage(
                id=f"response-{request.message_id}",
                timestamp=iso_now(),
                conversation_id=conversation_id,
                conversation_name=request.conversation_name,
                role="assistant",
                sender_id=AGENT_SENDER_ID,
                sender_name=AGENT_SENDER_NAME,
                content=result,
            ),
        )
        return result


__all__ = ["InvocationPipeline", "InvocationRequest"]
