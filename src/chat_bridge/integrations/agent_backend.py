from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, Union

from claude_agent_sdk import ClaudeAgentOptions, query
from claude_agent_sdk.types import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
)

from bridge_core.errors import InvocationFailed, error_message


@dataclass(frozen=True)
class AgentRequest:
    prompt: str
    working_directory: Path
    allowed_tools: tuple[str, ...]
    permission_mode: str
    resume: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class InitEvent:
    session_id: str


@dataclass(frozen=True)
class ToolUseEvent:
    name: str


@dataclass(frozen=True)
class AssistantTextEvent:
    text: str


@dataclass(frozen=True)
class ResultEvent:
    text: str
    is_error: bool = False
    subtype: str = ""


@dataclass(frozen=True)
class OtherEvent:
    kind: str


AgentEvent = Union[InitEvent, ToolUseEvent, AssistantTextEvent, ResultEvent, OtherEvent]


class AgentBackend(Protocol):
    def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]: ...


@dataclass
class EventFold:
    """Folds a backend event stream: first init session id, last result."""

    session_id: str | None = None
    result: str = ""
    is_error: bool = False
    result_subtype: str = ""
    tools_used: list[str] = field(default_factory=list)

    def feed(self, event: AgentEvent) -> None:
        if isinstance(event, InitEvent):
            if self.session_id is None and event.session_id:
                self.session_id = event.session_id
        elif isinstance(event, ToolUseEvent):
            self.tools_used.append(event.name)
        elif isinstance(event, ResultEvent):
            self.result = event.text
            self.is_error = event.is_error
            self.result_subtype = event.subtype

    def error_detail(self) -> str:
        return self.result or self.result_subtype or "agent returned an error result"


def translate_message(message: Any) -> list[AgentEvent]:
    if isinstance(message, SystemMessage):
        if message.subtype == "init":
            session_id = str((message.data or {}).get("session_id") or "")
            return [InitEvent(session_id=session_id)]
        return [OtherEvent(kind=f"system:{message.subtype}")]
    if isinstance(message, AssistantMessage):
        events: list[AgentEvent] = []
        for block in message.content:
            if isinstance(block, ToolUseBlock):
                events.append(ToolUseEvent(name=block.name))
            elif isinstance(block, TextBlock):
                events.append(AssistantTextEvent(text=block.text))
        return events or [OtherEvent(kind="assistant")]
    if isinstance(message, ResultMessage):
        text = message.result if isinstance(message.result, str) else ""
        return [ResultEvent(text=text, is_error=bool(message.is_error), subtype=str(message.subtype or ""))]
    return [OtherEvent(kind=type(message).__name__)]


class ClaudeAgentBackend:
    def build_options(self, request: AgentRequest) -> ClaudeAgentOptions:
        options: dict[str, Any] = {
            "cwd": str(request.working_directory),
            "allowed_tools": list(request.allowed_tools),
            "permission_mode": request.permission_mode,
        }
        if request.resume:
            options["resume"] = request.resume
        if request.model:
            options["model"] = request.model
        return ClaudeAgentOptions(**options)

    async def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        options = self.build_options(request)
        try:
            async for message in query(prompt=request.prompt, options=options):
                for event in translate_message(message):
                    yield event
        except InvocationFailed:
            raise
        except Exception as exc:
            raise InvocationFailed(error_message(exc)) from exc


__all__ = [
    "AgentBackend",
    "AgentEvent",
    "AgentRequest",
    "AssistantTextEvent",
    "ClaudeAgentBackend",
    "EventFold",
    "InitEvent",
    "OtherEvent",
    "ResultEvent",
    "ToolUseEvent",
    "translate_message",
]
