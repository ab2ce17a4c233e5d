from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator

from chat_bridge.integrations.agent_backend import (
    AgentEvent,
    AgentRequest,
    AssistantTextEvent,
    InitEvent,
    OtherEvent,
    ResultEvent,
    ToolUseEvent,
)
from chat_bridge.services.history_service import HistoryService
from chat_bridge.services.invocation_service import InvocationPipeline, InvocationRequest
from chat_bridge.store import BridgeStateStore, SessionStore


class FakeBackend:
    """Replays scripted events; ``fail_after`` raises once that many events were sent."""

    def __init__(self, events: list[AgentEvent], *, fail_after: int | None = None) -> None:
        self.events = list(events)
        self.fail_after = fail_after
        self.requests: list[AgentRequest] = []

    async def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        self.requests.append(request)
        for index, event in enumerate(self.events):
            if self.fail_after is not None and index >= self.fail_after:
                break
            yield event
        if self.fail_after is not None:
            raise RuntimeError("backend exploded")


def _pipeline(tmp_path: Path, backend: Any) -> tuple[InvocationPipeline, SessionStore, HistoryService]:
    state_store = BridgeStateStore(state_file=tmp_path / "state.json")
    state_store.load()
    sessions = SessionStore(state_store=state_store)
    history = HistoryService()
    pipeline = InvocationPipeline(
        backend=backend,
        sessions=sessions,
        history=history,
        allowed_tools=("Read",),
        permission_mode="acceptEdits",
        model="sonnet",
    )
    return pipeline, sessions, history


def _request(project_path: Path, text: str = "hello", message_id: str = "m1") -> InvocationRequest:
    return InvocationRequest(
        conversation_id="group-1",
        conversation_name="Claude: demo",
        project_path=project_path,
        text=text,
        sender_id="user-1",
        sender_name="Ana",
        message_id=message_id,
    )


def test_first_message_starts_fresh_session(tmp_path: Path) -> None:
    project_path = tmp_path / "demo"
    backend = FakeBackend(
        [
            InitEvent(session_id="sess-1"),
            ToolUseEvent(name="Read"),
            AssistantTextEvent(text="thinking"),
            ResultEvent(text="Hi there"),
        ]
    )
    pipeline, sessions, history = _pipeline(tmp_path, backend)

    result = asyncio.run(pipeline.run(_request(project_path)))

    assert result == "Hi there"
    assert backend.requests[0].resume is None
    assert backend.requests[0].working_directory == project_path
    assert backend.requests[0].allowed_tools == ("Read",)
    assert backend.requests[0].model == "sonnet"
    record = sessions.get("group-1")
    assert record is not None
    assert record.session_id == "sess-1"
    assert record.project_path == str(project_path)
    entries = history.read(project_path)
    assert [(entry.id, entry.role, entry.content) for entry in entries] == [
        ("m1", "user", "hello"),
        ("response-m1", "assistant", "Hi there"),
    ]
    assert entries[1].sender_id == "agent"
    assert entries[1].sender_name == "Claude"


def test_follow_up_resumes_stored_session(tmp_path: Path) -> None:
    project_path = tmp_path / "demo"
    backend = FakeBackend([InitEvent(session_id="sess-1"), ResultEvent(text="ok")])
    pipeline, sessions, _ = _pipeline(tmp_path, backend)

    asyncio.run(pipeline.run(_request(project_path)))
    backend.events = [InitEvent(session_id="sess-2"), ResultEvent(text="again")]
    result = asyncio.run(pipeline.run(_request(project_path, text="more", message_id="m2")))

    assert result == "again"
    assert backend.requests[1].resume == "sess-1"
    assert sessions.get("group-1").session_id == "sess-2"


def test_backend_failure_returns_error_text_and_keeps_early_session(tmp_path: Path) -> None:
    project_path = tmp_path / "demo"
    backend = FakeBackend([InitEvent(session_id="sess-early"), ResultEvent(text="never")], fail_after=1)
    pipeline, sessions, history = _pipeline(tmp_path, backend)

    result = asyncio.run(pipeline.run(_request(project_path)))

    assert result == "❌ Error: backend exploded"
    assert sessions.get("group-1").session_id == "sess-early"
    assert history.read(project_path)[-1].content == "❌ Error: backend exploded"


def test_no_session_id_touches_existing_record(tmp_path: Path) -> None:
    project_path = tmp_path / "demo"
    backend = FakeBackend([InitEvent(session_id="sess-1"), ResultEvent(text="ok")])
    pipeline, sessions, _ = _pipeline(tmp_path, backend)
    asyncio.run(pipeline.run(_request(project_path)))
    before = sessions.get("group-1")

    backend.events = [ResultEvent(text="no init this time")]
    asyncio.run(pipeline.run(_request(project_path, message_id="m2")))

    after = sessions.get("group-1")
    assert after.session_id == before.session_id
    assert after.last_activity >= before.last_activity


def test_empty_stream_returns_empty_text_without_session(tmp_path: Path) -> None:
    project_path = tmp_path / "demo"
    pipeline, sessions, history = _pipeline(tmp_path, FakeBackend([]))

    assert asyncio.run(pipeline.run(_request(project_path))) == ""
    assert sessions.get("group-1") is None
    assert history.count(project_path) == 2


def test_history_failure_does_not_block_response(tmp_path: Path) -> None:
    project_path = tmp_path / "demo"
    project_path.write_text("file where the project dir should be", encoding="utf-8")
    backend = FakeBackend([InitEvent(session_id="sess-1"), ResultEvent(text="still answered")])
    pipeline, sessions, _ = _pipeline(tmp_path, backend)

    assert asyncio.run(pipeline.run(_request(project_path))) == "still answered"
    assert sessions.get("group-1").session_id == "sess-1"


def test_session_state_file_is_json(tmp_path: Path) -> None:
    backend = FakeBackend([InitEvent(session_id="sess-1"), ResultEvent(text="ok")])
    pipeline, _, _ = _pipeline(tmp_path, backend)
    asyncio.run(pipeline.run(_request(tmp_path / "demo")))

    persisted = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
    assert persisted["sessions"]["group-1"]["session_id"] == "sess-1"


def test_streamed_error_result_becomes_error_notice(tmp_path: Path) -> None:
    project_path = tmp_path / "demo"
    backend = FakeBackend([InitEvent(session_id="sess-1"), ResultEvent(text="API Error: overloaded", is_error=True)])
    pipeline, sessions, history = _pipeline(tmp_path, backend)

    result = asyncio.run(pipeline.run(_request(project_path)))

    assert result == "❌ Error: API Error: overloaded"
    assert sessions.get("group-1").session_id == "sess-1"
    assert history.read(project_path)[-1].content == result


def test_error_result_without_text_reports_subtype(tmp_path: Path) -> None:
    project_path = tmp_path / "demo"
    backend = FakeBackend(
        [
            InitEvent(session_id="sess-1"),
            OtherEvent(kind="user"),
            ResultEvent(text="", is_error=True, subtype="error_during_execution"),
        ]
    )
    pipeline, sessions, _ = _pipeline(tmp_path, backend)

    assert asyncio.run(pipeline.run(_request(project_path))) == "❌ Error: error_during_execution"
    assert sessions.get("group-1").session_id == "sess-1"


def test_later_success_result_clears_earlier_error(tmp_path: Path) -> None:
    backend = FakeBackend(
        [
            InitEvent(session_id="sess-1"),
            ResultEvent(text="transient", is_error=True),
            ResultEvent(text="recovered"),
        ]
    )
    pipeline, _, _ = _pipeline(tmp_path, backend)

    assert asyncio.run(pipeline.run(_request(tmp_path / "demo"))) == "recovered"
