from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from bridge_core.errors import PersistenceFailed
from chat_bridge.integrations.transport import ConversationDescriptor, InboundMessage, SenderIdentity
from chat_bridge.messages import BOT_PREFIX, MEDIA_UNSUPPORTED_NOTICE
from chat_bridge.runtime.queues import Job, QueueRegistry
from chat_bridge.services.project_service import ProjectService
from chat_bridge.services.router_service import (
    ADMITTED,
    REJECT_CONFLICT,
    REJECT_ECHO,
    REJECT_EMPTY,
    REJECT_INVALID_NAME,
    REJECT_MEDIA,
    REJECT_NOT_PROJECT,
    REJECT_QUEUE_FULL,
    ConversationRouter,
)
from chat_bridge.store import BridgeStateStore, ProjectRegistry


class RecordingChannel:
    def __init__(self, *, fail_send: bool = False) -> None:
        self.sent: list[str] = []
        self.fail_send = fail_send

    async def send_text(self, text: str) -> None:
        if self.fail_send:
            raise RuntimeError("offline")
        self.sent.append(text)

    async def start_typing(self) -> None:
        return None

    async def stop_typing(self) -> None:
        return None


def _message(text: str, *, message_id: str = "m1", has_media: bool = False) -> InboundMessage:
    async def resolve_sender() -> SenderIdentity:
        return SenderIdentity(id="user-1", name="", number="+15550100")

    return InboundMessage(text=text, message_id=message_id, resolve_sender=resolve_sender, has_media=has_media)


def _router(tmp_path: Path, handler, *, max_queue_size: int = 1) -> tuple[ConversationRouter, QueueRegistry, ProjectRegistry]:
    state_store = BridgeStateStore(state_file=tmp_path / ".chat-bridge-state.json")
    state_store.load()
    registry = ProjectRegistry(state_store=state_store)
    queues = QueueRegistry(handler=handler)
    router = ConversationRouter(
        projects=ProjectService(projects_root=tmp_path, group_prefix="Claude:"),
        registry=registry,
        queues=queues,
        max_queue_size=max_queue_size,
    )
    return router, queues, registry


async def _echo(job: Job) -> str:
    return f"echo {job.text}"


def test_admitted_message_is_answered(tmp_path: Path) -> None:
    handled: list[Job] = []

    async def handler(job: Job) -> str:
        handled.append(job)
        return "answer"

    async def scenario() -> tuple[object, RecordingChannel]:
        router, queues, _ = _router(tmp_path, handler)
        channel = RecordingChannel()
        result = await router.route_message(
            _message("hello"), ConversationDescriptor(id="g1", name="Claude: demo"), channel
        )
        await queues.drain()
        await queues.close()
        return result, channel

    result, channel = asyncio.run(scenario())
    assert result.status == ADMITTED
    assert result.project_name == "demo"
    assert result.queue_depth == 1
    assert channel.sent == [f"{BOT_PREFIX}answer"]
    assert handled[0].project_path == tmp_path / "demo"
    assert handled[0].sender_name == "+15550100"
    assert (tmp_path / "demo" / "CLAUDE.md").exists()


def test_conflicting_project_name_is_rejected_without_side_effects(tmp_path: Path) -> None:
    async def scenario() -> tuple[list[object], RecordingChannel, RecordingChannel, QueueRegistry, ProjectRegistry]:
        router, queues, registry = _router(tmp_path, _echo)
        first_channel = RecordingChannel()
        second_channel = RecordingChannel()
        results = [
            await router.route_message(
                _message("hi"), ConversationDescriptor(id="g1", name="Claude: demo"), first_channel
            ),
            await router.route_message(
                _message("hi"), ConversationDescriptor(id="g2", name="Claude: demo!!"), second_channel
            ),
        ]
        await queues.drain()
        await queues.close()
        return results, first_channel, second_channel, queues, registry

    results, first_channel, second_channel, queues, registry = asyncio.run(scenario())
    assert results[0].status == ADMITTED
    assert results[1].status == REJECT_CONFLICT
    assert results[1].project_name == "demo"
    assert first_channel.sent == [f"{BOT_PREFIX}echo hi"]
    assert len(second_channel.sent) == 1
    assert second_channel.sent[0].startswith(f"{BOT_PREFIX}⚠️ Another group already uses the project name \"demo\"")
    assert queues.has_queue("g2") is False
    assert registry.owner("demo") == "g1"
    assert [path.name for path in tmp_path.iterdir() if path.is_dir()] == ["demo"]


def test_queue_full_then_reopens_after_completion(tmp_path: Path) -> None:
    async def scenario() -> tuple[list[str], RecordingChannel]:
        gate = asyncio.Event()
        started = asyncio.Event()

        async def handler(job: Job) -> str:
            if job.text == "first":
                started.set()
                await gate.wait()
            return f"done {job.text}"

        router, queues, _ = _router(tmp_path, handler, max_queue_size=1)
        channel = RecordingChannel()
        conversation = ConversationDescriptor(id="g1", name="Claude: demo")
        statuses = []
        statuses.append((await router.route_message(_message("first", message_id="1"), conversation, channel)).status)
        await started.wait()
        statuses.append((await router.route_message(_message("second", message_id="2"), conversation, channel)).status)
        gate.set()
        await queues.drain()
        statuses.append((await router.route_message(_message("third", message_id="3"), conversation, channel)).status)
        await queues.drain()
        await queues.close()
        return statuses, channel

    statuses, channel = asyncio.run(scenario())
    assert statuses == [ADMITTED, REJECT_QUEUE_FULL, ADMITTED]
    assert channel.sent == [
        f"{BOT_PREFIX}⚠️ Queue full (1 messages). Please wait for current tasks to complete.",
        f"{BOT_PREFIX}done first",
        f"{BOT_PREFIX}done third",
    ]


def test_queue_admits_up_to_max_size(tmp_path: Path) -> None:
    async def scenario() -> list[str]:
        gate = asyncio.Event()

        async def handler(job: Job) -> str:
            await gate.wait()
            return "ok"

        router, queues, _ = _router(tmp_path, handler, max_queue_size=3)
        conversation = ConversationDescriptor(id="g1", name="Claude: demo")
        statuses = [
            (await router.route_message(_message(f"m{index}", message_id=str(index)), conversation, RecordingChannel())).status
            for index in range(4)
        ]
        gate.set()
        await queues.drain()
        await queues.close()
        return statuses

    assert asyncio.run(scenario()) == [ADMITTED, ADMITTED, ADMITTED, REJECT_QUEUE_FULL]


@pytest.mark.parametrize(
    ("conversation", "message", "status", "notified"),
    [
        (ConversationDescriptor(id="g1", name="Family"), _message("hi"), REJECT_NOT_PROJECT, False),
        (ConversationDescriptor(id="d1", name="Claude: demo", is_group=False), _message("hi"), REJECT_NOT_PROJECT, False),
        (ConversationDescriptor(id="g1", name="Claude: demo"), _message("", has_media=True), REJECT_MEDIA, True),
        (ConversationDescriptor(id="g1", name="Claude: demo"), _message("   "), REJECT_EMPTY, False),
        (ConversationDescriptor(id="g1", name="Claude: demo"), _message(f"{BOT_PREFIX}old reply"), REJECT_ECHO, False),
        (ConversationDescriptor(id="g1", name="Claude: !!!"), _message("hi"), REJECT_INVALID_NAME, True),
    ],
)
def test_filtered_messages_never_reach_a_queue(
    tmp_path: Path,
    conversation: ConversationDescriptor,
    message: InboundMessage,
    status: str,
    notified: bool,
) -> None:
    async def scenario() -> tuple[object, RecordingChannel, QueueRegistry]:
        router, queues, _ = _router(tmp_path, _echo)
        channel = RecordingChannel()
        result = await router.route_message(message, conversation, channel)
        return result, channel, queues

    result, channel, queues = asyncio.run(scenario())
    assert result.status == status
    assert result.admitted is False
    assert queues.has_queue(conversation.id) is False
    assert bool(channel.sent) is notified
    if status == REJECT_MEDIA:
        assert channel.sent == [f"{BOT_PREFIX}{MEDIA_UNSUPPORTED_NOTICE}"]


def test_notice_send_failure_is_swallowed(tmp_path: Path) -> None:
    async def scenario() -> str:
        router, _, _ = _router(tmp_path, _echo)
        result = await router.route_message(
            _message("", has_media=True),
            ConversationDescriptor(id="g1", name="Claude: demo"),
            RecordingChannel(fail_send=True),
        )
        return result.status

    assert asyncio.run(scenario()) == REJECT_MEDIA


def test_sender_resolution_failure_releases_reservation(tmp_path: Path) -> None:
    async def broken_sender() -> SenderIdentity:
        raise RuntimeError("contact lookup failed")

    async def scenario() -> int:
        router, queues, _ = _router(tmp_path, _echo)
        message = InboundMessage(text="hi", message_id="m1", resolve_sender=broken_sender)
        with pytest.raises(RuntimeError, match="contact lookup failed"):
            await router.route_message(message, ConversationDescriptor(id="g1", name="Claude: demo"), RecordingChannel())
        return queues.get("g1").depth

    assert asyncio.run(scenario()) == 0


def test_concurrent_arrivals_never_exceed_max_size(tmp_path: Path) -> None:
    async def slow_sender() -> SenderIdentity:
        await asyncio.sleep(0.01)
        return SenderIdentity(id="user-1", name="Ana")

    async def scenario() -> tuple[list[str], int]:
        gate = asyncio.Event()

        async def handler(job: Job) -> str:
            await gate.wait()
            return "ok"

        router, queues, _ = _router(tmp_path, handler, max_queue_size=2)
        conversation = ConversationDescriptor(id="g1", name="Claude: demo")
        results = await asyncio.gather(
            *(
                router.route_message(
                    InboundMessage(text=f"m{index}", message_id=str(index), resolve_sender=slow_sender),
                    conversation,
                    RecordingChannel(),
                )
                for index in range(4)
            )
        )
        depth = queues.get("g1").depth
        gate.set()
        await queues.drain()
        await queues.close()
        return [result.status for result in results], depth

    statuses, depth = asyncio.run(scenario())
    assert statuses == [ADMITTED, ADMITTED, REJECT_QUEUE_FULL, REJECT_QUEUE_FULL]
    assert depth == 2


def test_workspace_failure_releases_reservation(tmp_path: Path) -> None:
    (tmp_path / "demo").write_text("blocks the project directory", encoding="utf-8")

    async def scenario() -> int:
        router, queues, _ = _router(tmp_path, _echo)
        with pytest.raises(PersistenceFailed):
            await router.route_message(_message("hi"), ConversationDescriptor(id="g1", name="Claude: demo"), RecordingChannel())
        return queues.get("g1").depth

    assert asyncio.run(scenario()) == 0
