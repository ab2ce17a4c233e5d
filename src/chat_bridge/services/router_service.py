from __future__ import annotations

import logging
from dataclasses import dataclass

from bridge_core.errors import AdmissionRejected, error_message
from bridge_core.logging import log_extra
from chat_bridge.integrations.transport import (
    ConversationDescriptor,
    InboundMessage,
    ResponseChannel,
)
from chat_bridge.messages import (
    MEDIA_UNSUPPORTED_NOTICE,
    format_bot_response,
    invalid_project_name_notice,
    is_bot_message,
    project_conflict_notice,
    queue_full_notice,
)
from chat_bridge.runtime.queues import Job, QueueRegistry
from chat_bridge.services.project_service import ProjectService
from chat_bridge.store.project_registry import ProjectRegistry

LOGGER = logging.getLogger("chat_bridge.router")

ADMITTED = "admitted"
REJECT_NOT_PROJECT = "not_project_conversation"
REJECT_MEDIA = "media_unsupported"
REJECT_EMPTY = "empty_text"
REJECT_ECHO = "own_message"
REJECT_INVALID_NAME = "invalid_project_name"
REJECT_CONFLICT = "project_conflict"
REJECT_QUEUE_FULL = "queue_full"


@dataclass(frozen=True)
class AdmissionResult:
    status: str
    project_name: str = ""
    queue_depth: int = 0

    @property
    def admitted(self) -> bool:
        return self.status == ADMITTED

    def payload(self) -> dict[str, object]:
        return {
            "status": self.status,
            "admitted": self.admitted,
            "project_name": self.project_name,
            "queue_depth": self.queue_depth,
        }


class ConversationRouter:
    """Admission filter in front of the per-conversation queues."""

    def __init__(
        self,
        *,
        projects: ProjectService,
        registry: ProjectRegistry,
        queues: QueueRegistry,
        max_queue_size: int,
        groups_only: bool = True,
    ) -> None:
        self._projects = projects
        self._registry = registry
        self._queues = queues
        self.max_queue_size = int(max_queue_size)
        self._groups_only = groups_only

    async def route_message(
        self,
        message: InboundMessage,
        conversation: ConversationDescriptor,
        channel: ResponseChannel,
    ) -> AdmissionResult:
        if self._groups_only and not conversation.is_group:
            return AdmissionResult(status=REJECT_NOT_PROJECT)
        if not self._projects.is_project_conversation(conversation.name):
            return AdmissionResult(status=REJECT_NOT_PROJECT)

        if message.has_media:
            await self._notify(channel, MEDIA_UNSUPPORTED_NOTICE, conversation)
            return AdmissionResult(status=REJECT_MEDIA)

        text = message.text
        if not text.strip():
            return AdmissionResult(status=REJECT_EMPTY)
        if is_bot_message(text):
            return AdmissionResult(status=REJECT_ECHO)

        try:
            project_name = self._resolve_claim(conversation)
        except AdmissionRejected as exc:
            await self._notify(channel, str(exc), conversation)
            return AdmissionResult(status=exc.reason, project_name=self._projects.project_name(conversation.name))

        queue = self._queues.get(conversation.id)
        if not queue.try_reserve(self.max_queue_size):
            LOGGER.warning(
                "[%s] Queue full (%s)",
                conversation.name,
                self.max_queue_size,
                extra=log_extra(
                    component="router",
                    operation="admit",
                    result=REJECT_QUEUE_FULL,
                    conversation_id=conversation.id,
                    project=project_name,
                ),
            )
            await self._notify(channel, queue_full_notice(self.max_queue_size), conversation)
            return AdmissionResult(status=REJECT_QUEUE_FULL, project_name=project_name, queue_depth=queue.depth)

        try:
            sender = await message.resolve_sender()
            project_path = self._projects.ensure_project_exists(project_name)
        except BaseException:
            queue.release()
            raise

        job = Job(
            conversation_id=conversation.id,
            conversation_name=conversation.name,
            project_path=project_path,
            text=text,
            sender_id=sender.id,
            sender_name=sender.display_name,
            message_id=message.message_id,
            channel=channel,
        )
        depth = queue.submit(job, reserved=True)
        if depth > 1:
            LOGGER.info(
                "[%s] Queued message (position %s)",
                conversation.name,
                depth,
                extra=log_extra(component="router", operation="admit", result=ADMITTED, conversation_id=conversation.id),
            )
        return AdmissionResult(status=ADMITTED, project_name=project_name, queue_depth=depth)

    def _resolve_claim(self, conversation: ConversationDescriptor) -> str:
        project_name = self._projects.project_name(conversation.name)
        if not project_name:
            raise AdmissionRejected(
                invalid_project_name_notice(conversation.name),
                reason=REJECT_INVALID_NAME,
            )
        owner = self._registry.owner(project_name)
        if owner is not None and owner != conversation.id:
            raise AdmissionRejected(project_conflict_notice(project_name), reason=REJECT_CONFLICT)
        if owner is None:
            claim = self._registry.claim(project_name, conversation.id)
            if not claim.owned_by(conversation.id):
                raise AdmissionRejected(project_conflict_notice(project_name), reason=REJECT_CONFLICT)
            LOGGER.info(
                '[%s] Registered as owner of project "%s"',
                conversation.name,
                project_name,
                extra=log_extra(
                    component="router",
                    operation="claim",
                    result="created",
                    conversation_id=conversation.id,
                    project=project_name,
                ),
            )
        return project_name

    async def _notify(self, channel: ResponseChannel, notice: str, conversation: ConversationDescriptor) -> None:
        try:
            await channel.send_text(format_bot_response(notice))
        except Exception as exc:
            LOGGER.error(
                "[%s] Failed to send notice: %s",
                conversation.name,
                error_message(exc),
                extra=log_extra(
                    component="router",
                    operation="notify",
                    result="error",
                    conversation_id=conversation.id,
                    error_class=type(exc).__name__,
                ),
            )


__all__ = [
    "ADMITTED",
    "AdmissionResult",
    "ConversationRouter",
    "REJECT_CONFLICT",
    "REJECT_ECHO",
    "REJECT_EMPTY",
    "REJECT_INVALID_NAME",
    "REJECT_MEDIA",
    "REJECT_NOT_PROJECT",
    "REJECT_QUEUE_FULL",
]
