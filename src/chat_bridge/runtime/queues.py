from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from bridge_core.errors import error_message
from bridge_core.logging import log_extra
from bridge_core.shared import truncate
from chat_bridge.integrations.transport import ResponseChannel, call_best_effort
from chat_bridge.messages import error_notice, format_bot_response

LOGGER = logging.getLogger("chat_bridge.queues")


class JobState(str, enum.Enum):
    ENQUEUED = "enqueued"
    RUNNING = "running"
    DELIVERED = "delivered"
    ERRORED = "errored"


@dataclass
class Job:
    conversation_id: str
    conversation_name: str
    project_path: Path
    text: str
    sender_id: str
    sender_name: str
    message_id: str
    channel: ResponseChannel
    state: JobState = field(default=JobState.ENQUEUED)


JobHandler = Callable[[Job], Awaitable[str]]


class ConversationQueue:
    """FIFO worker for one conversation; runs at most one job at a time."""

    def __init__(self, conversation_id: str, *, handler: JobHandler) -> None:
        self.conversation_id = conversation_id
        self._handler = handler
        self._jobs: asyncio.Queue[Job] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._in_flight: Job | None = None
        self._reserved = 0
        self.processed = 0

    @property
    def pending(self) -> int:
        return self._jobs.qsize() + self._reserved

    @property
    def in_flight(self) -> int:
        return 1 if self._in_flight is not None else 0

    @property
    def depth(self) -> int:
        return self.pending + self.in_flight

    @property
    def active(self) -> int:
        return self._jobs.qsize() + self.in_flight

    def try_reserve(self, max_size: int) -> bool:
        """Hold a slot for a job that is still being assembled."""
        if self.depth >= max_size:
            return False
        self._reserved += 1
        return True

    def release(self) -> None:
        if self._reserved > 0:
            self._reserved -= 1

    def submit(self, job: Job, *, reserved: bool = False) -> int:
        if reserved:
            self.release()
        job.state = JobState.ENQUEUED
        self._jobs.put_nowait(job)
        self._ensure_worker()
        return self.depth

    async def join(self) -> None:
        await self._jobs.join()

    async def close(self) -> None:
        worker = self._worker
        self._worker = None
        if worker is None or worker.done():
            return
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(),
                name=f"conversation-queue:{self.conversation_id}",
            )

    async def _run(self) -> None:
        while True:
            job = await self._jobs.get()
            self._in_flight = job
            try:
                await self._process(job)
            finally:
                self._in_flight = None
                self.processed += 1
                self._jobs.task_done()

    async def _process(self, job: Job) -> None:
        started = time.monotonic()
        job.state = JobState.RUNNING
        LOGGER.info(
            "[%s] %s: %r",
            job.conversation_name,
            job.sender_name,
            truncate(job.text),
            extra=log_extra(component="queue", operation="run", conversation_id=job.conversation_id),
        )
        await call_best_effort(job.channel.start_typing, operation="start_typing", conversation_id=job.conversation_id)
        try:
            response = format_bot_response(await self._handler(job))
            job.state = JobState.DELIVERED
        except Exception as exc:
            detail = error_message(exc)
            LOGGER.error(
                "[%s] Error: %s",
                job.conversation_name,
                detail,
                extra=log_extra(
                    component="queue",
                    operation="run",
                    result="error",
                    conversation_id=job.conversation_id,
                    error_class=type(exc).__name__,
                ),
            )
            response = format_bot_response(error_notice(detail))
            job.state = JobState.ERRORED
        await call_best_effort(job.channel.stop_typing, operation="stop_typing", conversation_id=job.conversation_id)
        try:
            await job.channel.send_text(response)
        except Exception as exc:
            LOGGER.error(
                "[%s] Failed to deliver response: %s",
                job.conversation_name,
                exc,
                extra=log_extra(
                    component="queue",
                    operation="deliver",
                    result="error",
                    conversation_id=job.conversation_id,
                    error_class=type(exc).__name__,
                ),
            )
            return
        LOGGER.info(
            "[%s] Sent response (%s chars)",
            job.conversation_name,
            len(response),
            extra=log_extra(
                component="queue",
                operation="deliver",
                result=job.state.value,
                conversation_id=job.conversation_id,
                duration_ms=int((time.monotonic() - started) * 1000),
            ),
        )


class QueueRegistry:
    def __init__(self, *, handler: JobHandler) -> None:
        self._handler = handler
        self._queues: dict[str, ConversationQueue] = {}

    def get(self, conversation_id: str) -> ConversationQueue:
        queue = self._queues.get(conversation_id)
        if queue is None:
            queue = ConversationQueue(conversation_id, handler=self._handler)
            self._queues[conversation_id] = queue
        return queue

    def has_queue(self, conversation_id: str) -> bool:
        return conversation_id in self._queues

    def status(self) -> dict[str, dict[str, int]]:
        return {
            conversation_id: {
                "pending": queue.pending,
                "in_flight": queue.in_flight,
                "processed": queue.processed,
            }
            for conversation_id, queue in self._queues.items()
        }

    async def drain(self) -> None:
        # Jobs can enqueue while we wait on another conversation; loop until quiet.
        while True:
            busy = [queue for queue in self._queues.values() if queue.active > 0]
            if not busy:
                return
            await asyncio.gather(*(queue.join() for queue in busy))

    async def close(self) -> None:
        await asyncio.gather(*(queue.close() for queue in self._queues.values()))


__all__ = ["ConversationQueue", "Job", "JobHandler", "JobState", "QueueRegistry"]
