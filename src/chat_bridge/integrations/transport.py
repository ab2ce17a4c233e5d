from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from bridge_core.logging import log_extra

LOGGER = logging.getLogger("chat_bridge.transport")

RELAY_TIMEOUT_SECONDS = 20.0


@dataclass(frozen=True)
class SenderIdentity:
    id: str
    name: str = ""
    number: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.number or "Unknown"


@dataclass(frozen=True)
class ConversationDescriptor:
    id: str
    name: str
    is_group: bool = True


@dataclass(frozen=True)
class InboundMessage:
    text: str
    message_id: str
    resolve_sender: Callable[[], Awaitable[SenderIdentity]]
    has_media: bool = False


class ResponseChannel(Protocol):
    async def send_text(self, text: str) -> None: ...

    async def start_typing(self) -> None: ...

    async def stop_typing(self) -> None: ...


class RelayClient:
    """Posts outbound traffic to an external transport relay over HTTP."""

    def __init__(self, *, base_url: str, timeout_seconds: float = RELAY_TIMEOUT_SECONDS) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    def post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        request = urllib.request.Request(
            url,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "User-Agent": "chat-bridge/1.0",
            },
            method="POST",
            data=json.dumps(payload).encode("utf-8"),
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                body = response.read().decode("utf-8", errors="ignore")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            detail = body.strip() or f"HTTP {exc.code}"
            raise RuntimeError(f"relay request failed: POST {url} -> {exc.code}: {detail}") from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise RuntimeError(f"relay request failed: POST {url}: {exc}") from exc
        if not body.strip():
            return {}
        parsed = json.loads(body)
        if isinstance(parsed, dict):
            return parsed
        return {"value": parsed}

    async def post_async(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self.post, path, payload)


class RelayResponseChannel:
    def __init__(self, *, client: RelayClient, conversation_id: str) -> None:
        self._client = client
        self.conversation_id = conversation_id

    async def send_text(self, text: str) -> None:
        await self._client.post_async("/messages", {"conversation_id": self.conversation_id, "text": text})

    async def start_typing(self) -> None:
        await self._client.post_async("/typing", {"conversation_id": self.conversation_id, "state": "typing"})

    async def stop_typing(self) -> None:
        await self._client.post_async("/typing", {"conversation_id": self.conversation_id, "state": "idle"})


def sender_from_payload(raw: Any) -> SenderIdentity:
    if not isinstance(raw, dict):
        return SenderIdentity(id="")
    return SenderIdentity(
        id=str(raw.get("id") or ""),
        name=str(raw.get("name") or ""),
        number=str(raw.get("number") or ""),
    )


def inbound_from_payload(payload: dict[str, Any]) -> tuple[InboundMessage, ConversationDescriptor]:
    """Translate a relay event body into the router's inbound types."""
    conversation_raw = payload.get("conversation")
    if not isinstance(conversation_raw, dict):
        raise ValueError("conversation must be an object.")
    conversation_id = str(conversation_raw.get("id") or "").strip()
    if not conversation_id:
        raise ValueError("conversation.id is required.")
    conversation = ConversationDescriptor(
        id=conversation_id,
        name=str(conversation_raw.get("name") or ""),
        is_group=bool(conversation_raw.get("is_group", True)),
    )
    sender = sender_from_payload(payload.get("sender"))

    async def resolve_sender() -> SenderIdentity:
        return sender

    message = InboundMessage(
        text=str(payload.get("text") or ""),
        message_id=str(payload.get("message_id") or ""),
        resolve_sender=resolve_sender,
        has_media=bool(payload.get("has_media", False)),
    )
    return message, conversation


async def call_best_effort(action: Callable[[], Awaitable[None]], *, operation: str, conversation_id: str) -> None:
    """Run a side effect whose failure must not reach the response path."""
    try:
        await action()
    except Exception as exc:
        LOGGER.warning(
            "Transport %s failed: %s",
            operation,
            exc,
            extra=log_extra(
                component="transport",
                operation=operation,
                result="error",
                conversation_id=conversation_id,
                error_class=type(exc).__name__,
            ),
        )


__all__ = [
    "ConversationDescriptor",
    "InboundMessage",
    "RelayClient",
    "RelayResponseChannel",
    "ResponseChannel",
    "SenderIdentity",
    "call_best_effort",
    "inbound_from_payload",
    "sender_from_payload",
]
