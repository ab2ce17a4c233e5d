from __future__ import annotations

import logging
import os
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request

from bridge_core.logging import log_extra
from chat_bridge.integrations.transport import ResponseChannel, inbound_from_payload


def register_bridge_routes(
    app: FastAPI,
    *,
    bridge: Any,
    logger: logging.Logger,
    channel_factory: Callable[[str], ResponseChannel],
) -> None:
    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {"status": "ok", "ready": bool(bridge.ready)}

    @app.get("/api/status")
    def api_status() -> dict[str, Any]:
        return {
            "pid": os.getpid(),
            "ready": bool(bridge.ready),
            "max_queue_size": bridge.router.max_queue_size,
            "queues": bridge.queues.status(),
            "sessions": len(bridge.sessions.all_sessions()),
            "projects": bridge.registry.all_claims(),
        }

    @app.post("/api/ready")
    def api_ready() -> dict[str, Any]:
        if not bridge.ready:
            logger.info(
                "Transport connected, listening for messages in %r conversations",
                bridge.projects.group_prefix,
                extra=log_extra(component="transport", operation="ready", result="connected"),
            )
        bridge.ready = True
        return {"ready": True}

    @app.post("/api/events")
    async def api_events(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload.") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Event payload must be an object.")
        try:
            message, conversation = inbound_from_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        result = await bridge.router.route_message(message, conversation, channel_factory(conversation.id))
        logger.debug(
            "Routed event for %s: %s",
            conversation.name,
            result.status,
            extra=log_extra(
                component="api",
                operation="event",
                result=result.status,
                conversation_id=conversation.id,
                project=result.project_name,
            ),
        )
        return result.payload()
