"""chat-bridge service modules."""

__all__ = [
    "history_service",
    "invocation_service",
    "project_service",
    "router_service",
]
