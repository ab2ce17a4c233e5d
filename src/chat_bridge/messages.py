"""Outgoing text conventions.

Everything the bridge sends starts with ``BOT_PREFIX`` so the transport (and the
router) can tell the bridge's own messages apart from people's messages.
"""

from __future__ import annotations

BOT_PREFIX = "🤖🤖🤖: "

MEDIA_UNSUPPORTED_NOTICE = "📎 I can't process media yet. Please describe what you need in text."


def format_bot_response(message: str) -> str:
    return f"{BOT_PREFIX}{message}"


def is_bot_message(text: str) -> bool:
    return str(text or "").startswith(BOT_PREFIX)


def project_conflict_notice(project_name: str) -> str:
    return (
        f'⚠️ Another group already uses the project name "{project_name}". '
        "Please use the original group or rename/delete this one."
    )


def invalid_project_name_notice(conversation_name: str) -> str:
    return (
        f'⚠️ The group name "{conversation_name}" does not contain a usable project name. '
        "Please rename the group."
    )


def queue_full_notice(max_queue_size: int) -> str:
    return f"⚠️ Queue full ({max_queue_size} messages). Please wait for current tasks to complete."


def error_notice(detail: str) -> str:
    return f"❌ Error: {detail}"
