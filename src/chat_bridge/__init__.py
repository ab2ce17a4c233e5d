"""Bridge group chats to a coding agent, one project directory per conversation."""
