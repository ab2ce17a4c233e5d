from chat_bridge.store.project_registry import ClaimResult, ProjectRegistry
from chat_bridge.store.session_store import SessionRecord, SessionStore
from chat_bridge.store.state_store import BridgeStateStore, new_bridge_state

__all__ = [
    "BridgeStateStore",
    "ClaimResult",
    "ProjectRegistry",
    "SessionRecord",
    "SessionStore",
    "new_bridge_state",
]
