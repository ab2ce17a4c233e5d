from __future__ import annotations

from .config import (
    BridgeConfig,
    DEFAULT_GROUP_PREFIX,
    DEFAULT_MAX_QUEUE_SIZE,
    load_bridge_config,
    load_bridge_config_dict,
)
from .errors import (
    AdmissionRejected,
    ConfigError,
    InvocationFailed,
    PersistenceFailed,
    ProcessLockError,
    TypedBridgeError,
)
from .paths import BridgePaths, default_projects_root, resolve_bridge_paths

__all__ = [
    "AdmissionRejected",
    "BridgeConfig",
    "BridgePaths",
    "ConfigError",
    "DEFAULT_GROUP_PREFIX",
    "DEFAULT_MAX_QUEUE_SIZE",
    "InvocationFailed",
    "PersistenceFailed",
    "ProcessLockError",
    "TypedBridgeError",
    "default_projects_root",
    "load_bridge_config",
    "load_bridge_config_dict",
    "resolve_bridge_paths",
]
