from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    import tomli as tomllib

from bridge_core.errors import ConfigError
from bridge_core.logging import LOG_LEVEL_CHOICES, normalize_log_level


_SECTION_KEYS = ("paths", "bridge", "agent", "logging", "server")
DEFAULT_GROUP_PREFIX = "Claude:"
DEFAULT_MAX_QUEUE_SIZE = 1
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765
DEFAULT_ALLOWED_TOOLS = (
    "Read",
    "Write",
    "Edit",
    "Bash",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
)
DEFAULT_PERMISSION_MODE = "acceptEdits"
PERMISSION_MODE_CHOICES = ("default", "acceptEdits", "plan", "bypassPermissions")


def _ensure_dict(value: object, *, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a table/object.")
    return dict(value)


def _ensure_optional_str(value: object, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string.")
    return value


def _ensure_positive_int(value: object, *, label: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be a positive integer.")
    if value < 1:
        raise ConfigError(f"{label} must be a positive integer.")
    return value


@dataclass(frozen=True)
class PathsConfig:
    values: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BridgeSettings:
    group_prefix: str = DEFAULT_GROUP_PREFIX
    max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE
    groups_only: bool = True


@dataclass(frozen=True)
class AgentConfig:
    allowed_tools: tuple[str, ...] = DEFAULT_ALLOWED_TOOLS
    permission_mode: str = DEFAULT_PERMISSION_MODE
    model: str | None = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "info"
    domains: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    relay_url: str = ""


@dataclass(frozen=True)
class BridgeConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    bridge: BridgeSettings = field(default_factory=BridgeSettings)
    agent: AgentConfig = field(default_factory=AgentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, Any] | dict[str, Any],
        *,
        environ: Mapping[str, str] | None = None,
    ) -> "BridgeConfig":
        if not isinstance(payload, Mapping):
            raise ConfigError("Config payload root must be a table/object.")

        raw = dict(payload)
        env = os.environ if environ is None else environ
        paths = PathsConfig(values=_ensure_dict(raw.get("paths"), label="section 'paths'"))
        extras = {k: v for k, v in raw.items() if k not in _SECTION_KEYS}
        return cls(
            paths=paths,
            bridge=_parse_bridge(raw),
            agent=_parse_agent(raw),
            logging=_parse_logging(raw, env),
            server=_parse_server(raw),
            extras=extras,
        )

    @classmethod
    def from_toml_path(
        cls,
        path: str | Path,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> "BridgeConfig":
        config_path = Path(path)
        try:
            raw = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
        try:
            parsed = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConfigError("Config payload root must be a table/object.")
        return cls.from_dict(parsed, environ=environ)


def _parse_bridge(raw_root: dict[str, Any]) -> BridgeSettings:
    bridge_raw = _ensure_dict(raw_root.get("bridge"), label="section 'bridge'")
    prefix = _ensure_optional_str(bridge_raw.get("group_prefix"), label="bridge.group_prefix")
    if prefix is not None and not prefix.strip():
        raise ConfigError("bridge.group_prefix must not be empty.")
    groups_only = bridge_raw.get("groups_only", True)
    if not isinstance(groups_only, bool):
        raise ConfigError("bridge.groups_only must be a boolean.")
    return BridgeSettings(
        group_prefix=prefix if prefix is not None else DEFAULT_GROUP_PREFIX,
        max_queue_size=_ensure_positive_int(
            bridge_raw.get("max_queue_size"),
            label="bridge.max_queue_size",
            default=DEFAULT_MAX_QUEUE_SIZE,
        ),
        groups_only=groups_only,
    )


def _parse_agent(raw_root: dict[str, Any]) -> AgentConfig:
    agent_raw = _ensure_dict(raw_root.get("agent"), label="section 'agent'")
    tools_raw = agent_raw.get("allowed_tools")
    if tools_raw is None:
        tools = DEFAULT_ALLOWED_TOOLS
    else:
        if not isinstance(tools_raw, list) or not all(isinstance(item, str) for item in tools_raw):
            raise ConfigError("agent.allowed_tools must be a list of strings.")
        tools = tuple(item.strip() for item in tools_raw if item.strip())
    permission_mode = _ensure_optional_str(agent_raw.get("permission_mode"), label="agent.permission_mode")
    if permission_mode is None:
        permission_mode = DEFAULT_PERMISSION_MODE
    if permission_mode not in PERMISSION_MODE_CHOICES:
        raise ConfigError(f"agent.permission_mode must be one of: {', '.join(PERMISSION_MODE_CHOICES)}.")
    model = _ensure_optional_str(agent_raw.get("model"), label="agent.model")
    return AgentConfig(allowed_tools=tools, permission_mode=permission_mode, model=model or None)


def _parse_logging(raw_root: dict[str, Any], environ: Mapping[str, str]) -> LoggingConfig:
    logging_raw = _ensure_dict(raw_root.get("logging"), label="section 'logging'")
    level_value = str(environ.get("LOG_LEVEL") or "").strip() or logging_raw.get("level")
    if level_value is not None and not isinstance(level_value, str):
        raise ConfigError(f"logging.level must be one of: {', '.join(LOG_LEVEL_CHOICES)}.")
    domains = _ensure_dict(logging_raw.get("domains"), label="section 'logging.domains'")
    return LoggingConfig(level=normalize_log_level(level_value), domains=domains)


def _parse_server(raw_root: dict[str, Any]) -> ServerConfig:
    server_raw = _ensure_dict(raw_root.get("server"), label="section 'server'")
    host = _ensure_optional_str(server_raw.get("host"), label="server.host") or DEFAULT_HOST
    port = server_raw.get("port", DEFAULT_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port <= 65535:
        raise ConfigError("server.port must be an integer between 1 and 65535.")
    relay_url = (_ensure_optional_str(server_raw.get("relay_url"), label="server.relay_url") or "").strip()
    if relay_url and not relay_url.startswith(("http://", "https://")):
        raise ConfigError("server.relay_url must be an absolute http(s) URL.")
    return ServerConfig(host=host, port=port, relay_url=relay_url.rstrip("/"))


def load_bridge_config(path: str | Path, *, environ: Mapping[str, str] | None = None) -> BridgeConfig:
    return BridgeConfig.from_toml_path(path, environ=environ)


def load_bridge_config_dict(
    payload: Mapping[str, Any] | dict[str, Any],
    *,
    environ: Mapping[str, str] | None = None,
) -> BridgeConfig:
    return BridgeConfig.from_dict(payload, environ=environ)


__all__ = [
    "AgentConfig",
    "BridgeConfig",
    "BridgeSettings",
    "DEFAULT_ALLOWED_TOOLS",
    "DEFAULT_GROUP_PREFIX",
    "DEFAULT_HOST",
    "DEFAULT_MAX_QUEUE_SIZE",
    "DEFAULT_PERMISSION_MODE",
    "DEFAULT_PORT",
    "LoggingConfig",
    "PathsConfig",
    "ServerConfig",
    "load_bridge_config",
    "load_bridge_config_dict",
]
