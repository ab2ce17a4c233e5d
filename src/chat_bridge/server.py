from __future__ import annotations

import contextlib
import json
import logging
import shutil
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import click
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from bridge_core import logging as core_logging
from bridge_core.config import BridgeConfig, load_bridge_config, load_bridge_config_dict
from bridge_core.errors import (
    ConfigError,
    ProcessLockError,
    TypedBridgeError,
    typed_error_metadata,
    typed_error_payload,
)
from bridge_core.logging import LOG_LEVEL_CHOICES, log_extra, normalize_log_level
from bridge_core.paths import BridgePaths, resolve_bridge_paths
from bridge_core.shared import default_config_file, repo_root
from chat_bridge.api.routes import register_bridge_routes
from chat_bridge.integrations.agent_backend import AgentBackend, ClaudeAgentBackend
from chat_bridge.integrations.transport import RelayClient, RelayResponseChannel, ResponseChannel
from chat_bridge.runtime.process_lock import ProcessLock
from chat_bridge.runtime.queues import Job, QueueRegistry
from chat_bridge.services.history_service import HistoryService
from chat_bridge.services.invocation_service import InvocationPipeline, InvocationRequest
from chat_bridge.services.project_service import ProjectService
from chat_bridge.services.router_service import ConversationRouter
from chat_bridge.store.project_registry import ProjectRegistry
from chat_bridge.store.session_store import SessionStore
from chat_bridge.store.state_store import PROJECTS_SECTION, SESSIONS_SECTION, BridgeStateStore

LOGGER = logging.getLogger("chat_bridge")
LOGGER.addHandler(logging.NullHandler())


def _default_config_file() -> Path:
    return default_config_file(repo_root(Path(__file__)))


@dataclass
class BridgeRuntime:
    config: BridgeConfig
    paths: BridgePaths
    state_store: BridgeStateStore
    sessions: SessionStore
    registry: ProjectRegistry
    projects: ProjectService
    history: HistoryService
    pipeline: InvocationPipeline
    queues: QueueRegistry
    router: ConversationRouter
    ready: bool = False


def build_bridge_runtime(
    config: BridgeConfig,
    paths: BridgePaths,
    *,
    backend: AgentBackend,
) -> BridgeRuntime:
    projects = ProjectService(projects_root=paths.projects_root, group_prefix=config.bridge.group_prefix)
    state_store = BridgeStateStore(state_file=paths.state_file)
    projects.ensure_projects_root()
    state_store.load()
    sessions = SessionStore(state_store=state_store)
    registry = ProjectRegistry(state_store=state_store)
    history = HistoryService()
    pipeline = InvocationPipeline(
        backend=backend,
        sessions=sessions,
        history=history,
        allowed_tools=config.agent.allowed_tools,
        permission_mode=config.agent.permission_mode,
        model=config.agent.model,
    )

    async def handle_job(job: Job) -> str:
        return await pipeline.run(
            InvocationRequest(
                conversation_id=job.conversation_id,
                conversation_name=job.conversation_name,
                project_path=job.project_path,
                text=job.text,
                sender_id=job.sender_id,
                sender_name=job.sender_name,
                message_id=job.message_id,
            )
        )

    queues = QueueRegistry(handler=handle_job)
    router = ConversationRouter(
        projects=projects,
        registry=registry,
        queues=queues,
        max_queue_size=config.bridge.max_queue_size,
        groups_only=config.bridge.groups_only,
    )
    return BridgeRuntime(
        config=config,
        paths=paths,
        state_store=state_store,
        sessions=sessions,
        registry=registry,
        projects=projects,
        history=history,
        pipeline=pipeline,
        queues=queues,
        router=router,
    )


def create_app(runtime: BridgeRuntime, *, channel_factory: Callable[[str], ResponseChannel]) -> FastAPI:
    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await runtime.queues.close()

    app = FastAPI(lifespan=lifespan)
    app.state.bridge = runtime

    @app.exception_handler(TypedBridgeError)
    async def _handle_typed_bridge_error(request: Request, exc: TypedBridgeError) -> JSONResponse:
        status, payload = _core_error_payload(exc)
        metadata = typed_error_metadata(exc) or {}
        LOGGER.error(
            "%s %s failed: %s",
            request.method,
            request.url.path,
            exc,
            extra=log_extra(
                component="api",
                operation=request.url.path,
                result=metadata.get("failure_class", "error"),
                error_class=type(exc).__name__,
            ),
        )
        return JSONResponse(status_code=status, content=payload)

    @app.exception_handler(HTTPException)
    async def _handle_http_exception(_request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=int(exc.status_code or 500),
            content={"error_code": _http_error_code(int(exc.status_code or 500)), "detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    register_bridge_routes(app, bridge=runtime, logger=LOGGER, channel_factory=channel_factory)
    return app


def _core_error_payload(exc: BaseException) -> tuple[int, dict[str, Any]]:
    typed_payload = typed_error_payload(exc)
    if typed_payload is not None:
        status_by_code = {
            "CONFIG_ERROR": 400,
            "ADMISSION_REJECTED": 409,
            "INVOCATION_FAILED": 502,
            "PERSISTENCE_FAILED": 500,
            "PROCESS_LOCK_HELD": 409,
        }
        status = status_by_code.get(str(typed_payload.get("error_code") or ""), 500)
        return status, typed_payload
    return 500, {"error_code": "INTERNAL_ERROR", "detail": str(exc)}


def _http_error_code(status_code: int) -> str:
    status = int(status_code or 500)
    if status == 400:
        return "BAD_REQUEST"
    if status == 404:
        return "NOT_FOUND"
    if status == 409:
        return "CONFLICT"
    if status == 422:
        return "UNPROCESSABLE_ENTITY"
    if status in {500, 502, 503, 504}:
        return "UPSTREAM_ERROR"
    return f"HTTP_{status}"


def _configure_bridge_logging(config: BridgeConfig, cli_level: str | None) -> str:
    level = normalize_log_level(cli_level) if str(cli_level or "").strip() else config.logging.level
    core_logging.configure_structured_logger(LOGGER, level=level)
    core_logging.configure_domain_log_levels(domains=config.logging.domains, logger_prefix="chat_bridge")
    return level


def _uvicorn_log_level(bridge_level: str) -> str:
    normalized = normalize_log_level(bridge_level)
    if normalized == "debug":
        return "info"
    return normalized


def _load_config(config_file: Path) -> BridgeConfig:
    try:
        if Path(config_file).is_file():
            return load_bridge_config(config_file)
        return load_bridge_config_dict({})
    except ConfigError as exc:
        click.echo(
            json.dumps(
                {"event": "chat_bridge_config_load_error", "config_path": str(config_file), "error": str(exc)},
                sort_keys=True,
            ),
            err=True,
        )
        raise click.ClickException(str(exc)) from exc


def _resolve_paths(config: BridgeConfig, projects_root: Path | None) -> BridgePaths:
    values = dict(config.paths.values)
    environ = None
    if projects_root is not None:
        environ = {"PROJECTS_ROOT": str(projects_root)}
    return resolve_bridge_paths(values, environ=environ)


_config_option = click.option(
    "--config-file",
    default=str(_default_config_file()),
    show_default=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Bridge config file (TOML). Defaults apply when it does not exist.",
)
_projects_root_option = click.option(
    "--projects-root",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Root directory for conversation projects (overrides PROJECTS_ROOT and config).",
)


@click.group(help="Bridge chat conversations to a coding agent, one project per conversation.")
def cli() -> None:
    pass


@cli.command("run", help="Run the bridge daemon.")
@_config_option
@_projects_root_option
@click.option("--host", default=None, help="Bind host for the relay/status API.")
@click.option("--port", default=None, type=int, help="Bind port for the relay/status API.")
@click.option("--relay-url", default=None, help="Base URL of the transport relay for outbound messages.")
@click.option(
    "--log-level",
    default=None,
    show_default="config logging.level or info",
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
)
def run_command(
    config_file: Path,
    projects_root: Path | None,
    host: str | None,
    port: int | None,
    relay_url: str | None,
    log_level: str | None,
) -> None:
    config = _load_config(config_file)
    level = _configure_bridge_logging(config, log_level)
    paths = _resolve_paths(config, projects_root)
    resolved_relay_url = str(relay_url or config.server.relay_url or "").strip().rstrip("/")
    if not resolved_relay_url:
        raise click.ClickException("A transport relay URL is required (--relay-url or server.relay_url).")
    resolved_host = host or config.server.host
    resolved_port = int(port or config.server.port)

    lock = ProcessLock(lock_file=paths.lock_file, session_artifacts=paths.session_artifacts)
    try:
        lock.acquire()
    except ProcessLockError as exc:
        LOGGER.error(
            "%s",
            exc,
            extra=log_extra(component="startup", operation="acquire_lock", result="fatal", error_class="ProcessLockError"),
        )
        raise click.ClickException(str(exc)) from exc

    LOGGER.info(
        "Starting chat-bridge projects_root=%s group_prefix=%r max_queue_size=%s log_level=%s",
        paths.projects_root,
        config.bridge.group_prefix,
        config.bridge.max_queue_size,
        level,
        extra=log_extra(component="startup", operation="bridge_start", result="started"),
    )
    runtime = build_bridge_runtime(config, paths, backend=ClaudeAgentBackend())
    relay = RelayClient(base_url=resolved_relay_url)

    def channel_factory(conversation_id: str) -> ResponseChannel:
        return RelayResponseChannel(client=relay, conversation_id=conversation_id)

    app = create_app(runtime, channel_factory=channel_factory)
    try:
        uvicorn.run(app, host=resolved_host, port=resolved_port, log_level=_uvicorn_log_level(level))
    finally:
        lock.release()


@cli.command("reclaim", help="Stop a running bridge instance and remove its lock file.")
@_config_option
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
def reclaim_command(config_file: Path, yes: bool) -> None:
    config = _load_config(config_file)
    _configure_bridge_logging(config, None)
    paths = _resolve_paths(config, None)
    lock = ProcessLock(lock_file=paths.lock_file)
    existing_pid = lock.read_pid()
    if existing_pid is not None and not yes:
        click.confirm(f"Stop chat-bridge process {existing_pid}?", abort=True)
    try:
        killed = lock.force_reclaim()
    except ProcessLockError as exc:
        raise click.ClickException(str(exc)) from exc
    if killed is None:
        click.echo(f"No running instance; removed {paths.lock_file} if present.")
    else:
        click.echo(f"Stopped process {killed} and removed {paths.lock_file}.")


@cli.command("status", help="Print persisted sessions and project claims as JSON.")
@_config_option
@_projects_root_option
def status_command(config_file: Path, projects_root: Path | None) -> None:
    config = _load_config(config_file)
    paths = _resolve_paths(config, projects_root)
    store = BridgeStateStore(state_file=paths.state_file)
    try:
        state = store.load_raw(preserve_corrupt=False)
    except TypedBridgeError as exc:
        raise click.ClickException(str(exc)) from exc
    lock = ProcessLock(lock_file=paths.lock_file)
    click.echo(
        json.dumps(
            {
                "state_file": str(paths.state_file),
                "lock_pid": lock.read_pid(),
                SESSIONS_SECTION: state.get(SESSIONS_SECTION) or {},
                PROJECTS_SECTION: state.get(PROJECTS_SECTION) or {},
            },
            indent=2,
            sort_keys=True,
        )
    )


@cli.command("reset-state", help="Delete project directories, the state file and the lock file.")
@_config_option
@_projects_root_option
@click.option("--force", is_flag=True, default=False, help="Do not ask for confirmation.")
def reset_state_command(config_file: Path, projects_root: Path | None, force: bool) -> None:
    config = _load_config(config_file)
    paths = _resolve_paths(config, projects_root)
    lock = ProcessLock(lock_file=paths.lock_file)
    owner = lock.live_owner()
    if owner is not None:
        raise click.ClickException(f"chat-bridge is running (PID {owner}); stop it before resetting state.")

    projects = ProjectService(projects_root=paths.projects_root, group_prefix=config.bridge.group_prefix)
    if not paths.projects_root.exists():
        click.echo("Nothing to reset - projects directory does not exist.")
        return
    project_dirs = projects.project_directories()
    has_state_file = paths.state_file.exists()
    has_lock_file = paths.lock_file.exists()
    if not project_dirs and not has_state_file and not has_lock_file:
        click.echo("Nothing to reset - no projects or sessions found.")
        return

    click.echo("\nThe following will be deleted:\n")
    for project_dir in project_dirs:
        click.echo(f"  [dir]  {project_dir}/")
    if has_state_file:
        click.echo(f"  [file] {paths.state_file}")
    if has_lock_file:
        click.echo(f"  [file] {paths.lock_file}")
    click.echo()

    if not force and not click.confirm("Proceed with deletion?", default=False):
        click.echo("Aborted.")
        return

    for project_dir in project_dirs:
        shutil.rmtree(project_dir, ignore_errors=True)
    if has_state_file:
        paths.state_file.unlink(missing_ok=True)
    if has_lock_file:
        paths.lock_file.unlink(missing_ok=True)
    click.echo("State reset complete.")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
