from __future__ import annotations

import atexit
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Any, Callable

from bridge_core.errors import ProcessLockError
from bridge_core.logging import log_extra

LOGGER = logging.getLogger("chat_bridge.lock")

RECLAIM_GRACE_SECONDS = 4.0


def is_process_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by another user.
        return True
    except OSError:
        return False


def stop_process(pid: int, *, timeout_seconds: float = RECLAIM_GRACE_SECONDS) -> bool:
    if not is_process_running(pid):
        return True
    try:
        os.kill(pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError, OSError):
        return not is_process_running(pid)

    deadline = time.monotonic() + max(0.1, float(timeout_seconds))
    while time.monotonic() < deadline:
        if not is_process_running(pid):
            return True
        time.sleep(0.1)

    try:
        os.kill(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, OSError):
        return not is_process_running(pid)
    time.sleep(0.1)
    return not is_process_running(pid)


@dataclass(frozen=True)
class LockResult:
    pid: int
    reclaimed_stale_pid: int | None = None
    session_artifacts_present: bool = False


class ProcessLock:
    """Pid lock file guarding the single transport session."""

    def __init__(
        self,
        *,
        lock_file: Path,
        session_artifacts: tuple[Path, ...] = (),
        pid: int | None = None,
        process_running: Callable[[int], bool] = is_process_running,
    ) -> None:
        self.lock_file = Path(lock_file)
        self.session_artifacts = tuple(Path(path) for path in session_artifacts)
        self.pid = os.getpid() if pid is None else int(pid)
        self._process_running = process_running
        self._handlers_installed = False

    def read_pid(self) -> int | None:
        try:
            content = self.lock_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            LOGGER.warning(
                "Unable to read lock file %s: %s",
                self.lock_file,
                exc,
                extra=log_extra(component="lock", operation="read", result="error", error_class=type(exc).__name__),
            )
            return None
        try:
            return int(content, 10)
        except ValueError:
            return None

    def live_owner(self) -> int | None:
        """Pid of another running process named by the lock file, if any."""
        pid = self.read_pid()
        if pid is None or pid == self.pid or not self._process_running(pid):
            return None
        return pid

    def has_session_artifacts(self) -> bool:
        return any(path.exists() for path in self.session_artifacts)

    def acquire(self, *, install_handlers: bool = True) -> LockResult:
        existing_pid = self.read_pid()
        stale_pid: int | None = None
        if existing_pid is not None and existing_pid != self.pid:
            if self._process_running(existing_pid):
                raise ProcessLockError(
                    f"Another chat-bridge instance is running (PID {existing_pid}). "
                    f"Stop it first or run: chat-bridge reclaim",
                    pid=existing_pid,
                )
            LOGGER.info(
                "Found stale lock file for dead process %s, cleaning up...",
                existing_pid,
                extra=log_extra(component="lock", operation="acquire", result="stale"),
            )
            stale_pid = existing_pid
            self._remove_file()
        elif self.lock_file.exists():
            # Unparsable, or left by this pid.
            self._remove_file()

        artifacts_present = self.has_session_artifacts()
        if artifacts_present:
            LOGGER.warning(
                "Transport session locks detected - previous session may not have exited cleanly",
                extra=log_extra(component="lock", operation="acquire", result="session_artifacts"),
            )

        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError as exc:
            winner = self.read_pid() or 0
            raise ProcessLockError(
                f"Another chat-bridge instance is running (PID {winner}). "
                f"Stop it first or run: chat-bridge reclaim",
                pid=winner,
            ) from exc
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            fp.write(str(self.pid))
        LOGGER.debug(
            "Wrote PID %s to %s",
            self.pid,
            self.lock_file,
            extra=log_extra(component="lock", operation="acquire", result="ok"),
        )
        if install_handlers:
            self.install_handlers()
        return LockResult(pid=self.pid, reclaimed_stale_pid=stale_pid, session_artifacts_present=artifacts_present)

    def release(self) -> None:
        if self.read_pid() != self.pid:
            return
        self._remove_file()

    def force_reclaim(self, *, timeout_seconds: float = RECLAIM_GRACE_SECONDS) -> int | None:
        existing_pid = self.read_pid()
        killed: int | None = None
        if existing_pid is not None and existing_pid != self.pid and self._process_running(existing_pid):
            LOGGER.info(
                "Killing existing chat-bridge process %s...",
                existing_pid,
                extra=log_extra(component="lock", operation="reclaim"),
            )
            if not stop_process(existing_pid, timeout_seconds=timeout_seconds):
                raise ProcessLockError(f"Unable to stop chat-bridge process {existing_pid}.", pid=existing_pid)
            LOGGER.info("Killed process %s", existing_pid, extra=log_extra(component="lock", operation="reclaim", result="killed"))
            killed = existing_pid
        self._remove_file()
        return killed

    def install_handlers(self) -> None:
        if self._handlers_installed:
            return
        self._handlers_installed = True
        atexit.register(self.release)
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, self._handle_signal)
        sys.excepthook = self._handle_uncaught

    def _handle_signal(self, signum: int, _frame: Any) -> None:
        LOGGER.info(
            "Received signal %s, releasing lock",
            signum,
            extra=log_extra(component="lock", operation="signal", result=str(signum)),
        )
        self.release()
        sys.exit(0)

    def _handle_uncaught(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        LOGGER.critical(
            "Uncaught exception: %s",
            exc,
            exc_info=(exc_type, exc, tb),
            extra=log_extra(component="lock", operation="uncaught", result="fatal", error_class=exc_type.__name__),
        )
        self.release()
        os._exit(1)

    def _remove_file(self) -> None:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            LOGGER.warning(
                "Failed to remove lock file: %s",
                exc,
                extra=log_extra(component="lock", operation="remove", result="error", error_class=type(exc).__name__),
            )
            return
        LOGGER.debug("Removed lock file %s", self.lock_file, extra=log_extra(component="lock", operation="remove"))


__all__ = ["LockResult", "ProcessLock", "is_process_running", "stop_process"]
