from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable

from bridge_core.errors import PersistenceFailed
from bridge_core.logging import log_extra

LOGGER = logging.getLogger("chat_bridge.store")

STATE_VERSION = 1
SESSIONS_SECTION = "sessions"
PROJECTS_SECTION = "projects"
_SECTIONS = (SESSIONS_SECTION, PROJECTS_SECTION)


def new_bridge_state() -> dict[str, Any]:
    return {"version": STATE_VERSION, SESSIONS_SECTION: {}, PROJECTS_SECTION: {}}


class BridgeStateStore:
    """Single owner of the persisted state document.

    Every mutation updates the in-memory document and rewrites the whole file
    through a temp file plus ``os.replace`` while holding the store lock, so
    writers from different conversations never interleave partial documents.
    """

    def __init__(
        self,
        *,
        state_file: Path,
        lock: Lock | None = None,
        new_state_factory: Callable[[], dict[str, Any]] = new_bridge_state,
    ) -> None:
        self.state_file = Path(state_file)
        self._lock = lock or Lock()
        self._new_state_factory = new_state_factory
        self._state: dict[str, Any] = self._new_state_factory()

    def load_raw(self, *, preserve_corrupt: bool = True) -> dict[str, Any]:
        """Read the state file as-is.

        A corrupt file is moved aside unless ``preserve_corrupt`` is false, which
        read-only callers use so a running owner keeps its file.
        """
        with self._lock:
            if not self.state_file.exists():
                return self._new_state_factory()
            try:
                loaded = json.loads(self.state_file.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                if not preserve_corrupt:
                    raise PersistenceFailed(f"State file {self.state_file} is corrupt JSON.") from exc
                preserved_state_path = self._preserve_corrupt_state_file_locked()
                raise PersistenceFailed(
                    f"State file is corrupt JSON and was moved to {preserved_state_path}."
                ) from exc
            except OSError as exc:
                raise PersistenceFailed(f"Unable to read state file {self.state_file}: {exc}") from exc
            if not isinstance(loaded, dict):
                if not preserve_corrupt:
                    raise PersistenceFailed(f"State file {self.state_file} must contain a JSON object.")
                preserved_state_path = self._preserve_corrupt_state_file_locked()
                raise PersistenceFailed(
                    "State file must contain a JSON object and was moved to "
                    f"{preserved_state_path}."
                )
        return loaded

    def load(self) -> dict[str, Any]:
        try:
            loaded = self.load_raw()
        except PersistenceFailed as exc:
            LOGGER.warning(
                "Failed to load bridge state, starting fresh: %s",
                exc,
                extra=log_extra(component="store", operation="load", result="reset", error_class="PersistenceFailed"),
            )
            loaded = self._new_state_factory()
        normalized = _normalize_state(loaded)
        with self._lock:
            self._state = normalized
        LOGGER.info(
            "Loaded %s session(s) and %s project claim(s) from %s",
            len(normalized[SESSIONS_SECTION]),
            len(normalized[PROJECTS_SECTION]),
            self.state_file,
            extra=log_extra(component="store", operation="load", result="ok"),
        )
        return copy.deepcopy(normalized)

    def get(self, section: str, key: str) -> Any | None:
        with self._lock:
            value = self._section_locked(section).get(key)
            return copy.deepcopy(value)

    def snapshot(self, section: str) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._section_locked(section))

    def set(self, section: str, key: str, value: Any) -> None:
        with self._lock:
            self._section_locked(section)[key] = copy.deepcopy(value)
            self._write_locked(self._state)

    def set_if_absent(self, section: str, key: str, value: Any) -> tuple[Any, bool]:
        """Store ``value`` unless ``key`` exists; return the winning value and whether it was stored."""
        with self._lock:
            entries = self._section_locked(section)
            if key in entries:
                return copy.deepcopy(entries[key]), False
            entries[key] = copy.deepcopy(value)
            self._write_locked(self._state)
            return copy.deepcopy(value), True

    def delete(self, section: str, key: str) -> bool:
        with self._lock:
            entries = self._section_locked(section)
            if key not in entries:
                return False
            del entries[key]
            self._write_locked(self._state)
            return True

    def _section_locked(self, section: str) -> dict[str, Any]:
        if section not in _SECTIONS:
            raise KeyError(f"Unknown state section: {section}")
        entries = self._state.get(section)
        if not isinstance(entries, dict):
            entries = {}
            self._state[section] = entries
        return entries

    def _write_locked(self, state: dict[str, Any]) -> None:
        tmp_name = ""
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f"{self.state_file.name}.",
                suffix=".tmp",
                dir=str(self.state_file.parent),
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                json.dump(state, fp, indent=2)
            os.replace(tmp_name, self.state_file)
        except OSError as exc:
            if tmp_name:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            raise PersistenceFailed(f"Failed to write state file {self.state_file}: {exc}") from exc

    def _preserve_corrupt_state_file_locked(self) -> Path:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        base_name = f"{self.state_file.name}.corrupt-{timestamp}"
        preserved_path = self.state_file.with_name(base_name)
        suffix = 1
        while preserved_path.exists():
            preserved_path = self.state_file.with_name(f"{base_name}.{suffix}")
            suffix += 1
        try:
            self.state_file.replace(preserved_path)
        except OSError as exc:
            raise PersistenceFailed(
                f"Failed to preserve corrupt state file {self.state_file}: {exc}"
            ) from exc
        return preserved_path


def _normalize_state(loaded: dict[str, Any]) -> dict[str, Any]:
    normalized = new_bridge_state()
    for section in _SECTIONS:
        entries = loaded.get(section)
        if isinstance(entries, dict):
            normalized[section] = {str(key): value for key, value in entries.items()}
    return normalized
