from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskpilot.errors import PersistenceError

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class StateStore(ABC):
    """Opaque persistence used by the engine for its task state and session archive."""

    @abstractmethod
    def read_state(self) -> dict[str, Any] | None:
        """Return the persisted task state, or None when nothing is stored."""

    @abstractmethod
    def write_state(self, state: dict[str, Any]) -> None:
        """Replace the persisted task state."""

    @abstractmethod
    def read_sessions(self) -> dict[str, Any]:
        """Return the session id to archived state mapping."""

    @abstractmethod
    def write_sessions(self, sessions: dict[str, Any]) -> None:
        """Merge sessions into the stored archive, keyed by session id."""

    @abstractmethod
    def append_archive(self, record: dict[str, Any]) -> None:
        """Append one archived task record to the long-term log."""


class MemoryStateStore(StateStore):
    def __init__(self) -> None:
        self.state: dict[str, Any] | None = None
        self.sessions: dict[str, Any] = {}
        self.archive: list[dict[str, Any]] = []
        self.writes = 0

    def read_state(self) -> dict[str, Any] | None:
        return json.loads(json.dumps(self.state)) if self.state is not None else None

    def write_state(self, state: dict[str, Any]) -> None:
        self.state = json.loads(json.dumps(state))
        self.writes += 1

    def read_sessions(self) -> dict[str, Any]:
        return json.loads(json.dumps(self.sessions))

    def write_sessions(self, sessions: dict[str, Any]) -> None:
        self.sessions.update(json.loads(json.dumps(sessions)))

    def append_archive(self, record: dict[str, Any]) -> None:
        self.archive.append(json.loads(json.dumps(record)))


class JsonStateStore(StateStore):
    NAMESPACES = {"state", "sessions"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        self.archive_file = self.state_dir / "archive.jsonl"

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in JsonStateStore.NAMESPACES:
            raise PersistenceError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise PersistenceError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", path, exc)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        temp_path = path.with_suffix(".json.tmp")
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        try:
            temp_path.write_text(serialized, encoding="utf-8")
            os.replace(temp_path, path)
        except OSError as exc:
            raise PersistenceError(f"Failed to write {path}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or _utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": _utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        return self._normalize_envelope(self._read_raw_json(namespace), default)

    def get_json(self, namespace: str, default: Any = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise PersistenceError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": _utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any = None,
    ) -> Any:
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default)
            updated = updater(current.get("data", default))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except PersistenceError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise PersistenceError(str(last_error) if last_error else "State update failed.")

    def read_state(self) -> dict[str, Any] | None:
        payload = self.get_json("state")
        return payload if isinstance(payload, dict) else None

    def write_state(self, state: dict[str, Any]) -> None:
        self.set_json("state", state)

    def read_sessions(self) -> dict[str, Any]:
        payload = self.get_json("sessions", default={})
        return payload if isinstance(payload, dict) else {}

    def write_sessions(self, sessions: dict[str, Any]) -> None:
        # Another process may have archived sessions since this one read them.
        self.update_json(
            "sessions",
            lambda current: {**(current if isinstance(current, dict) else {}), **sessions},
            default={},
        )

    def append_archive(self, record: dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
        try:
            with self.archive_file.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            raise PersistenceError(f"Failed to append archive record: {exc}") from exc
