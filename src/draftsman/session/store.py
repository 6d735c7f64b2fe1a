from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)

SessionObserver = Callable[["Session | None"], None]


class SessionStoreError(RuntimeError):
    """Raised when session persistence fails."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _slugify(name: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", name.strip()).strip("-.")
    return slug or "project"


@dataclass(slots=True)
class Session:
    session_id: str
    project_name: str | None
    base_dir: str
    active_files: list[str] = field(default_factory=list)
    created: str = field(default_factory=_utcnow_iso)
    last_modified: str = field(default_factory=_utcnow_iso)
    version: str = "5.0"

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "project_name": self.project_name,
            "base_dir": self.base_dir,
            "active_files": list(self.active_files),
            "metadata": {
                "created": self.created,
                "last_modified": self.last_modified,
                "version": self.version,
            },
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Session:
        metadata = payload.get("metadata") or {}
        return cls(
            session_id=str(payload["session_id"]),
            project_name=payload.get("project_name"),
            base_dir=str(payload.get("base_dir", ".")),
            active_files=[str(item) for item in payload.get("active_files") or []],
            created=str(metadata.get("created") or _utcnow_iso()),
            last_modified=str(metadata.get("last_modified") or _utcnow_iso()),
            version=str(metadata.get("version") or "5.0"),
        )


@dataclass(slots=True)
class SessionUpdate:
    operation: str
    summary: str
    success: bool = True
    project_name: str | None = None
    base_dir: str | None = None
    active_files: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ArchiveResult:
    archived: Session | None
    current: Session


class SessionStore:
    NAMESPACES = {"session", "operations", "engine"}
    SCHEMA_VERSION = 1

    def __init__(
        self,
        root: Path,
        *,
        state_dir: str = ".draftsman",
        operation_log_limit: int = 500,
        archive_after_days: int = 15,
    ) -> None:
        self.root = root.resolve()
        self.state_root = self.root / state_dir
        self.local_state_dir = self.state_root / "state"
        self.local_state_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir = self.state_root / "archives"
        self.archive_file = self.archive_dir / "sessions.json"
        self.lock_file = self.local_state_dir / ".lock"
        self.operation_log_limit = operation_log_limit
        self.archive_after_days = archive_after_days
        self._observers: list[SessionObserver] = []

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in SessionStore.NAMESPACES:
            raise SessionStoreError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.local_state_dir / f"{namespace}.json"

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
                    raise SessionStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _read_file_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file %s", path)
            return None

    @staticmethod
    def _write_file_json(path: Path, payload: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(path.suffix + ".tmp")
        temp_path.write_text(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")), encoding="utf-8"
        )
        os.replace(temp_path, path)

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

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        raw = self._read_file_json(self._local_file(namespace))
        return self._normalize_envelope(raw, default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def _write_locked(self, namespace: str, data: Any) -> None:
        current = self.get_envelope(namespace, default={})
        self._write_file_json(
            self._local_file(namespace),
            {
                "schema_version": self.SCHEMA_VERSION,
                "revision": int(current.get("revision", 1)) + 1,
                "updated_at": _utcnow_iso(),
                "data": data,
            },
        )

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            if expected_revision is not None and expected_revision != int(
                current.get("revision", 1)
            ):
                raise SessionStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_locked(namespace, data)

    def subscribe(self, observer: SessionObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def _notify(self, session: Session | None) -> None:
        for observer in list(self._observers):
            observer(session)

    def get_current_session(self) -> Session | None:
        payload = self.get_json("session", default={})
        if not isinstance(payload, dict) or not payload.get("session_id"):
            return None
        return Session.from_dict(payload)

    def _new_session(self, name: str | None) -> Session:
        base_dir = self.root / _slugify(name) if name else self.root
        return Session(
            session_id=str(uuid4()),
            project_name=name,
            base_dir=str(base_dir),
        )

    def create_new_session(self, name: str | None = None) -> Session:
        session = self._new_session(name)
        Path(session.base_dir).mkdir(parents=True, exist_ok=True)
        self.set_json("session", session.to_dict())
        logger.info("Created session %s for project %s", session.session_id, name)
        self._notify(session)
        return session

    def update_session_with_log(self, update: SessionUpdate) -> Session:
        """Apply ``update`` to the current session and append its audit entry under one lock."""
        with self._state_lock():
            payload = self.get_json("session", default={})
            if isinstance(payload, dict) and payload.get("session_id"):
                session = Session.from_dict(payload)
            else:
                session = self._new_session(update.project_name)
            project_changed = False
            if update.project_name and update.project_name != session.project_name:
                session.project_name = update.project_name
                project_changed = True
            if update.base_dir:
                session.base_dir = update.base_dir
            for path in update.active_files:
                if path not in session.active_files:
                    session.active_files.append(path)
            session.last_modified = _utcnow_iso()

            operations = self.get_json("operations", default={"entries": []})
            entries = list(operations.get("entries", [])) if isinstance(operations, dict) else []
            entries.append(
                {
                    "id": f"op-{uuid4().hex[:10]}",
                    "session_id": session.session_id,
                    "operation": update.operation,
                    "summary": update.summary,
                    "success": update.success,
                    "details": dict(update.details),
                    "at": session.last_modified,
                }
            )
            self._write_locked("session", session.to_dict())
            self._write_locked("operations", {"entries": entries[-self.operation_log_limit :]})

        if project_changed:
            self._notify(session)
        return session

    def operations(self, session_id: str | None = None) -> list[dict[str, Any]]:
        payload = self.get_json("operations", default={"entries": []})
        entries = payload.get("entries", []) if isinstance(payload, dict) else []
        if session_id is None:
            return list(entries)
        return [entry for entry in entries if entry.get("session_id") == session_id]

    def _append_archive(self, session: Session, reason: str) -> None:
        archived = self._read_file_json(self.archive_file)
        records = archived if isinstance(archived, list) else []
        records.append(
            {
                "archived_at": _utcnow_iso(),
                "reason": reason,
                "session": session.to_dict(),
                "operations": self.operations(session.session_id),
            }
        )
        self._write_file_json(self.archive_file, records)

    def archive_current_and_start_new(
        self,
        name: str | None = None,
        *,
        reason: str = "new_project",
    ) -> ArchiveResult:
        current = self.get_current_session()
        with self._state_lock():
            if current is not None:
                self._append_archive(current, reason)
        session = self.create_new_session(name)
        if current is not None:
            logger.info(
                "Archived session %s (%s) and started %s",
                current.session_id,
                reason,
                session.session_id,
            )
        return ArchiveResult(archived=current, current=session)

    def list_archives(self) -> list[dict[str, Any]]:
        archived = self._read_file_json(self.archive_file)
        return archived if isinstance(archived, list) else []

    def auto_archive_expired(
        self,
        max_age_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> Session | None:
        """Archive the current session when it has been inactive for too long."""
        current = self.get_current_session()
        if current is None:
            return None
        limit = self.archive_after_days if max_age_days is None else max_age_days
        reference = now or datetime.now(UTC)
        try:
            last_modified = datetime.fromisoformat(current.last_modified)
        except ValueError:
            logger.warning("Session %s has an unreadable timestamp", current.session_id)
            return None
        if reference - last_modified < timedelta(days=limit):
            return None
        with self._state_lock():
            self._append_archive(current, "expired")
            self._write_locked("session", {})
        logger.info("Archived expired session %s", current.session_id)
        self._notify(None)
        return current

    def save_engine_snapshot(
        self, snapshot: dict[str, Any], expected_revision: int | None = None
    ) -> None:
        self.set_json("engine", snapshot, expected_revision=expected_revision)

    def load_engine_snapshot(self) -> tuple[dict[str, Any] | None, int]:
        """Return the stored snapshot and the revision it was read at."""
        envelope = self.get_envelope("engine", default={})
        payload = envelope.get("data")
        revision = int(envelope.get("revision", 1))
        return (payload if isinstance(payload, dict) and payload else None), revision
