"""Durable session store: one JSON-lines file per session."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote, unquote

from pydantic import ValidationError

from termloop.errors import PersistenceError
from termloop.messages import Message

SESSION_FILE_SUFFIX = ".jsonl"
DEFAULT_TITLE = "New Session"
HEADER_KIND = "session"


@dataclass
class StoredSession:
    """Session identity plus its persisted full log."""

    id: str
    title: str = DEFAULT_TITLE
    bound_terminal_id: str = ""
    messages: list[Message] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def header(self) -> dict[str, Any]:
        return {
            "kind": HEADER_KIND,
            "id": self.id,
            "title": self.title,
            "bound_terminal_id": self.bound_terminal_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class SessionSummary:
    id: str
    title: str
    message_count: int
    updated_at: float


class SessionStore(Protocol):
    def load_session(self, session_id: str) -> StoredSession | None: ...

    def save_session(self, session: StoredSession) -> None: ...


class SessionFile:
    """Helper for one session file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def read(self) -> StoredSession | None:
        with self._lock:
            return self._read_locked()

    def _read_locked(self) -> StoredSession | None:
        if not self.path.exists():
            return None
        header: dict[str, Any] | None = None
        messages: list[Message] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(payload, dict):
                    continue
                if header is None and payload.get("kind") == HEADER_KIND:
                    header = payload
                    continue
                message = self.message_from_payload(payload)
                if message is not None:
                    messages.append(message)
        if header is None:
            return None
        return StoredSession(
            id=str(header.get("id", "")),
            title=str(header.get("title") or DEFAULT_TITLE),
            bound_terminal_id=str(header.get("bound_terminal_id") or ""),
            messages=messages,
            created_at=float(header.get("created_at", 0.0)),
            updated_at=float(header.get("updated_at", 0.0)),
        )

    @staticmethod
    def message_from_payload(payload: dict[str, Any]) -> Message | None:
        try:
            return Message.model_validate(payload)
        except ValidationError:
            return None

    def write(self, session: StoredSession) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp = self.path.with_suffix(f"{SESSION_FILE_SUFFIX}.tmp")
            with temp.open("w", encoding="utf-8") as handle:
                handle.write(json.dumps(session.header(), ensure_ascii=False) + "\n")
                for message in session.messages:
                    handle.write(json.dumps(message.model_dump(mode="json"), ensure_ascii=False) + "\n")
            temp.replace(self.path)

    def archive(self) -> Path | None:
        with self._lock:
            if not self.path.exists():
                return None
            stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
            archive_file = self.path.with_suffix(f"{SESSION_FILE_SUFFIX}.{stamp}.bak")
            self.path.replace(archive_file)
            return archive_file

    def delete(self) -> bool:
        with self._lock:
            if not self.path.exists():
                return False
            self.path.unlink()
            return True


class FileSessionStore:
    """Session files under ``<home>/sessions``."""

    def __init__(self, home: Path) -> None:
        self.root = (home / "sessions").resolve()
        self._files: dict[str, SessionFile] = {}
        self._lock = threading.Lock()

    def load_session(self, session_id: str) -> StoredSession | None:
        try:
            return self._session_file(session_id).read()
        except OSError as exc:
            raise PersistenceError(f"cannot read session {session_id}: {exc}") from exc

    def save_session(self, session: StoredSession) -> None:
        session.updated_at = time.time()
        try:
            self._session_file(session.id).write(session)
        except OSError as exc:
            raise PersistenceError(f"cannot write session {session.id}: {exc}") from exc

    def list_sessions(self) -> list[SessionSummary]:
        if not self.root.is_dir():
            return []
        summaries: list[SessionSummary] = []
        for path in self.root.glob(f"*{SESSION_FILE_SUFFIX}"):
            session_id = unquote(path.name.removesuffix(SESSION_FILE_SUFFIX))
            session = self.load_session(session_id)
            if session is None:
                continue
            summaries.append(
                SessionSummary(
                    id=session.id,
                    title=session.title,
                    message_count=len(session.messages),
                    updated_at=session.updated_at,
                )
            )
        return sorted(summaries, key=lambda item: item.updated_at, reverse=True)

    def delete_session(self, session_id: str, *, archive: bool = False) -> bool:
        session_file = self._session_file(session_id)
        with self._lock:
            self._files.pop(session_id, None)
        try:
            if archive:
                return session_file.archive() is not None
            return session_file.delete()
        except OSError as exc:
            raise PersistenceError(f"cannot delete session {session_id}: {exc}") from exc

    def rename_session(self, session_id: str, title: str) -> bool:
        session = self.load_session(session_id)
        if session is None:
            return False
        session.title = title.strip() or DEFAULT_TITLE
        self.save_session(session)
        return True

    def export_session(self, session_id: str) -> dict[str, Any] | None:
        session = self.load_session(session_id)
        if session is None:
            return None
        return {
            **session.header(),
            "messages": [message.model_dump(mode="json") for message in session.messages],
        }

    def _session_file(self, session_id: str) -> SessionFile:
        with self._lock:
            if session_id not in self._files:
                file_name = f"{quote(session_id, safe='')}{SESSION_FILE_SUFFIX}"
                self._files[session_id] = SessionFile(self.root / file_name)
            return self._files[session_id]
