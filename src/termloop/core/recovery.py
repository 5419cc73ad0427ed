"""Checkpointing the full log and truncating it on rollback."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from termloop.errors import PersistenceError
from termloop.messages import Message, to_persisted
from termloop.store import SessionStore, StoredSession


@dataclass(frozen=True)
class RollbackResult:
    ok: bool
    removed_count: int = 0
    messages: tuple[Message, ...] = ()


class SessionRecovery:
    """Reconciles a run's full log into the durable store."""

    def __init__(self, store: SessionStore, *, keep_debug: bool = False) -> None:
        self._store = store
        self._keep_debug = keep_debug

    def load(self, session_id: str) -> StoredSession:
        """Stored session or a fresh one; read failures propagate before any run starts."""
        session = self._store.load_session(session_id)
        if session is None:
            return StoredSession(id=session_id)
        return session

    def persist(
        self,
        session_id: str,
        bound_terminal_id: str,
        full_log: Sequence[Message],
        *,
        aborted: Message | None = None,
    ) -> bool:
        """Save ``full_log`` (plus a partial reply, if any). Failures are logged, never raised."""
        messages = to_persisted(full_log, keep_debug=self._keep_debug)
        if aborted is not None and all(message.id != aborted.id for message in messages):
            messages.append(aborted)

        try:
            session = self._store.load_session(session_id) or StoredSession(id=session_id)
            if len(messages) < len(session.messages):
                logger.warning(
                    "recovery.persist.refused session={} stored={} new={}",
                    session_id,
                    len(session.messages),
                    len(messages),
                )
                return False
            session.messages = messages
            if bound_terminal_id:
                session.bound_terminal_id = bound_terminal_id
            self._store.save_session(session)
        except PersistenceError as exc:
            logger.warning("recovery.persist.failed session={} error={}", session_id, exc)
            return False

        logger.info("recovery.persist session={} messages={} aborted={}", session_id, len(messages), aborted is not None)
        return True

    def rollback_to_message(self, session_id: str, message_id: str) -> RollbackResult:
        """Drop ``message_id`` and everything after it from the stored log."""
        session = self._store.load_session(session_id)
        if session is None:
            return RollbackResult(ok=False)
        index = next((i for i, message in enumerate(session.messages) if message.id == message_id), None)
        if index is None:
            logger.warning("recovery.rollback.missing session={} message={}", session_id, message_id)
            return RollbackResult(ok=False)

        removed = len(session.messages) - index
        session.messages = session.messages[:index]
        self._store.save_session(session)
        logger.info("recovery.rollback session={} message={} removed={}", session_id, message_id, removed)
        return RollbackResult(ok=True, removed_count=removed, messages=tuple(session.messages))
