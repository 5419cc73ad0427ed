"""Single-flight run management per session."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from termloop.cancellation import CancellationToken
from termloop.core.engine import AgentEngine, RunResult
from termloop.core.recovery import RollbackResult
from termloop.core.state import RunContext, StartMode
from termloop.errors import TermloopError, extract_error_details
from termloop.events import DoneEvent, ErrorEvent, EventSink, RollbackEvent
from termloop.store import FileSessionStore


@dataclass
class SessionHandle:
    """The active run of one session."""

    session_id: str
    run_id: str
    token: CancellationToken
    done: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionDispatcher:
    """Starts runs, making sure a session never has two of them at once."""

    def __init__(self, engine: AgentEngine, *, sink: EventSink, store: FileSessionStore) -> None:
        self._engine = engine
        self._sink = sink
        self._store = store
        self._active: dict[str, SessionHandle] = {}
        self._locks: dict[str, _SessionLock] = {}

    def is_running(self, session_id: str) -> bool:
        return session_id in self._active

    async def dispatch(
        self,
        session_id: str,
        text: str,
        terminal_id: str | None = None,
        mode: StartMode | str = StartMode.NORMAL,
    ) -> RunResult:
        """Start a run, stopping and awaiting any run already active on the session."""
        entry = self._locks.setdefault(session_id, _SessionLock())
        entry.users += 1
        try:
            async with entry.lock:
                if self.is_running(session_id):
                    logger.info("dispatcher.preempt session={}", session_id)
                    await self.stop(session_id, wait=True, reason="superseded by a new request")
                context = RunContext(session_id=session_id, bound_terminal_id=terminal_id or "")
                handle = SessionHandle(session_id=session_id, run_id=context.run_id, token=CancellationToken())
                self._active[session_id] = handle
        finally:
            entry.users -= 1
            # nobody holds or awaits the lock once the count is zero
            if not entry.users:
                del self._locks[session_id]

        logger.info("dispatcher.run.start session={} run={}", session_id, handle.run_id)
        try:
            return await self._engine.run(context, text, handle.token, mode)
        except TermloopError as exc:
            logger.error("dispatcher.run.rejected session={} error={}", session_id, exc)
            self._sink.send_event(session_id, ErrorEvent(content=str(exc), details=extract_error_details(exc)))
            self._sink.send_event(session_id, DoneEvent())
            raise
        finally:
            if self._active.get(session_id) is handle:
                del self._active[session_id]
            handle.done.set()
            logger.info("dispatcher.run.end session={} run={}", session_id, handle.run_id)

    async def stop(self, session_id: str, wait: bool = False, *, reason: str = "stopped by user") -> bool:
        handle = self._active.get(session_id)
        if handle is None:
            return False
        handle.token.cancel(reason)
        if wait:
            await handle.done.wait()
        return True

    async def wait_for_completion(self, session_id: str) -> None:
        handle = self._active.get(session_id)
        if handle is not None:
            await handle.done.wait()

    async def rollback_session_to_message(self, session_id: str, message_id: str) -> RollbackResult:
        await self.stop(session_id, wait=True, reason="rollback")
        result = self._engine.recovery.rollback_to_message(session_id, message_id)
        if result.ok:
            self._sink.send_event(session_id, RollbackEvent(message_id=message_id))
        return result

    async def delete_session(self, session_id: str, *, archive: bool = False) -> bool:
        await self.stop(session_id, wait=True, reason="session deleted")
        return self._store.delete_session(session_id, archive=archive)

    def rename_session(self, session_id: str, title: str) -> bool:
        return self._store.rename_session(session_id, title)
