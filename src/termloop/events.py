"""Progress events sent to the presentation layer, and in-process sinks."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field


class AgentEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    message_id: str | None = None


class UserInputEvent(AgentEvent):
    type: Literal["user_input"] = "user_input"
    content: str
    input_kind: str = "normal"


class SayEvent(AgentEvent):
    type: Literal["say"] = "say"
    content: str


class SubToolStartedEvent(AgentEvent):
    type: Literal["sub_tool_started"] = "sub_tool_started"
    title: str
    hint: str = ""
    tool_name: str | None = None
    input: str | None = None


class SubToolDeltaEvent(AgentEvent):
    type: Literal["sub_tool_delta"] = "sub_tool_delta"
    output_delta: str


class SubToolFinishedEvent(AgentEvent):
    type: Literal["sub_tool_finished"] = "sub_tool_finished"


class ToolCallEvent(AgentEvent):
    type: Literal["tool_call"] = "tool_call"
    tool_name: str
    input: str = ""
    output: str = ""
    level: Literal["info", "warning", "error"] = "info"


class CommandStartedEvent(AgentEvent):
    type: Literal["command_started"] = "command_started"
    command: str
    tab_name: str
    is_nowait: bool = False


class CommandFinishedEvent(AgentEvent):
    type: Literal["command_finished"] = "command_finished"
    command: str
    tab_name: str
    exit_code: int | None = None
    output: str = ""
    task_id: str | None = None
    is_nowait: bool = False


class FileEditEvent(AgentEvent):
    type: Literal["file_edit"] = "file_edit"
    file_path: str
    action: Literal["created", "edited", "failed"]
    diff: str = ""
    output: str = ""


class FileReadEvent(AgentEvent):
    type: Literal["file_read"] = "file_read"
    file_path: str
    level: Literal["info", "warning"] = "info"
    output: str = ""


class TokensCountEvent(AgentEvent):
    type: Literal["tokens_count"] = "tokens_count"
    model_name: str | None = None
    total_tokens: int
    max_tokens: int


class AlertEvent(AgentEvent):
    type: Literal["alert"] = "alert"
    content: str
    level: Literal["info", "warning", "error"] = "warning"


class ErrorEvent(AgentEvent):
    type: Literal["error"] = "error"
    content: str
    details: str = ""


class RollbackEvent(AgentEvent):
    type: Literal["rollback"] = "rollback"


class DebugHistoryEvent(AgentEvent):
    type: Literal["debug_history"] = "debug_history"
    history: list[dict[str, Any]] = Field(default_factory=list)


class DoneEvent(AgentEvent):
    type: Literal["done"] = "done"


class EventSink(Protocol):
    """Fire-and-forget, per-session ordered event channel."""

    def send_event(self, session_id: str, event: AgentEvent) -> None: ...


class RecordingEventSink:
    """Keeps every event in memory, in send order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, AgentEvent]] = []

    def send_event(self, session_id: str, event: AgentEvent) -> None:
        self.events.append((session_id, event))

    def of_type(self, event_type: str, session_id: str | None = None) -> list[AgentEvent]:
        return [
            event
            for sid, event in self.events
            if event.type == event_type and (session_id is None or sid == session_id)
        ]

    def types(self, session_id: str | None = None) -> list[str]:
        return [event.type for sid, event in self.events if session_id is None or sid == session_id]


class QueueEventSink:
    """One asyncio queue per session."""

    def __init__(self) -> None:
        self._queues: defaultdict[str, asyncio.Queue[AgentEvent]] = defaultdict(asyncio.Queue)

    def send_event(self, session_id: str, event: AgentEvent) -> None:
        self._queues[session_id].put_nowait(event)

    async def next_event(self, session_id: str, timeout_seconds: float | None = None) -> AgentEvent | None:
        queue = self._queues[session_id]
        if timeout_seconds is None:
            return await queue.get()
        try:
            return await asyncio.wait_for(queue.get(), timeout=timeout_seconds)
        except TimeoutError:
            return None
