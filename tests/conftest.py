from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
from pydantic import BaseModel

from termloop.cancellation import CancellationToken
from termloop.collaborators import (
    ApprovalRequest,
    CommandResult,
    CommandTask,
    FileStat,
    SkillInfo,
    TerminalMatch,
    TerminalTab,
)
from termloop.config import Settings
from termloop.core.engine import AgentEngine
from termloop.errors import TerminalBusyError
from termloop.events import RecordingEventSink
from termloop.messages import Message
from termloop.model import ModelChunk, ToolDefinition
from termloop.store import FileSessionStore
from termloop.tools.context import ToolContext

DEFAULT_DECISIONS = {"CommandPolicyDecision": "wait", "WriteStdinPolicyDecision": "allow"}


@dataclass
class Hang:
    """Stream step that blocks until the run is cancelled."""

    started: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class CancelRun:
    """Stream step that cancels the run's token, then blocks."""

    reason: str = "user stop"


class FakeStructured:
    def __init__(self, model: ScriptedChatModel, schema: type[BaseModel]) -> None:
        self._model = model
        self._schema = schema

    async def invoke(self, messages: Sequence[Message], *, token: CancellationToken) -> Any:
        self._model.structured_calls += 1
        if self._model.structured:
            reply = self._model.structured.pop(0)
            if isinstance(reply, BaseException):
                raise reply
            return reply
        return self._schema.model_validate({"decision": DEFAULT_DECISIONS[self._schema.__name__]})


class ScriptedChatModel:
    """Replays scripted turns; each turn is a list of chunks and step markers, or an exception."""

    def __init__(self, turns: Sequence[Any] = (), *, name: str = "scripted") -> None:
        self.name = name
        self.turns: list[Any] = list(turns)
        self.replies: list[Any] = []
        self.structured: list[Any] = []
        self.requests: list[list[Message]] = []
        self.bound_tools: list[list[str]] = []
        self.structured_calls = 0
        self.invoke_calls = 0
        self.active = 0
        self.max_active = 0

    def bind_tools(self, tools: Sequence[ToolDefinition]) -> ScriptedChatModel:
        self.bound_tools.append([tool.name for tool in tools])
        return self

    async def stream(self, messages: Sequence[Message], *, token: CancellationToken) -> AsyncIterator[ModelChunk]:
        self.requests.append(list(messages))
        turn = self.turns.pop(0) if self.turns else [ModelChunk(content="done")]
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if isinstance(turn, BaseException):
                raise turn
            for step in turn:
                if isinstance(step, BaseException):
                    raise step
                if isinstance(step, Hang):
                    step.started.set()
                    await asyncio.Event().wait()
                if isinstance(step, CancelRun):
                    token.cancel(step.reason)
                    await asyncio.Event().wait()
                yield step
        finally:
            self.active -= 1

    async def invoke(self, messages: Sequence[Message], *, token: CancellationToken) -> ModelChunk:
        self.invoke_calls += 1
        if not self.replies:
            return ModelChunk(content='{"decision": "wait", "reason": "scripted"}')
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply if isinstance(reply, ModelChunk) else ModelChunk(content=reply)

    def with_structured_output(self, schema: type[BaseModel]) -> FakeStructured:
        return FakeStructured(self, schema)


WaitHook = Callable[[Callable[[], bool], CancellationToken], Awaitable[CommandResult]]


class FakeTerminal:
    def __init__(self, tabs: Sequence[TerminalTab] | None = None) -> None:
        self.tabs = list(tabs or [TerminalTab(id="t1", title="main")])
        self.outputs: dict[str, str | list[str]] = {}
        self.results: dict[str, CommandResult] = {}
        self.tasks: dict[str, CommandTask] = {}
        self.active_tasks: dict[str, str] = {}
        self.commands: list[tuple[str, str]] = []
        self.written: list[tuple[str, str]] = []
        self.files: dict[str, str | bytes] = {}
        self.directories: set[str] = set()
        self.wait_results: list[CommandResult] = []
        self.wait_hook: WaitHook | None = None
        self.busy = False

    def list_terminals(self) -> list[TerminalTab]:
        return list(self.tabs)

    def resolve_terminal(self, id_or_name: str) -> TerminalMatch:
        by_id = [tab for tab in self.tabs if tab.id == id_or_name]
        if by_id:
            return TerminalMatch(matches=tuple(by_id), best_match=by_id[0])
        by_name = [tab for tab in self.tabs if tab.title == id_or_name]
        if len(by_name) == 1:
            return TerminalMatch(matches=tuple(by_name), best_match=by_name[0])
        return TerminalMatch(matches=tuple(by_name))

    async def run_command_and_wait(self, terminal_id: str, command: str, *, token: CancellationToken) -> CommandResult:
        if self.busy:
            raise TerminalBusyError("a command is already running in this terminal")
        self.commands.append((terminal_id, command))
        result = self.results.get(command) or CommandResult(
            output=f"ran {command}", exit_code=0, task_id=f"task-{len(self.commands)}"
        )
        self.tasks[result.task_id] = CommandTask(
            id=result.task_id, command=command, status="finished", output=result.output, exit_code=result.exit_code
        )
        return result

    async def run_command_no_wait(self, terminal_id: str, command: str) -> str:
        self.commands.append((terminal_id, command))
        task_id = f"bg-{len(self.commands)}"
        self.tasks[task_id] = CommandTask(id=task_id, command=command, status="running")
        self.active_tasks[terminal_id] = task_id
        return task_id

    async def wait_for_task(
        self,
        terminal_id: str,
        task_id: str,
        *,
        token: CancellationToken,
        should_skip: Callable[[], bool],
    ) -> CommandResult:
        if self.wait_hook is not None:
            return await self.wait_hook(should_skip, token)
        return self.wait_results.pop(0)

    def get_recent_output(self, terminal_id: str, lines: int | None = None) -> str:
        output = self.outputs.get(terminal_id, "")
        if isinstance(output, list):
            return output.pop(0) if len(output) > 1 else (output[0] if output else "")
        return output

    def get_active_task_id(self, terminal_id: str) -> str | None:
        return self.active_tasks.get(terminal_id)

    def get_command_task(self, terminal_id: str, task_id: str) -> CommandTask | None:
        return self.tasks.get(task_id)

    def write(self, terminal_id: str, data: str) -> None:
        self.written.append((terminal_id, data))

    async def stat_file(self, terminal_id: str, path: str) -> FileStat:
        if path in self.directories:
            return FileStat(exists=True, is_directory=True)
        if path in self.files:
            return FileStat(exists=True, size=len(self.files[path]))
        return FileStat(exists=False)

    async def read_file(self, terminal_id: str, path: str) -> bytes:
        data = self.files[path]
        return data if isinstance(data, bytes) else data.encode("utf-8")

    async def write_file(self, terminal_id: str, path: str, content: str) -> None:
        self.files[path] = content


class FakeCommandPolicy:
    def __init__(self, verdict: str = "allow", *, approve: bool = True) -> None:
        self.verdict = verdict
        self.approve = approve
        self.evaluated: list[tuple[str, str]] = []
        self.approvals: list[ApprovalRequest] = []

    async def evaluate(self, command: str, mode: str) -> str:
        self.evaluated.append((command, mode))
        return self.verdict

    async def request_approval(self, request: ApprovalRequest, *, token: CancellationToken) -> bool:
        self.approvals.append(request)
        return self.approve


class InMemorySkills:
    def __init__(self) -> None:
        self.skills: dict[str, tuple[SkillInfo, str]] = {}

    def add(self, name: str, description: str, body: str) -> None:
        self.skills[name] = (SkillInfo(name=name, description=description), body)

    async def get_all(self) -> list[SkillInfo]:
        return [info for info, _ in self.skills.values()]

    async def get_enabled_skills(self) -> list[SkillInfo]:
        return [info for info, _ in self.skills.values()]

    async def read_skill_content_by_name(self, name: str) -> tuple[SkillInfo, str] | None:
        return self.skills.get(name)

    async def create_or_rewrite(self, name: str, description: str, content: str) -> tuple[SkillInfo, str]:
        action = "rewritten" if name in self.skills else "created"
        self.add(name, description, content)
        return self.skills[name][0], action


class FakeExternalTools:
    def __init__(self, result: Any = None) -> None:
        self.result = result if result is not None else {"hits": 2}
        self.invocations: list[tuple[str, dict[str, Any]]] = []

    def is_external_tool_name(self, name: str) -> bool:
        return name.startswith("mcp_")

    def get_active_tools(self) -> list[ToolDefinition]:
        return [ToolDefinition(name="mcp_search", description="Search docs", parameters={"type": "object"})]

    async def invoke_tool(self, name: str, args: dict[str, Any], *, token: CancellationToken) -> Any:
        self.invocations.append((name, args))
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / "home"


@pytest.fixture
def settings(home: Path) -> Settings:
    return Settings(home=home, model_retry_delays=(0.0, 0.0, 0.0, 0.0))


@pytest.fixture
def store(home: Path) -> FileSessionStore:
    return FileSessionStore(home)


@pytest.fixture
def sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def terminal() -> FakeTerminal:
    return FakeTerminal()


@pytest.fixture
def command_policy() -> FakeCommandPolicy:
    return FakeCommandPolicy()


@pytest.fixture
def skills() -> InMemorySkills:
    return InMemorySkills()


@pytest.fixture
def model() -> ScriptedChatModel:
    return ScriptedChatModel()


@pytest.fixture
def make_engine(
    settings: Settings,
    model: ScriptedChatModel,
    terminal: FakeTerminal,
    command_policy: FakeCommandPolicy,
    skills: InMemorySkills,
    store: FileSessionStore,
    sink: RecordingEventSink,
) -> Callable[..., AgentEngine]:
    def build(**overrides: Any) -> AgentEngine:
        params: dict[str, Any] = {
            "model": model,
            "terminal": terminal,
            "command_policy": command_policy,
            "skills": skills,
            "store": store,
            "sink": sink,
        }
        engine_settings = overrides.pop("settings", settings)
        params.update(overrides)
        return AgentEngine(engine_settings, **params)

    return build


@pytest.fixture
def make_context(terminal: FakeTerminal, sink: RecordingEventSink) -> Callable[..., ToolContext]:
    def build(**overrides: Any) -> ToolContext:
        params: dict[str, Any] = {
            "session_id": "s1",
            "message_id": "msg_1",
            "token": CancellationToken(),
            "terminal": terminal,
            "sink": sink,
        }
        params.update(overrides)
        return ToolContext(**params)

    return build


@pytest.fixture
def hang() -> Hang:
    return Hang()


@pytest.fixture
def cancel_run() -> CancelRun:
    return CancelRun()


@pytest.fixture
def external_tools() -> FakeExternalTools:
    return FakeExternalTools()
