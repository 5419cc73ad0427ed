"""Narrow contracts for the collaborators a run depends on."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from termloop.cancellation import CancellationToken
from termloop.model import ToolDefinition

SKIPPED_EXIT_CODE = -3
TIMEOUT_EXIT_CODE = -1
USER_SKIPPED_WAIT = "USER_SKIPPED_WAIT"


@dataclass(frozen=True)
class TerminalTab:
    id: str
    title: str
    type: str = "local"
    system_info: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TerminalMatch:
    matches: tuple[TerminalTab, ...] = ()
    best_match: TerminalTab | None = None


@dataclass(frozen=True)
class CommandResult:
    output: str
    exit_code: int | None
    task_id: str


@dataclass(frozen=True)
class CommandTask:
    id: str
    command: str
    status: Literal["running", "finished"]
    output: str = ""
    exit_code: int | None = None


@dataclass(frozen=True)
class FileStat:
    exists: bool
    is_directory: bool = False
    size: int = 0


class TerminalBackend(Protocol):
    """Terminal/session manager; owns processes and command lifecycles.

    Implementations raise ``TerminalBusyError`` when a foreground command is
    requested while another one is active on the same terminal.
    """

    def list_terminals(self) -> list[TerminalTab]: ...

    def resolve_terminal(self, id_or_name: str) -> TerminalMatch: ...

    async def run_command_and_wait(self, terminal_id: str, command: str, *, token: CancellationToken) -> CommandResult: ...

    async def run_command_no_wait(self, terminal_id: str, command: str) -> str: ...

    async def wait_for_task(
        self,
        terminal_id: str,
        task_id: str,
        *,
        token: CancellationToken,
        should_skip: Callable[[], bool],
    ) -> CommandResult: ...

    def get_recent_output(self, terminal_id: str, lines: int | None = None) -> str: ...

    def get_active_task_id(self, terminal_id: str) -> str | None: ...

    def get_command_task(self, terminal_id: str, task_id: str) -> CommandTask | None: ...

    def write(self, terminal_id: str, data: str) -> None: ...

    async def stat_file(self, terminal_id: str, path: str) -> FileStat: ...

    async def read_file(self, terminal_id: str, path: str) -> bytes: ...

    async def write_file(self, terminal_id: str, path: str, content: str) -> None: ...


PolicyVerdict = Literal["allow", "deny", "ask"]


@dataclass(frozen=True)
class ApprovalRequest:
    session_id: str
    message_id: str
    tool_name: str
    command: str


class CommandPolicy(Protocol):
    async def evaluate(self, command: str, mode: str) -> PolicyVerdict: ...

    async def request_approval(self, request: ApprovalRequest, *, token: CancellationToken) -> bool: ...


@dataclass(frozen=True)
class SkillInfo:
    name: str
    description: str
    path: Path | None = None
    nested: bool = False


class SkillProvider(Protocol):
    async def get_all(self) -> list[SkillInfo]: ...

    async def get_enabled_skills(self) -> list[SkillInfo]: ...

    async def read_skill_content_by_name(self, name: str) -> tuple[SkillInfo, str] | None: ...

    async def create_or_rewrite(self, name: str, description: str, content: str) -> tuple[SkillInfo, str]: ...


class ExternalToolProvider(Protocol):
    """MCP-style tools whose lifecycle is managed elsewhere."""

    def is_external_tool_name(self, name: str) -> bool: ...

    def get_active_tools(self) -> list[ToolDefinition]: ...

    async def invoke_tool(self, name: str, args: dict[str, Any], *, token: CancellationToken) -> Any: ...


class InputEnrichment(Protocol):
    async def enrich(self, text: str, *, inserted: bool) -> tuple[str, str]: ...
