"""Run state and the node transition table."""

from __future__ import annotations

import uuid
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from loguru import logger

from termloop.collaborators import ExternalToolProvider
from termloop.messages import Message, Role, ToolCall
from termloop.tokens import TokenState
from termloop.tools.registry import ToolRegistry, ToolRoute


class Node(StrEnum):
    STARTUP = "startup"
    PRUNE_INITIAL = "prune_initial"
    PRUNE_RUNTIME = "prune_runtime"
    MODEL_REQUEST = "model_request"
    PLAN_TOOL_CALLS = "plan_tool_calls"
    TOOLS = "tools"
    COMMAND_TOOLS = "command_tools"
    FILE_TOOLS = "file_tools"
    READ_FILE = "read_file"
    EXTERNAL_TOOLS = "external_tools"
    FINAL_OUTPUT = "final_output"
    END = "end"


class StartMode(StrEnum):
    NORMAL = "normal"
    INSERTED = "inserted"


EXECUTOR_NODES = frozenset({Node.TOOLS, Node.COMMAND_TOOLS, Node.FILE_TOOLS, Node.READ_FILE, Node.EXTERNAL_TOOLS})
_ROUTE_NODES: dict[ToolRoute, Node] = {
    ToolRoute.GENERIC: Node.TOOLS,
    ToolRoute.COMMAND: Node.COMMAND_TOOLS,
    ToolRoute.FILE_EDIT: Node.FILE_TOOLS,
    ToolRoute.READ_FILE: Node.READ_FILE,
}


@dataclass(frozen=True)
class RunContext:
    session_id: str
    bound_terminal_id: str = ""
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class RunState:
    """Everything one run mutates.

    ``working`` is what the model sees; ``full`` is what gets persisted.
    Nodes replace or extend them only after their own work has finished.
    """

    context: RunContext
    startup_input: str
    mode: StartMode = StartMode.NORMAL
    working: list[Message] = field(default_factory=list)
    full: list[Message] = field(default_factory=list)
    token_state: TokenState = field(default_factory=TokenState)
    pending: deque[ToolCall] = field(default_factory=deque)
    deferred: list[Message] = field(default_factory=list)
    node_visits: int = 0

    @property
    def session_id(self) -> str:
        return self.context.session_id

    def append(self, *messages: Message) -> None:
        self.working.extend(messages)
        self.full.extend(messages)

    def flush_deferred(self) -> None:
        """Append messages tools attached once no tool result is still owed."""
        if self.deferred:
            self.append(*self.deferred)
            self.deferred.clear()

    def last_assistant(self) -> Message | None:
        if self.working and self.working[-1].role is Role.ASSISTANT:
            return self.working[-1]
        return None


class ToolRouter:
    """Maps the head of the pending queue to an executor node."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        enabled: Mapping[str, bool] | None = None,
        external: ExternalToolProvider | None = None,
    ) -> None:
        self._registry = registry
        self._enabled = enabled or {}
        self._external = external

    def route(self, call: ToolCall) -> Node:
        if self._external is not None and self._external.is_external_tool_name(call.name):
            return Node.EXTERNAL_TOOLS
        if not self._enabled.get(call.name, True):
            logger.warning("router.tool.disabled name={}", call.name)
            return Node.FINAL_OUTPUT
        descriptor = self._registry.get(call.name)
        if descriptor is None:
            return Node.TOOLS
        return _ROUTE_NODES[descriptor.route]

    def next_after_plan(self, state: RunState) -> Node:
        if not state.pending:
            return Node.FINAL_OUTPUT
        return self.route(state.pending[0])

    def next_after_tool(self, state: RunState) -> Node:
        if not state.pending:
            return Node.PRUNE_RUNTIME
        return self.route(state.pending[0])


type Transition = Callable[[RunState], Node]


def build_transitions(router: ToolRouter) -> dict[Node, Transition]:
    """The state machine's edges; executor nodes share one rule."""

    table: dict[Node, Transition] = {
        Node.STARTUP: lambda _: Node.PRUNE_INITIAL,
        Node.PRUNE_INITIAL: lambda _: Node.PRUNE_RUNTIME,
        Node.PRUNE_RUNTIME: lambda _: Node.MODEL_REQUEST,
        Node.MODEL_REQUEST: lambda _: Node.PLAN_TOOL_CALLS,
        Node.PLAN_TOOL_CALLS: router.next_after_plan,
        Node.FINAL_OUTPUT: lambda _: Node.END,
    }
    for node in EXECUTOR_NODES:
        table[node] = router.next_after_tool
    return table
