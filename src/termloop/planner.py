"""Selection of which proposed tool calls run in one turn."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from loguru import logger

from termloop.messages import Message, ToolCall

FOREGROUND_COMMAND_TOOL = "exec_command"
SKILL_TOOL = "skill"

PlanReason = Literal["none", "single", "foreground_command", "skill", "sequential"]


@dataclass(frozen=True)
class ToolCallPlan:
    queue: tuple[ToolCall, ...]
    reason: PlanReason


class ToolCallPlanner:
    """Decides the pending tool-call queue for an assistant turn."""

    def __init__(
        self,
        *,
        foreground_tools: frozenset[str] = frozenset({FOREGROUND_COMMAND_TOOL}),
        isolated_tools: frozenset[str] = frozenset({SKILL_TOOL}),
    ) -> None:
        self._foreground_tools = foreground_tools
        self._isolated_tools = isolated_tools

    def select(self, calls: Sequence[ToolCall]) -> ToolCallPlan:
        if not calls:
            return ToolCallPlan(queue=(), reason="none")
        if len(calls) == 1:
            return ToolCallPlan(queue=(calls[0],), reason="single")
        if any(call.name in self._foreground_tools for call in calls):
            return ToolCallPlan(queue=(calls[0],), reason="foreground_command")
        isolated = next((call for call in calls if call.name in self._isolated_tools), None)
        if isolated is not None:
            return ToolCallPlan(queue=(isolated,), reason="skill")
        return ToolCallPlan(queue=tuple(calls), reason="sequential")

    def plan(self, message: Message) -> ToolCallPlan:
        """Select the queue and strip stale tool-call metadata from ``message``."""
        plan = self.select(message.tool_calls)
        if len(plan.queue) != len(message.tool_calls):
            logger.info(
                "planner.trim proposed={} kept={} reason={}",
                [call.name for call in message.tool_calls],
                [call.name for call in plan.queue],
                plan.reason,
            )
        normalize_tool_call_metadata(message, plan.queue)
        return plan


def normalize_tool_call_metadata(message: Message, keep: Sequence[ToolCall]) -> None:
    message.tool_calls = list(keep)
    message.invalid_tool_calls = []
    message.tool_call_chunks = []
    message.metadata.pop("tool_calls", None)
