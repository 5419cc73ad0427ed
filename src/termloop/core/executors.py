"""Tool executors: one pending call in, its tool result and any attached messages out."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel

from termloop.cancellation import CancellationToken
from termloop.collaborators import CommandPolicy, ExternalToolProvider, SkillProvider, TerminalBackend
from termloop.core.state import Node, RunState
from termloop.errors import RunCancelledError, ToolExecutionError
from termloop.events import EventSink, ToolCallEvent
from termloop.messages import Message, ToolCall
from termloop.policy import PolicyDecider
from termloop.tools import files, skill_tools, terminal, waiting
from termloop.tools.context import FeedbackWaiter, ToolContext
from termloop.tools.registry import ToolRegistry
from termloop.tools.schemas import Err, validate_tool_args

type Handler = Callable[[ToolContext, Any], Awaitable[str] | str]


@dataclass
class ExecutorDeps:
    terminal: TerminalBackend
    command_policy: CommandPolicy
    decider: PolicyDecider
    skills: SkillProvider
    sink: EventSink
    policy_mode: str = "standard"
    external: ExternalToolProvider | None = None
    wait_for_feedback: FeedbackWaiter | None = None
    image_inputs: bool = False


class ToolExecutors:
    """Runs the head of the pending queue for whichever executor node is active."""

    def __init__(self, registry: ToolRegistry, deps: ExecutorDeps) -> None:
        self._registry = registry
        self._deps = deps
        self._handlers: dict[str, Handler] = {
            "exec_command": self._exec_command,
            "read_terminal_tab": terminal.read_terminal_tab,
            "read_command_output": terminal.read_command_output,
            "write_stdin": self._write_stdin,
            "wait": waiting.wait,
            "wait_terminal_idle": waiting.wait_terminal_idle,
            "wait_command_end": waiting.wait_command_end,
            "create_or_edit": files.create_or_edit,
            "read_file": files.read_file,
            "skill": self._load_skill,
            "create_or_rewrite_skill": self._create_or_rewrite_skill,
        }

    async def run(self, node: Node, state: RunState, token: CancellationToken) -> list[Message]:
        """The tool result for the head of the queue, then any messages the tool attached."""
        call = state.pending[0]
        ctx = ToolContext(
            session_id=state.session_id,
            message_id=self._message_id(state),
            token=token,
            terminal=self._deps.terminal,
            sink=self._deps.sink,
            history=tuple(state.full),
            wait_for_feedback=self._deps.wait_for_feedback,
            image_inputs=self._deps.image_inputs,
        )
        args = call.parsed_args()
        with self._registry.track_call(call.name, args, state.session_id):
            if node is Node.EXTERNAL_TOOLS:
                content = await self._run_external(ctx, call, args)
            else:
                content = await self._run_builtin(ctx, call, args)
        return [Message.tool_result(call, content), *ctx.attachments]

    async def _run_builtin(self, ctx: ToolContext, call: ToolCall, raw: dict[str, Any]) -> str:
        descriptor = self._registry.get(call.name)
        handler = self._handlers.get(call.name)
        if descriptor is None or handler is None:
            return f'Tool "{call.name}" is not supported.'

        validated = validate_tool_args(call.name, descriptor.args_model, raw)
        if isinstance(validated, Err):
            logger.warning("tool.args.invalid name={} error={}", call.name, validated.error)
            ctx.emit(ToolCallEvent(tool_name=call.name, input=json.dumps(raw), output=str(validated.error), level="error"))
            return str(validated.error)

        try:
            result = handler(ctx, validated.value)
            if not isinstance(result, str):
                result = await result
            return result
        except RunCancelledError:
            raise
        except ToolExecutionError as exc:
            return str(exc)
        except Exception as exc:
            logger.warning("tool.call.failed name={} error={!r}", call.name, exc)
            text = f"Error executing {call.name}: {exc}"
            ctx.emit(ToolCallEvent(tool_name=call.name, output=text, level="error"))
            return text

    async def _run_external(self, ctx: ToolContext, call: ToolCall, args: dict[str, Any]) -> str:
        external = self._deps.external
        if external is None:
            return f'Tool "{call.name}" is not supported.'
        ctx.emit(ToolCallEvent(tool_name=call.name, input=json.dumps(args, ensure_ascii=False)))
        try:
            result = await ctx.token.guard(external.invoke_tool(call.name, args, token=ctx.token))
        except RunCancelledError:
            raise
        except Exception as exc:
            logger.warning("tool.external.failed name={} error={!r}", call.name, exc)
            text = f"Error calling external tool {call.name}: {exc}"
            ctx.emit(ToolCallEvent(tool_name=call.name, output=text, level="error"))
            return text
        text = render_external_result(result)
        ctx.emit(ToolCallEvent(tool_name=call.name, output=text))
        return text

    @staticmethod
    def _message_id(state: RunState) -> str:
        assistant = state.last_assistant()
        if assistant is not None:
            return assistant.id
        for message in reversed(state.working):
            if message.tool_calls:
                return message.id
        return state.context.run_id

    async def _exec_command(self, ctx: ToolContext, args: Any) -> str:
        return await terminal.exec_command(
            ctx,
            args,
            policy=self._deps.command_policy,
            policy_mode=self._deps.policy_mode,
            decider=self._deps.decider,
        )

    async def _write_stdin(self, ctx: ToolContext, args: Any) -> str:
        return await terminal.write_stdin(
            ctx,
            args,
            policy=self._deps.command_policy,
            policy_mode=self._deps.policy_mode,
            decider=self._deps.decider,
        )

    async def _load_skill(self, ctx: ToolContext, args: Any) -> str:
        return await skill_tools.load_skill(ctx, args, self._deps.skills)

    async def _create_or_rewrite_skill(self, ctx: ToolContext, args: Any) -> str:
        return await skill_tools.create_or_rewrite_skill(ctx, args, self._deps.skills)


def render_external_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)
