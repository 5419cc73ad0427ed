"""Tools that wait on time, terminal output, or a running command."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from termloop.collaborators import SKIPPED_EXIT_CODE, TIMEOUT_EXIT_CODE, USER_SKIPPED_WAIT, CommandResult
from termloop.events import CommandFinishedEvent, SubToolDeltaEvent, SubToolFinishedEvent, SubToolStartedEvent
from termloop.tools.context import ToolContext, tab_label
from termloop.tools.schemas import WaitArgs, WaitTerminalArgs
from termloop.tools.terminal import truncate_command_output

IDLE_POLL_SECONDS = 1.0
IDLE_STABLE_POLLS = 4
IDLE_MAX_POLLS = 120
IDLE_SAMPLE_LINES = 100
IDLE_REPORT_LINES = 40
SKIP_WAIT_FEEDBACK = "SKIP_WAIT"


async def wait(ctx: ToolContext, args: WaitArgs) -> str:
    ctx.emit(SubToolStartedEvent(title="Wait", hint=f"Waiting for {args.seconds}s...", tool_name="wait"))
    try:
        await ctx.token.sleep(args.seconds)
    finally:
        ctx.emit(SubToolFinishedEvent())
    return f"Waited for {args.seconds} seconds."


async def wait_terminal_idle(ctx: ToolContext, args: WaitTerminalArgs) -> str:
    tab = ctx.resolve_tab(args.tab_id_or_name)
    ctx.emit(SubToolStartedEvent(title=f"Waiting on {tab_label(tab)}", tool_name="wait_terminal_idle"))

    last_content = ""
    stable_polls = 0
    polls = 0
    while polls < IDLE_MAX_POLLS:
        ctx.token.raise_if_cancelled()
        current = ctx.terminal.get_recent_output(tab.id, IDLE_SAMPLE_LINES)
        if current and current == last_content:
            stable_polls += 1
        else:
            stable_polls = 0
            last_content = current
        if stable_polls >= IDLE_STABLE_POLLS:
            final_output = ctx.terminal.get_recent_output(tab.id, IDLE_REPORT_LINES)
            ctx.emit(SubToolDeltaEvent(output_delta=final_output))
            ctx.emit(SubToolFinishedEvent())
            return f"Terminal is now idle. Recent output (last {IDLE_REPORT_LINES} lines):\n{final_output}"
        await ctx.token.sleep(IDLE_POLL_SECONDS)
        polls += 1

    current_output = ctx.terminal.get_recent_output(tab.id, IDLE_REPORT_LINES)
    waited = IDLE_MAX_POLLS * IDLE_POLL_SECONDS
    message = (
        f"Wait timeout: The terminal has been running for over {waited:.0f}s and is still not idle. "
        "If you need to continue waiting, run this tool again. If you need to stop it, use write_stdin "
        f"(e.g. ETX for Ctrl+C). Recent output:\n{current_output}"
    )
    ctx.emit(SubToolDeltaEvent(output_delta=message))
    ctx.emit(SubToolFinishedEvent())
    return message


def is_skipped(result: CommandResult) -> bool:
    return result.exit_code == SKIPPED_EXIT_CODE or result.output == USER_SKIPPED_WAIT


def is_timed_out(result: CommandResult) -> bool:
    return result.exit_code == TIMEOUT_EXIT_CODE and "timed out" in (result.output or "")


def format_wait_result(result: CommandResult, *, command: str, terminal_id: str) -> str:
    task_id = result.task_id
    if is_skipped(result):
        return (
            f'The user has chosen to run the command "{command}" asynchronously. The command is currently running '
            "in the background. You can use read_command_output to check its progress if needed. "
            f"history_command_match_id={task_id}, terminalId={terminal_id}"
        )
    if is_timed_out(result):
        return (
            f'The command "{command}" is still running, but the wait has timed out. You can use '
            "read_command_output to check its current progress, or call wait_command_end again if it needs more "
            f"time to finish. history_command_match_id={task_id}, terminalId={terminal_id}"
        )
    output = truncate_command_output(result.output, task_id, terminal_id)
    return (
        f'The command "{command}" has finished executing with exit code {result.exit_code}. '
        f"The following is the output (history_command_match_id={task_id}):\n"
        f"<terminal_content>\n{output}\n</terminal_content>"
    )


async def wait_command_end(ctx: ToolContext, args: WaitTerminalArgs) -> str:
    tab = ctx.resolve_tab(args.tab_id_or_name)
    task_id = ctx.terminal.get_active_task_id(tab.id)
    if not task_id:
        return f'No running command found in terminal tab "{tab_label(tab)}".'

    ctx.emit(
        SubToolStartedEvent(title=f"Waiting for command to end in {tab_label(tab)}", tool_name="wait_command_end")
    )
    skipped = False

    async def listen_for_skip() -> None:
        nonlocal skipped
        if ctx.wait_for_feedback is None:
            return
        payload: Any = await ctx.wait_for_feedback(ctx.message_id)
        kind = payload.get("type") if isinstance(payload, dict) else getattr(payload, "type", payload)
        if kind == SKIP_WAIT_FEEDBACK:
            logger.info("wait.command.skip_requested session={} task={}", ctx.session_id, task_id)
            skipped = True

    listener = asyncio.create_task(listen_for_skip())
    try:
        result = await ctx.terminal.wait_for_task(tab.id, task_id, token=ctx.token, should_skip=lambda: skipped)
    finally:
        listener.cancel()
        await asyncio.gather(listener, return_exceptions=True)

    task = ctx.terminal.get_command_task(tab.id, task_id)
    command = task.command if task is not None else "Unknown command"
    text = format_wait_result(result, command=command, terminal_id=tab.id)
    if is_skipped(result):
        ctx.emit(
            CommandFinishedEvent(
                command=command,
                tab_name=tab_label(tab),
                exit_code=result.exit_code,
                output=text,
                task_id=task_id,
                is_nowait=True,
            )
        )
    ctx.emit(SubToolDeltaEvent(output_delta=text))
    ctx.emit(SubToolFinishedEvent())
    return text
