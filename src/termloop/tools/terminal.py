"""Terminal tools: running commands, reading output, sending keystrokes."""

from __future__ import annotations

import json

from loguru import logger

from termloop.collaborators import ApprovalRequest, CommandPolicy
from termloop.errors import RunCancelledError
from termloop.events import (
    CommandFinishedEvent,
    CommandStartedEvent,
    SubToolDeltaEvent,
    SubToolFinishedEvent,
    SubToolStartedEvent,
    ToolCallEvent,
)
from termloop.policy import PolicyDecider
from termloop.tools.context import ToolContext, tab_label
from termloop.tools.schemas import ExecCommandArgs, ReadCommandOutputArgs, ReadTerminalTabArgs, WriteStdinArgs

C0_NAMES = (
    "NUL", "SOH", "STX", "ETX", "EOT", "ENQ", "ACK", "BEL",
    "BS", "HT", "LF", "VT", "FF", "CR", "SO", "SI",
    "DLE", "DC1", "DC2", "DC3", "DC4", "NAK", "SYN", "ETB",
    "CAN", "EM", "SUB", "ESC", "FS", "GS", "RS", "US",
)  # fmt: skip
C0_CHAR_BY_NAME: dict[str, str] = {name: chr(code) for code, name in enumerate(C0_NAMES)} | {"DEL": "\x7f"}

COMMAND_OUTPUT_MAX_LINES = 200
COMMAND_OUTPUT_HEAD_LINES = 60
COMMAND_OUTPUT_TAIL_LINES = 60
COMMAND_OUTPUT_MAX_LINE_LENGTH = 2000
COMMAND_OUTPUT_MAX_BYTES = 50 * 1024
COMMAND_READ_MAX_LINE_LENGTH = 2000
COMMAND_READ_MAX_BYTES = 50 * 1024
STDIN_SETTLE_SECONDS = 1.0
STDIN_RECENT_LINES = 40


def _line_label(number: int) -> str:
    return f"{number:05d}| "


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def truncate_command_output(output: str, task_id: str, terminal_id: str) -> str:
    """Keep the head and tail of long output, pointing at read_command_output."""
    normalized = (output or "").replace("\r\n", "\n")
    lines = [
        line if len(line) <= COMMAND_OUTPUT_MAX_LINE_LENGTH else line[:COMMAND_OUTPUT_MAX_LINE_LENGTH] + "..."
        for line in normalized.split("\n")
    ]
    total = len(lines)
    if total <= COMMAND_OUTPUT_MAX_LINES and _byte_len("\n".join(lines)) <= COMMAND_OUTPUT_MAX_BYTES:
        return normalized.rstrip()

    pointer = (
        f"Use read_command_output to view full output, history_command_match_id={task_id}, terminalId={terminal_id}"
    )
    head_count = min(COMMAND_OUTPUT_HEAD_LINES, total)
    tail_count = min(COMMAND_OUTPUT_TAIL_LINES, max(0, total - head_count))
    omitted_start = head_count + 1
    omitted_end = total - tail_count
    if omitted_end >= omitted_start:
        omitted = f"... omitted lines {omitted_start} - {omitted_end}. {pointer}"
    else:
        omitted = f"... output truncated. {pointer}"

    head = [f"{_line_label(index + 1)}{line}" for index, line in enumerate(lines[:head_count])]
    tail_start = total - tail_count
    tail = [f"{_line_label(tail_start + index + 1)}{line}" for index, line in enumerate(lines[tail_start:])]
    result = "\n".join([*head, f".....| {omitted}", *tail]).rstrip()
    if _byte_len(result) > COMMAND_OUTPUT_MAX_BYTES:
        clipped = result.encode("utf-8")[:COMMAND_OUTPUT_MAX_BYTES].decode("utf-8", errors="ignore")
        result = f"{clipped}\n.....| ... output truncated. {pointer}"
    return result


def format_command_output_slice(output: str, *, offset: int, limit: int, is_running: bool = False) -> str:
    lines = (output or "").replace("\r\n", "\n").split("\n")
    if lines == [""] and not is_running:
        return "No output captured for this command yet."

    selected: list[str] = []
    used = 0
    truncated_by_bytes = False
    for line in lines[offset : offset + limit]:
        if len(line) > COMMAND_READ_MAX_LINE_LENGTH:
            line = line[:COMMAND_READ_MAX_LINE_LENGTH] + "..."
        size = _byte_len(line) + (1 if selected else 0)
        if used + size > COMMAND_READ_MAX_BYTES:
            truncated_by_bytes = True
            break
        selected.append(line)
        used += size

    numbered = [f"{_line_label(offset + index + 1)}{line}" for index, line in enumerate(selected)]
    last_read = offset + len(selected)
    if truncated_by_bytes:
        footer = f"(Output truncated at {COMMAND_READ_MAX_BYTES} bytes. Use 'offset' to read beyond line {last_read})"
    elif len(lines) > last_read:
        footer = f"(Output has more lines. Use 'offset' to read beyond line {last_read})"
    elif is_running:
        footer = (
            f"(Command is still running. Total {len(lines)} lines captured so far. "
            "Use read_command_output again later to see more)"
        )
    else:
        footer = f"(End of output - total {len(lines)} lines)"
    return "<command_output>\n" + "\n".join(numbered) + f"\n\n{footer}\n</command_output>"


async def check_command_policy(
    ctx: ToolContext,
    policy: CommandPolicy,
    mode: str,
    command: str,
    tool_name: str,
) -> str | None:
    """Return the refusal text when the command may not run."""
    ctx.token.raise_if_cancelled()
    verdict = await ctx.token.guard(policy.evaluate(command, mode))
    if verdict == "allow":
        return None
    if verdict == "deny":
        return f"Command blocked by policy: {command}"
    request = ApprovalRequest(
        session_id=ctx.session_id,
        message_id=ctx.message_id,
        tool_name=tool_name,
        command=command,
    )
    approved = await policy.request_approval(request, token=ctx.token)
    if not approved:
        return f"User rejected command: {command}"
    return None


async def exec_command(
    ctx: ToolContext,
    args: ExecCommandArgs,
    *,
    policy: CommandPolicy,
    policy_mode: str,
    decider: PolicyDecider,
) -> str:
    tab = ctx.resolve_tab(args.tab_id_or_name)
    recent = ctx.terminal.get_recent_output(tab.id, 40)
    decision = await decider.decide_command(
        ctx.session_id,
        ctx.history,
        tab=tab,
        command=args.command,
        recent_output=recent,
        token=ctx.token,
    )
    nowait = decision.decision == "nowait"
    label = tab_label(tab)

    refusal = await check_command_policy(
        ctx, policy, policy_mode, args.command, "exec_command_nowait" if nowait else "exec_command"
    )
    ctx.emit(CommandStartedEvent(command=args.command, tab_name=label, is_nowait=nowait))
    if refusal is not None:
        ctx.emit(CommandFinishedEvent(command=args.command, tab_name=label, exit_code=-1, output=refusal))
        return refusal

    if nowait:
        return await _run_background(ctx, tab.id, label, args.command)
    return await _run_foreground(ctx, tab.id, label, args.command)


async def _run_foreground(ctx: ToolContext, terminal_id: str, label: str, command: str) -> str:
    try:
        result = await ctx.terminal.run_command_and_wait(terminal_id, command, token=ctx.token)
    except RunCancelledError:
        raise
    except Exception as exc:
        logger.warning("terminal.command.failed terminal={} error={!r}", terminal_id, exc)
        ctx.emit(CommandFinishedEvent(command=command, tab_name=label, exit_code=-1, output=str(exc)))
        return f"Error executing command: {exc}"

    output = truncate_command_output(result.output, result.task_id, terminal_id)
    ctx.emit(
        CommandFinishedEvent(
            command=command,
            tab_name=label,
            exit_code=result.exit_code,
            output=output,
            task_id=result.task_id,
        )
    )
    return output or f"Command executed with exit code {result.exit_code}"


async def _run_background(ctx: ToolContext, terminal_id: str, label: str, command: str) -> str:
    try:
        task_id = await ctx.token.guard(ctx.terminal.run_command_no_wait(terminal_id, command))
    except RunCancelledError:
        raise
    except Exception as exc:
        logger.warning("terminal.command.failed terminal={} error={!r}", terminal_id, exc)
        ctx.emit(CommandFinishedEvent(command=command, tab_name=label, exit_code=-1, output=str(exc), is_nowait=True))
        return f"Error: {exc}"
    return (
        "Command started in background. Use read_command_output to view output and status (finished or running), "
        f"history_command_match_id={task_id}, terminalId={terminal_id}."
    )


def read_terminal_tab(ctx: ToolContext, args: ReadTerminalTabArgs) -> str:
    tab = ctx.resolve_tab(args.tab_id_or_name)
    plural = "" if args.lines == 1 else "s"
    ctx.emit(
        SubToolStartedEvent(
            title=f"Read {tab_label(tab)} Tab",
            hint=f"last {args.lines} line{plural}",
            tool_name="read_terminal_tab",
        )
    )
    output = ctx.terminal.get_recent_output(tab.id, args.lines) or "No output available."
    ctx.emit(SubToolDeltaEvent(output_delta=output))
    ctx.emit(SubToolFinishedEvent())
    return output


def read_command_output(ctx: ToolContext, args: ReadCommandOutputArgs) -> str:
    tab = ctx.resolve_tab(args.tab_id_or_name)
    task = ctx.terminal.get_command_task(tab.id, args.history_command_match_id)
    if task is None:
        return f'Error: No command found with history_command_match_id "{args.history_command_match_id}".'
    body = format_command_output_slice(
        task.output,
        offset=args.offset,
        limit=args.limit,
        is_running=task.status == "running",
    )
    status = task.status if task.exit_code is None else f"{task.status} (exit code {task.exit_code})"
    ctx.emit(
        SubToolStartedEvent(
            title=f"Read output of {task.command}",
            hint=f"offset {args.offset}",
            tool_name="read_command_output",
        )
    )
    ctx.emit(SubToolFinishedEvent())
    return f"Command: {task.command}\nStatus: {status}\n{body}"


def resolve_c0_sequence(sequence: list[str]) -> list[str]:
    return [C0_CHAR_BY_NAME.get(item, item) for item in sequence]


async def write_stdin(
    ctx: ToolContext,
    args: WriteStdinArgs,
    *,
    policy: CommandPolicy,
    policy_mode: str,
    decider: PolicyDecider,
) -> str:
    rendered_input = json.dumps(args.sequence, ensure_ascii=False)
    tab = ctx.resolve_tab(args.tab_id_or_name)

    decision = await decider.decide_write_stdin(ctx.session_id, ctx.history, sequence=args.sequence, token=ctx.token)
    if decision.decision == "block":
        blocked = f"Input blocked by policy check: {decision.reason or 'malformed control sequence'}"
        ctx.emit(ToolCallEvent(tool_name="write_stdin", input=rendered_input, output=blocked, level="warning"))
        return blocked

    refusal = await check_command_policy(ctx, policy, policy_mode, "".join(args.sequence), "write_stdin")
    if refusal is not None:
        ctx.emit(ToolCallEvent(tool_name="write_stdin", input=rendered_input, output=refusal, level="warning"))
        return refusal

    for chunk in resolve_c0_sequence(args.sequence):
        ctx.token.raise_if_cancelled()
        ctx.terminal.write(tab.id, chunk)

    await ctx.token.sleep(STDIN_SETTLE_SECONDS)
    output = ctx.terminal.get_recent_output(tab.id, STDIN_RECENT_LINES) or "No output available."
    ctx.emit(ToolCallEvent(tool_name="write_stdin", input=rendered_input, output=output))
    return output
