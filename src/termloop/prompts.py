"""Prompt text and message markers."""

from __future__ import annotations

import json
from collections.abc import Sequence

from termloop.collaborators import SkillInfo, TerminalTab
from termloop.messages import Message, Role

SYS_INFO_MARKER = "SYSTEM_INFO_MSG:\n"
TAB_CONTEXT_MARKER = "TAB_CONTEXT_MSG:\n"
USER_INPUT_TAG = "USER_REQUEST_IS:\n"
USER_INSERTED_INPUT_TAG = "USER_INTERRUPT_INSERTED_REQUEST:\n"
USER_INSERTED_INPUT_INSTRUCTION = (
    "The user inserted a message mid-run. Based on the latest input, decide whether to adjust and "
    "continue the previous task, or stop the previous path and switch to a new task."
)
USEFUL_SKILL_TAG = "USEFUL_SKILL_DETAIL:\n"
FILE_CONTENT_TAG = "FILE_CONTENT:\n"
TERMINAL_CONTENT_TAG = "TERMINAL_CONTENT:\n"

BASE_SYSTEM_PROMPT_HEADER = "# Role: Terminal Assistant"
USER_INPUT_TAGS = (USER_INPUT_TAG, USER_INSERTED_INPUT_TAG)
SPECIAL_USER_MARKERS = (USER_INPUT_TAG, TAB_CONTEXT_MARKER, SYS_INFO_MARKER)

_BASE_SYSTEM_PROMPT = "\n".join(
    [
        BASE_SYSTEM_PROMPT_HEADER,
        "You are a terminal assistant. Fulfil the user's request by running commands and editing files",
        "through the tools you are given, following each tool's description exactly.",
        "",
        "# Working rules",
        "- Run one foreground command per turn and read its result before deciding the next step.",
        "- Prefer exec_command for normal commands; use write_stdin only for interactive programs.",
        "- Load a skill with the skill tool when it matches the task, then follow it.",
        "- When the task is complete, answer without calling any tool.",
    ]
)


def base_system_prompt() -> Message:
    return Message.system(_BASE_SYSTEM_PROMPT)


def is_base_system_prompt(message: Message) -> bool:
    return message.role is Role.SYSTEM and BASE_SYSTEM_PROMPT_HEADER in message.content


def has_user_input_tag(content: str) -> bool:
    return any(tag in content for tag in USER_INPUT_TAGS)


def system_info_prompt(tabs: Sequence[TerminalTab]) -> Message:
    rows = []
    for tab in tabs:
        row = f"- ID: {tab.id}, Name: {tab.title}, Type: {tab.type}"
        if tab.system_info:
            details = ", ".join(f"{key}: {value}" for key, value in tab.system_info.items())
            row += f" ({details})"
        rows.append(row)
    listing = "\n".join(rows) or "(no terminal tabs open)"
    return Message.user(f"{SYS_INFO_MARKER}\nAvailable Terminal Tabs:\n{listing}", ephemeral=True)


def tab_context_prompt(tab: TerminalTab | None, recent_output: str) -> Message:
    lines = [
        f"{TAB_CONTEXT_MARKER}\nYou are currently operating in the following terminal tab:",
        f"- Title: {tab.title if tab else 'None'}",
        f"- ID: {tab.id if tab else 'None'}",
        f"- Type: {tab.type if tab else 'None'}",
    ]
    if tab is not None:
        lines.append("")
        lines.append("The following is the current visible state of this terminal tab:")
        lines.append(recent_output or "(No output available)")
    return Message.user("\n".join(lines), ephemeral=True)


def command_policy_prompt(tab: TerminalTab, command: str, recent_output: str) -> Message:
    return Message.user(
        "\n".join(
            [
                "# Command Execution Policy Request",
                'You are acting as a policy engine. Decide if the following command should be "wait" or "nowait".',
                "",
                "## Rules:",
                '- Use "nowait" for long-running processes, servers, interactive UIs or commands that might hang.',
                '- Use "wait" for quick commands that return on their own.',
                '- Output ONLY JSON: {"decision":"wait"|"nowait","reason":"..."}',
                "",
                f"Terminal Tab: {tab.title} (id={tab.id}, type={tab.type})",
                f"Command: {command}",
                "",
                "Recent Terminal Output:",
                "```",
                recent_output,
                "```",
            ]
        )
    )


def write_stdin_policy_prompt(sequence: Sequence[str]) -> Message:
    return Message.user(
        "\n".join(
            [
                "# Write Stdin Execution Policy Request",
                "You audit terminal input sent with write_stdin. Control characters must be sent as their C0",
                'names (for example "ETX" for Ctrl+C) as separate items, never as "Ctrl+C", "^C" or "\\x03".',
                "",
                f"Input sequence: {json.dumps(list(sequence), ensure_ascii=False)}",
                "",
                'Block informal control-character spellings and explain the correct C0 name; allow everything else.',
                'Output ONLY JSON: {"decision":"allow"|"block","reason":"..."}',
            ]
        )
    )


def read_file_description(image_inputs: bool) -> str:
    image = "Image: PNG, JPG, JPEG, GIF and WEBP are supported." if image_inputs else "Image: not supported."
    return f"{TOOL_DESCRIPTIONS['read_file']}\n{image}"


def skill_tool_description(skills: Sequence[SkillInfo]) -> str:
    header = "Load the full instructions of a skill by name. Available skills:"
    if not skills:
        return f"{header}\n(none)"
    rows = [f"- {skill.name}: {skill.description}" for skill in skills]
    return "\n".join([header, *rows])


TOOL_DESCRIPTIONS: dict[str, str] = {
    "exec_command": (
        "Execute a shell command in a terminal tab. The command either runs to completion or is left "
        "running in the background, in which case use wait_command_end or read_command_output later."
    ),
    "read_terminal_tab": "Read the recent visible output of a specific terminal tab.",
    "read_command_output": (
        "Read the captured output of a previously executed command by its history_command_match_id, "
        "with optional line offset and limit."
    ),
    "write_stdin": (
        "Send characters to a terminal tab WITHOUT a trailing newline. Each item is literal text or a C0 "
        "control name such as ETX (Ctrl+C), EOT (Ctrl+D), ESC, CR or LF. For normal commands use exec_command."
    ),
    "wait": "Pause for a number of seconds (5-60) while waiting on something outside the terminal.",
    "wait_terminal_idle": "Wait until the terminal output stops changing for a few seconds, or 120 seconds pass.",
    "wait_command_end": "Wait for the command currently running in a terminal tab to finish and return its output.",
    "create_or_edit": (
        "Create or overwrite a file with content, or edit it by replacing old_string with new_string "
        "(set replace_all to replace every occurrence)."
    ),
    "read_file": (
        "Read a file from a terminal tab's host. Text files come back with line numbers; use offset and limit "
        "to read large files in chunks. PDF: text is extracted."
    ),
    "create_or_rewrite_skill": "Create a new skill or rewrite an existing one with a name, description and body.",
}
