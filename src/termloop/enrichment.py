"""Expansion of mention labels in user input into inline context."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from termloop.collaborators import SkillProvider, TerminalBackend
from termloop.prompts import (
    FILE_CONTENT_TAG,
    TERMINAL_CONTENT_TAG,
    USEFUL_SKILL_TAG,
    USER_INPUT_TAG,
    USER_INSERTED_INPUT_INSTRUCTION,
    USER_INSERTED_INPUT_TAG,
)
from termloop.tools.files import is_binary

SKILL_MENTION_RE = re.compile(r"\[MENTION_SKILL:#(.+?)#\]")
TAB_MENTION_RE = re.compile(r"\[MENTION_TAB:#(.+?)##(.+?)#\]")
PASTE_MENTION_RE = re.compile(r"\[MENTION_USER_PASTE:#(.+?)##(.+?)#\]")
FILE_MENTION_RE = re.compile(r"\[MENTION_FILE:#(.+?)(?:##.+?)?#\]")
INLINE_FILE_MAX_BYTES = 4000


@dataclass(frozen=True)
class EnrichedInput:
    enriched: str
    display: str


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


class InputEnricher:
    """Prefixes referenced skills, terminal output and small files to the request."""

    def __init__(self, *, skills: SkillProvider | None = None, terminal: TerminalBackend | None = None) -> None:
        self._skills = skills
        self._terminal = terminal

    async def enrich(self, text: str, *, inserted: bool) -> tuple[str, str]:
        result = await self.enrich_input(text, inserted=inserted)
        return result.enriched, result.display

    async def enrich_input(self, text: str, *, inserted: bool = False) -> EnrichedInput:
        prefix = "".join(
            [
                await self._skill_details(text),
                self._tab_details(text),
                self._file_details(text),
            ]
        )
        if inserted:
            body = f"{USER_INSERTED_INPUT_TAG}{USER_INSERTED_INPUT_INSTRUCTION}\n{text}"
        else:
            body = f"{USER_INPUT_TAG}{text}"
        return EnrichedInput(enriched=f"{prefix}{body}", display=text)

    async def _skill_details(self, text: str) -> str:
        if self._skills is None:
            return ""
        details: list[str] = []
        for name in _unique(SKILL_MENTION_RE.findall(text)):
            found = await self._skills.read_skill_content_by_name(name)
            if found is None:
                logger.warning("enrich.skill.missing name={}", name)
                continue
            _, content = found
            details.append(f"{USEFUL_SKILL_TAG}Skill Name: {name}\nContent:\n{content}\n\n")
        return "".join(details)

    def _tab_details(self, text: str) -> str:
        if self._terminal is None:
            return ""
        tabs = {tab.id: tab for tab in self._terminal.list_terminals()}
        details: list[str] = []
        for tab_id in _unique([match[1] for match in TAB_MENTION_RE.findall(text)]):
            tab = tabs.get(tab_id)
            if tab is None:
                logger.warning("enrich.tab.missing id={}", tab_id)
                continue
            output = self._terminal.get_recent_output(tab_id)
            details.append(
                f"{TERMINAL_CONTENT_TAG}Terminal Tab: {tab.title} (ID: {tab_id})\n"
                f"<terminal_content>\n{output}\n</terminal_content>\n\n"
            )
        return "".join(details)

    def _file_details(self, text: str) -> str:
        paths = [match[0] for match in PASTE_MENTION_RE.findall(text)] + FILE_MENTION_RE.findall(text)
        details: list[str] = []
        for raw_path in _unique(paths):
            path = Path(raw_path).expanduser()
            try:
                if not path.is_file() or path.stat().st_size >= INLINE_FILE_MAX_BYTES:
                    continue
                data = path.read_bytes()
            except OSError as exc:
                logger.warning("enrich.file.unreadable path={} error={}", raw_path, exc)
                continue
            if is_binary(raw_path, data):
                continue
            details.append(f"{FILE_CONTENT_TAG}<{raw_path}>\n{data.decode('utf-8', errors='replace')}\n\n")
        return "".join(details)
