"""Separation of reasoning text from visible content in streamed output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

THINKING_TAG_RE = re.compile(r"<\s*(/?)\s*(?:think(?:ing)?|thought|antthinking)\s*>", re.IGNORECASE)

ReasoningMode = Literal["unknown", "native", "tagged"]


def has_thinking_tag(text: str) -> bool:
    return bool(text) and THINKING_TAG_RE.search(text) is not None


def split_stable_and_carry(text: str) -> tuple[str, str]:
    """Split off a trailing ``<...`` that may still become a tag."""
    last_lt = text.rfind("<")
    if last_lt == -1 or text.rfind(">") > last_lt:
        return text, ""
    return text[:last_lt], text[last_lt:]


@dataclass
class ExtractedDelta:
    content: str = ""
    reasoning: str = ""


class ReasoningExtractor:
    """Routes each chunk's text to the content or reasoning channel.

    The mode is fixed on first evidence: provider-native reasoning deltas
    switch to ``native``; an inline thinking tag switches to ``tagged``.
    Until then a possible partial tag at the end of a chunk is held back.
    """

    def __init__(self) -> None:
        self.mode: ReasoningMode = "unknown"
        self._reasoning: list[str] = []
        self._carry = ""
        self._tagged_buffer = ""
        self._in_thinking = False

    @property
    def reasoning_content(self) -> str:
        return "".join(self._reasoning)

    def process(self, content: str, reasoning: str = "") -> ExtractedDelta:
        candidate = f"{self._carry}{content}"
        if self.mode == "unknown":
            if reasoning:
                self.mode = "native"
            elif has_thinking_tag(candidate):
                self.mode = "tagged"

        if self.mode == "native":
            self._carry = ""
            if reasoning:
                self._reasoning.append(reasoning)
            return ExtractedDelta(content=candidate, reasoning=reasoning)

        if self.mode == "tagged":
            self._carry = ""
            return self._consume_tagged(candidate)

        stable, self._carry = split_stable_and_carry(candidate)
        return ExtractedDelta(content=stable)

    def flush(self) -> str:
        """Release any held-back text at the end of the stream."""
        if self.mode != "tagged":
            pending, self._carry = self._carry, ""
            return pending

        extracted = self._consume_tagged(self._carry)
        self._carry = ""
        if self._tagged_buffer:
            if self._in_thinking:
                self._reasoning.append(self._tagged_buffer)
            else:
                extracted.content += self._tagged_buffer
            self._tagged_buffer = ""
        return extracted.content

    def _consume_tagged(self, text: str) -> ExtractedDelta:
        buffer = self._tagged_buffer + text
        out = ExtractedDelta()
        cursor = 0
        for match in THINKING_TAG_RE.finditer(buffer):
            self._route(buffer[cursor : match.start()], out)
            self._in_thinking = match.group(1) != "/"
            cursor = match.end()

        stable, self._tagged_buffer = split_stable_and_carry(buffer[cursor:])
        self._route(stable, out)
        if out.reasoning:
            self._reasoning.append(out.reasoning)
        return out

    def _route(self, segment: str, out: ExtractedDelta) -> None:
        if not segment:
            return
        if self._in_thinking:
            out.reasoning += segment
        else:
            out.content += segment
