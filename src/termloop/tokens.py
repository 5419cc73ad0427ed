"""Token estimation, overflow detection and tool-output pruning."""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass, field

from loguru import logger

from termloop.messages import Message, Role

PRUNED_MARKER = "[Content Pruned]"


@dataclass(frozen=True)
class TokenBudget:
    """Thresholds driving overflow detection and pruning."""

    chars_per_token: int = 4
    output_reserve: int = 10_000
    prune_protect: int = 40_000
    prune_minimum: int = 20_000
    recent_tool_results_protected: int = 10
    protected_tools: frozenset[str] = field(default_factory=lambda: frozenset({"skill"}))


@dataclass(frozen=True)
class TokenState:
    current_tokens: int = 0
    max_tokens: int = 0

    def update(self, **changes: int) -> TokenState:
        return dataclasses.replace(self, **changes)


class TokenManager:
    """Character-count heuristics over a message list."""

    def __init__(self, budget: TokenBudget | None = None) -> None:
        self.budget = budget or TokenBudget()

    def estimate(self, text: str | None) -> int:
        if not text:
            return 0
        size = self.budget.chars_per_token
        # round half up
        return (len(text) + size // 2) // size

    def estimate_messages(self, messages: Sequence[Message]) -> int:
        return sum(self.estimate(message.content) for message in messages)

    def is_overflow(self, current_tokens: int, max_tokens: int) -> bool:
        if max_tokens <= 0:
            return False
        return current_tokens > max_tokens - self.budget.output_reserve

    def prune(self, messages: list[Message]) -> list[Message]:
        """Replace old, bulky tool results with size stubs.

        Returns ``messages`` itself when nothing is worth rewriting.
        """
        budget = self.budget
        seen_results = 0
        accumulated = 0
        prunable_total = 0
        to_prune: dict[int, int] = {}

        for index in range(len(messages) - 1, -1, -1):
            message = messages[index]
            if message.role is not Role.TOOL:
                continue
            seen_results += 1
            if seen_results <= budget.recent_tool_results_protected:
                continue
            if message.name in budget.protected_tools:
                continue
            if PRUNED_MARKER in message.content:
                continue
            estimate = self.estimate(message.content)
            accumulated += estimate
            if accumulated > budget.prune_protect:
                to_prune[index] = estimate
                prunable_total += estimate

        if prunable_total <= budget.prune_minimum:
            return messages

        logger.info(
            "tokens.prune.commit messages={} prunable_tokens={}",
            len(to_prune),
            prunable_total,
        )
        pruned = list(messages)
        for index, estimate in to_prune.items():
            pruned[index] = messages[index].model_copy(update={"content": pruned_stub(estimate)})
        return pruned


def pruned_stub(estimated_tokens: int) -> str:
    return f"{PRUNED_MARKER} Original length: ~{estimated_tokens} tokens."
