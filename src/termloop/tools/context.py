"""Per-call execution context shared by tool implementations."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from termloop.cancellation import CancellationToken
from termloop.collaborators import TerminalBackend, TerminalTab
from termloop.errors import ToolExecutionError
from termloop.events import AgentEvent, EventSink
from termloop.messages import Message

FeedbackWaiter = Callable[[str], Awaitable[Any]]


@dataclass
class ToolContext:
    session_id: str
    message_id: str
    token: CancellationToken
    terminal: TerminalBackend
    sink: EventSink
    history: Sequence[Message] = ()
    wait_for_feedback: FeedbackWaiter | None = None
    image_inputs: bool = False
    attachments: list[Message] = field(default_factory=list)

    def attach(self, *messages: Message) -> None:
        """Queue messages to follow this call's tool result."""
        self.attachments.extend(messages)

    def emit(self, event: AgentEvent) -> None:
        if event.message_id is None:
            event = event.model_copy(update={"message_id": self.message_id})
        self.sink.send_event(self.session_id, event)

    def resolve_tab(self, id_or_name: str) -> TerminalTab:
        """Resolve a tab or raise with the text the model should see."""
        match = self.terminal.resolve_terminal(id_or_name)
        if match.best_match is not None:
            return match.best_match
        if len(match.matches) > 1:
            ids = ", ".join(tab.id for tab in match.matches)
            raise ToolExecutionError(
                f'Error: Multiple terminal tabs found with name "{id_or_name}". Please use a specific Tab ID: {ids}'
            )
        raise ToolExecutionError(f'Error: Terminal tab "{id_or_name}" not found.')


def tab_label(tab: TerminalTab) -> str:
    return tab.title or tab.id
