"""Engine bootstrap helpers."""

from __future__ import annotations

from termloop.collaborators import CommandPolicy, ExternalToolProvider, TerminalBackend
from termloop.config import Settings
from termloop.core.engine import AgentEngine, UiHistoryFlusher
from termloop.events import EventSink
from termloop.integrations.republic_client import RepublicChatModel
from termloop.skills import FileSkillService
from termloop.store import FileSessionStore
from termloop.tools.context import FeedbackWaiter


def build_engine(
    settings: Settings,
    *,
    terminal: TerminalBackend,
    command_policy: CommandPolicy,
    sink: EventSink,
    external_tools: ExternalToolProvider | None = None,
    wait_for_feedback: FeedbackWaiter | None = None,
    flush_ui_history: UiHistoryFlusher | None = None,
) -> AgentEngine:
    """Build an engine with the Republic models, file skills and file store for ``settings``.

    The action model gets its own client only when one is configured.
    """

    home = settings.resolve_home()
    action_model = RepublicChatModel.from_settings(settings, action=True) if settings.action_model else None
    return AgentEngine(
        settings,
        model=RepublicChatModel.from_settings(settings),
        action_model=action_model,
        terminal=terminal,
        command_policy=command_policy,
        skills=FileSkillService(home, settings.workspace),
        store=FileSessionStore(home),
        sink=sink,
        external_tools=external_tools,
        wait_for_feedback=wait_for_feedback,
        flush_ui_history=flush_ui_history,
    )
