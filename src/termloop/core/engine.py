"""The run loop: a node table driven by a trampoline."""

from __future__ import annotations

import asyncio
import dataclasses
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Literal

from loguru import logger

from termloop.cancellation import CancellationToken
from termloop.collaborators import (
    CommandPolicy,
    ExternalToolProvider,
    InputEnrichment,
    SkillProvider,
    TerminalBackend,
)
from termloop.config import Settings
from termloop.core.executors import ExecutorDeps, ToolExecutors
from termloop.core.recovery import SessionRecovery
from termloop.core.state import EXECUTOR_NODES, Node, RunContext, RunState, StartMode, ToolRouter, build_transitions
from termloop.enrichment import InputEnricher
from termloop.errors import RecursionLimitError, RunCancelledError, extract_error_details
from termloop.events import (
    AgentEvent,
    DebugHistoryEvent,
    DoneEvent,
    ErrorEvent,
    EventSink,
    TokensCountEvent,
    UserInputEvent,
)
from termloop.logging_utils import session_context
from termloop.messages import Message, Role, to_persisted
from termloop.model import ChatModel
from termloop.planner import ToolCallPlanner
from termloop.policy import FallbackRegistry, PolicyDecider
from termloop.prompts import base_system_prompt, is_base_system_prompt, system_info_prompt, tab_context_prompt
from termloop.store import SessionStore
from termloop.streaming import StreamResponseHandler
from termloop.tokens import TokenManager, TokenState
from termloop.tools.context import FeedbackWaiter
from termloop.tools.registry import ToolRegistry, build_builtin_registry

RunStatus = Literal["completed", "cancelled", "failed"]
UiHistoryFlusher = Callable[[str], Awaitable[None]]
NodeHandler = Callable[[RunState, CancellationToken, StreamResponseHandler], Awaitable[None]]
INTERRUPTED_TOOL_RESULT = "Tool call was interrupted before it produced a result."


@dataclass(frozen=True)
class RunResult:
    """Outcome of one run."""

    session_id: str
    run_id: str
    status: RunStatus
    messages: tuple[Message, ...]
    node_visits: int
    final_text: str = ""
    error: str | None = None


class AgentEngine:
    """Drives one session's run through the node table until END."""

    def __init__(
        self,
        settings: Settings,
        *,
        model: ChatModel,
        terminal: TerminalBackend,
        command_policy: CommandPolicy,
        skills: SkillProvider,
        store: SessionStore,
        sink: EventSink,
        action_model: ChatModel | None = None,
        external_tools: ExternalToolProvider | None = None,
        enricher: InputEnrichment | None = None,
        registry: ToolRegistry | None = None,
        wait_for_feedback: FeedbackWaiter | None = None,
        flush_ui_history: UiHistoryFlusher | None = None,
        fallback: FallbackRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._model = model
        self._terminal = terminal
        self._skills = skills
        self._sink = sink
        self._external = external_tools
        self._enricher = enricher or InputEnricher(skills=skills, terminal=terminal)
        self._registry = registry or build_builtin_registry(image_inputs=settings.image_inputs)
        self._flush_ui_history = flush_ui_history
        self.fallback = fallback or FallbackRegistry()
        self.recovery = SessionRecovery(store, keep_debug=settings.debug_mode)

        self._tokens = TokenManager(settings.token_budget())
        self._planner = ToolCallPlanner()
        decider = PolicyDecider(
            action_model or model,
            self.fallback,
            max_retries=settings.model_max_retries,
            retry_delays=settings.model_retry_delays,
        )
        self._executors = ToolExecutors(
            self._registry,
            ExecutorDeps(
                terminal=terminal,
                command_policy=command_policy,
                decider=decider,
                skills=skills,
                sink=sink,
                policy_mode=settings.command_policy_mode,
                external=external_tools,
                wait_for_feedback=wait_for_feedback,
                image_inputs=settings.image_inputs,
            ),
        )
        router = ToolRouter(self._registry, enabled=settings.builtin_tools, external=external_tools)
        self._transitions = build_transitions(router)
        self._nodes: dict[Node, NodeHandler] = {
            Node.STARTUP: self._startup,
            Node.PRUNE_INITIAL: self._prune,
            Node.PRUNE_RUNTIME: self._prune,
            Node.MODEL_REQUEST: self._model_request,
            Node.PLAN_TOOL_CALLS: self._plan_tool_calls,
            Node.FINAL_OUTPUT: self._final_output,
        }
        for node in EXECUTOR_NODES:
            self._nodes[node] = partial(self._execute_tool, node)

    async def run(
        self,
        context: RunContext,
        text: str,
        token: CancellationToken,
        mode: StartMode | str = StartMode.NORMAL,
    ) -> RunResult:
        """Run the loop for one user input.

        A store read failure is raised before anything runs. Once the loop
        has started, the full log is checkpointed on every exit path.
        """
        stored = self.recovery.load(context.session_id)
        if not context.bound_terminal_id and stored.bound_terminal_id:
            context = dataclasses.replace(context, bound_terminal_id=stored.bound_terminal_id)
        state = RunState(
            context=context,
            startup_input=text,
            mode=StartMode(mode),
            working=list(stored.messages),
            full=list(stored.messages),
        )
        handler = StreamResponseHandler(
            session_id=context.session_id,
            sink=self._sink,
            max_retries=self._settings.model_max_retries,
            retry_delays=self._settings.model_retry_delays,
        )

        self.fallback.begin(context.session_id)
        with session_context(context.session_id):
            logger.info(
                "engine.run.start session={} run={} mode={} stored_messages={}",
                context.session_id,
                context.run_id,
                state.mode,
                len(stored.messages),
            )
            try:
                await self._drive(state, token, handler)
            except RunCancelledError as exc:
                self._checkpoint(state, handler)
                self._emit(state, DoneEvent())
                logger.info("engine.run.cancelled session={} reason={}", context.session_id, exc.reason)
                return self._result(state, "cancelled")
            except asyncio.CancelledError:
                self._checkpoint(state, handler)
                raise
            except Exception as exc:
                self._checkpoint(state, handler)
                logger.exception("engine.run.failed session={}", context.session_id)
                self._emit(state, ErrorEvent(content=str(exc), details=extract_error_details(exc)))
                self._emit(state, DoneEvent())
                return self._result(state, "failed", error=str(exc))
            finally:
                self.fallback.clear(context.session_id)

            self._checkpoint(state, handler)
            logger.info("engine.run.end session={} visits={}", context.session_id, state.node_visits)
            return self._result(state, "completed")

    async def _drive(self, state: RunState, token: CancellationToken, handler: StreamResponseHandler) -> None:
        limit = self._settings.recursion_limit
        node = Node.STARTUP
        while node is not Node.END:
            token.raise_if_cancelled()
            state.node_visits += 1
            if state.node_visits > limit:
                raise RecursionLimitError(f"recursion limit of {limit} node visits reached at {node}")
            logger.debug("engine.node.enter node={} visit={}", node, state.node_visits)
            await self._nodes[node](state, token, handler)
            node = self._transitions[node](state)

    async def _startup(self, state: RunState, token: CancellationToken, _: StreamResponseHandler) -> None:
        inserted = state.mode is StartMode.INSERTED
        enriched, display = await token.guard(self._enricher.enrich(state.startup_input, inserted=inserted))
        user = Message.user(enriched, metadata={"original_input": display, "input_kind": state.mode.value})
        self._emit(state, UserInputEvent(content=display, input_kind=state.mode.value, message_id=user.id))

        if not any(is_base_system_prompt(message) for message in state.full):
            system = base_system_prompt()
            state.working.insert(0, system)
            state.full.insert(0, system)

        if inserted:
            state.append(user)
        else:
            state.append(*self._environment_snapshot(state.context.bound_terminal_id), user)

        state.token_state = TokenState(
            current_tokens=self._tokens.estimate_messages(state.working),
            max_tokens=self._settings.context_window(),
        )

    def _environment_snapshot(self, bound_terminal_id: str) -> list[Message]:
        tabs = self._terminal.list_terminals()
        tab = next((item for item in tabs if item.id == bound_terminal_id), None)
        recent = self._terminal.get_recent_output(tab.id) if tab is not None else ""
        return [system_info_prompt(tabs), tab_context_prompt(tab, recent)]

    async def _prune(self, state: RunState, _token: CancellationToken, _: StreamResponseHandler) -> None:
        tokens = state.token_state
        if not self._tokens.is_overflow(tokens.current_tokens, tokens.max_tokens):
            return
        pruned = self._tokens.prune(state.working)
        if pruned is state.working:
            logger.info("engine.prune.skipped current={} max={}", tokens.current_tokens, tokens.max_tokens)
            return
        state.working = pruned
        state.token_state = tokens.update(current_tokens=self._tokens.estimate_messages(pruned))
        logger.info(
            "engine.prune.applied before={} after={}",
            tokens.current_tokens,
            state.token_state.current_tokens,
        )

    async def _model_request(
        self,
        state: RunState,
        token: CancellationToken,
        handler: StreamResponseHandler,
    ) -> None:
        skills = await token.guard(self._skills.get_enabled_skills())
        tools = self._registry.definitions(enabled=self._settings.builtin_tools, skills=skills)
        if self._external is not None:
            tools.extend(self._external.get_active_tools())
        model = self._model.bind_tools(tools)

        message = await handler.request(model, state.working, token=token)
        state.append(message)
        state.pending.clear()

        total = message.total_tokens
        current = total if total is not None else self._tokens.estimate_messages(state.working)
        state.token_state = state.token_state.update(current_tokens=current)
        if total is not None:
            self._emit(
                state,
                TokensCountEvent(
                    model_name=message.metadata.get("model_name"),
                    total_tokens=total,
                    max_tokens=state.token_state.max_tokens,
                    message_id=message.id,
                ),
            )

    async def _plan_tool_calls(self, state: RunState, _token: CancellationToken, _: StreamResponseHandler) -> None:
        message = state.last_assistant()
        if message is None:
            state.pending.clear()
            return
        state.pending = deque(self._planner.plan(message).queue)

    async def _execute_tool(
        self,
        node: Node,
        state: RunState,
        token: CancellationToken,
        _: StreamResponseHandler,
    ) -> None:
        result, *attached = await self._executors.run(node, state, token)
        state.pending.popleft()
        state.append(result)
        state.deferred.extend(attached)
        if not state.pending:
            state.flush_deferred()
        grown = state.token_state.current_tokens + sum(
            self._tokens.estimate(message.content) for message in (result, *attached)
        )
        state.token_state = state.token_state.update(current_tokens=grown)

    async def _final_output(self, state: RunState, _token: CancellationToken, _: StreamResponseHandler) -> None:
        # calls left here were routed away as disabled; each still needs a result
        while state.pending:
            call = state.pending.popleft()
            state.append(Message.tool_result(call, f'Tool "{call.name}" is disabled.'))
        state.flush_deferred()

        if self._flush_ui_history is not None:
            try:
                await self._flush_ui_history(state.session_id)
            except RunCancelledError:
                raise
            except Exception as exc:
                logger.warning("engine.flush_ui_history.failed session={} error={!r}", state.session_id, exc)

        if self._settings.debug_mode:
            history = [message.model_dump(mode="json") for message in state.working]
            self._emit(state, DebugHistoryEvent(history=history))
        self._emit(state, DoneEvent())

    def _checkpoint(self, state: RunState, handler: StreamResponseHandler) -> None:
        self._close_unanswered_calls(state)
        aborted = handler.aborted_message
        if aborted is not None:
            state.full.append(aborted)
            handler.aborted_message = None
        self.recovery.persist(state.session_id, state.context.bound_terminal_id, state.full)

    def _close_unanswered_calls(self, state: RunState) -> None:
        # a stored assistant tool call without a result is rejected by providers on the next run
        assistant = next((message for message in reversed(state.full) if message.role is Role.ASSISTANT), None)
        if assistant is None or not assistant.tool_calls:
            return
        answered = {message.tool_call_id for message in state.full if message.role is Role.TOOL}
        for call in assistant.tool_calls:
            if call.id not in answered:
                state.append(Message.tool_result(call, INTERRUPTED_TOOL_RESULT))
        state.pending.clear()
        state.flush_deferred()

    def _result(self, state: RunState, status: RunStatus, *, error: str | None = None) -> RunResult:
        last = next((message for message in reversed(state.full) if message.role is Role.ASSISTANT), None)
        return RunResult(
            session_id=state.session_id,
            run_id=state.context.run_id,
            status=status,
            messages=tuple(to_persisted(state.full, keep_debug=self._settings.debug_mode)),
            node_visits=state.node_visits,
            final_text=last.content if last is not None else "",
            error=error,
        )

    def _emit(self, state: RunState, event: AgentEvent) -> None:
        self._sink.send_event(state.session_id, event)
