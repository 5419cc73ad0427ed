"""Small yes/no decisions delegated to a secondary model.

Each session first tries strict structured decoding. The first failure marks
the session as ``fallback`` for the rest of the run; from then on decisions
are decoded from free text by pulling out the outermost JSON object.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from termloop.cancellation import CancellationToken
from termloop.collaborators import TerminalTab
from termloop.errors import RunCancelledError, StructuredDecodingError
from termloop.messages import Message, Role
from termloop.model import ChatModel
from termloop.prompts import SPECIAL_USER_MARKERS, USER_INPUT_TAG, command_policy_prompt, write_stdin_policy_prompt
from termloop.retry import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAYS, invoke_with_retry

SPECIAL_HISTORY_LIMIT = 3
EXECUTION_TAIL_LIMIT = 10
OMITTED_MARKER = "... (some execution details omitted) ..."
POLICY_SYSTEM_PROMPT = "You are a policy engine for a terminal assistant. Answer only with the requested JSON object."


class CommandPolicyDecision(BaseModel):
    decision: Literal["wait", "nowait"] = Field(..., description="Block until the command ends, or not")
    reason: str = Field("", description="Short justification")


class WriteStdinPolicyDecision(BaseModel):
    decision: Literal["allow", "block"] = Field(..., description="Whether the input may be sent")
    reason: str = Field("", description="Short justification, or how to fix a blocked input")


@dataclass
class FallbackState:
    structured_disabled: bool = False
    triggered_by: str | None = None


class FallbackRegistry:
    """Per-session sticky fallback flags, scoped to one run."""

    def __init__(self) -> None:
        self._states: dict[str, FallbackState] = {}

    def begin(self, session_id: str) -> None:
        self._states[session_id] = FallbackState()

    def clear(self, session_id: str) -> None:
        self._states.pop(session_id, None)

    def is_fallback(self, session_id: str) -> bool:
        state = self._states.get(session_id)
        return state is not None and state.structured_disabled

    def mark_fallback(self, session_id: str, error: BaseException) -> None:
        state = self._states.setdefault(session_id, FallbackState())
        state.structured_disabled = True
        state.triggered_by = f"{type(error).__name__}: {error}"

    async def run[T](
        self,
        session_id: str,
        *,
        structured: Callable[[], Awaitable[T]],
        freeform: Callable[[], Awaitable[T]],
    ) -> T:
        if self.is_fallback(session_id):
            return await freeform()
        try:
            return await structured()
        except RunCancelledError:
            raise
        except Exception as exc:
            self.mark_fallback(session_id, exc)
            logger.warning("policy.fallback.enabled session={} error={!r}", session_id, exc)
            return await freeform()


def build_action_history(messages: Sequence[Message]) -> list[Message]:
    """Reduced history for policy decisions.

    The last few marker-tagged user messages (request, tab context, system
    info) plus the tail of execution since the latest user request.
    """

    special: list[Message] = []
    for message in reversed(messages):
        if len(special) >= SPECIAL_HISTORY_LIMIT:
            break
        if message.role is Role.USER and any(marker in message.content for marker in SPECIAL_USER_MARKERS):
            special.insert(0, message)

    last_request = -1
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.role is Role.USER and USER_INPUT_TAG in message.content:
            last_request = index
            break

    execution = list(messages[last_request + 1 :]) if last_request != -1 else []
    if len(execution) > EXECUTION_TAIL_LIMIT:
        execution = [Message.user(OMITTED_MARKER), *execution[-EXECUTION_TAIL_LIMIT:]]
    return [*special, *execution]


def parse_json_object(text: str) -> dict[str, object]:
    """Decode the outermost ``{...}`` object embedded in free text."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise StructuredDecodingError(f"no JSON object in reply: {text[:200]!r}")
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise StructuredDecodingError(f"invalid JSON in reply: {exc}") from exc
    if not isinstance(payload, dict):
        raise StructuredDecodingError("decoded JSON is not an object")
    return payload


class PolicyDecider:
    """Asks the action model for decisions, falling back to safe defaults."""

    def __init__(
        self,
        model: ChatModel | None,
        fallback: FallbackRegistry,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
    ) -> None:
        self._model = model
        self._fallback = fallback
        self._max_retries = max_retries
        self._retry_delays = tuple(retry_delays)

    async def decide_command(
        self,
        session_id: str,
        history: Sequence[Message],
        *,
        tab: TerminalTab,
        command: str,
        recent_output: str,
        token: CancellationToken,
    ) -> CommandPolicyDecision:
        return await self.decide(
            session_id,
            history,
            command_policy_prompt(tab, command, recent_output),
            CommandPolicyDecision,
            default=CommandPolicyDecision(decision="wait", reason="default: decision unavailable"),
            token=token,
        )

    async def decide_write_stdin(
        self,
        session_id: str,
        history: Sequence[Message],
        *,
        sequence: Sequence[str],
        token: CancellationToken,
    ) -> WriteStdinPolicyDecision:
        return await self.decide(
            session_id,
            history,
            write_stdin_policy_prompt(sequence),
            WriteStdinPolicyDecision,
            default=WriteStdinPolicyDecision(decision="allow", reason="default: decision unavailable"),
            token=token,
        )

    async def decide[T: BaseModel](
        self,
        session_id: str,
        history: Sequence[Message],
        prompt: Message,
        schema: type[T],
        *,
        default: T,
        token: CancellationToken,
    ) -> T:
        model = self._model
        if model is None:
            logger.warning("policy.decision.default session={} schema={} reason=no_model", session_id, schema.__name__)
            return default

        messages = [Message.system(POLICY_SYSTEM_PROMPT), *build_action_history(history), prompt]

        async def structured() -> T:
            decoder = model.with_structured_output(schema)
            return await self._retry(lambda _: decoder.invoke(messages, token=token), token, schema)

        async def freeform() -> T:
            async def attempt(_: int) -> T:
                reply = await model.invoke(messages, token=token)
                try:
                    return schema.model_validate(parse_json_object(reply.content))
                except ValidationError as exc:
                    raise StructuredDecodingError(str(exc)) from exc

            return await self._retry(attempt, token, schema)

        try:
            decision = await self._fallback.run(session_id, structured=structured, freeform=freeform)
        except RunCancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "policy.decision.default session={} schema={} error={!r}",
                session_id,
                schema.__name__,
                exc,
            )
            return default
        logger.info("policy.decision session={} schema={} decision={}", session_id, schema.__name__, decision)
        return decision

    async def _retry[T](
        self,
        operation: Callable[[int], Awaitable[T]],
        token: CancellationToken,
        schema: type[BaseModel],
    ) -> T:
        return await invoke_with_retry(
            operation,
            token=token,
            max_retries=self._max_retries,
            delays=self._retry_delays,
            label=f"policy {schema.__name__}",
        )
