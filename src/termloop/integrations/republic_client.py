"""Republic integration: a streaming ``ChatModel`` on top of ``republic.LLM``."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError
from republic import LLM, Tool, tool_from_model

from termloop.cancellation import CancellationToken
from termloop.config import Settings
from termloop.errors import ModelNotConfiguredError, ModelStreamError, StructuredDecodingError
from termloop.messages import Message, ToolCall
from termloop.model import ModelChunk, ToolDefinition

MODEL_NOT_CONFIGURED_ERROR = "No model configured. Set TERMLOOP_MODEL, e.g. 'openai:gpt-4o'."
DECISION_TOOL_DESCRIPTION = "Report the decision. Always call this tool exactly once."


def build_llm(settings: Settings, *, model: str | None = None) -> LLM:
    """Build a Republic LLM client for the given (or primary) model."""

    resolved = model or settings.model
    if not resolved:
        raise ModelNotConfiguredError(MODEL_NOT_CONFIGURED_ERROR)
    return LLM(resolved, api_key=settings.api_key, api_base=settings.api_base)


def _deferred(*_: Any, **__: Any) -> None:
    # tool calls are executed by the run loop, not by republic
    return None


def _to_republic_tool(definition: ToolDefinition) -> Tool:
    return Tool(
        name=definition.name,
        description=definition.description,
        parameters=definition.parameters,
        handler=_deferred,
    )


def tool_call_from_payload(payload: Mapping[str, Any], index: int = 0) -> ToolCall:
    """Chat-completions tool call dict to a ``ToolCall``."""
    function = payload.get("function")
    if not isinstance(function, Mapping):
        function = payload
    arguments = function.get("arguments")
    return ToolCall(
        id=payload.get("id") or f"call_{index}",
        name=function.get("name") or "",
        args=arguments if isinstance(arguments, (str, dict)) else "",
    )


def _usage(value: Any) -> dict[str, int] | None:
    if not isinstance(value, Mapping):
        return None
    fields = ("prompt_tokens", "completion_tokens", "total_tokens")
    extracted = {name: int(item) for name in fields if isinstance(item := value.get(name), int)}
    return extracted or None


def _error_text(error: Any) -> str:
    if isinstance(error, Mapping):
        kind, message = error.get("kind"), error.get("message")
    else:
        kind, message = getattr(error, "kind", None), getattr(error, "message", None)
    kind = getattr(kind, "value", kind)
    if isinstance(kind, str) and isinstance(message, str):
        return f"{kind}: {message}"
    if isinstance(message, str):
        return message
    return str(error)


async def chunks_from_stream_events(stream: Any, *, model_name: str | None = None) -> AsyncIterator[ModelChunk]:
    """Translate republic stream events into model chunks.

    Text deltas are yielded as they arrive. Tool calls come from ``tool_call``
    events, or from the final event when the stream carried none. Usage is
    yielded once at the end.
    """
    seen_calls = 0
    usage: dict[str, int] | None = None
    final: Mapping[str, Any] | None = None
    async for event in stream:
        kind = getattr(event, "kind", None)
        data = getattr(event, "data", None)
        if not isinstance(data, Mapping):
            continue
        if kind == "text":
            delta = data.get("delta")
            if isinstance(delta, str) and delta:
                yield ModelChunk(content=delta)
        elif kind == "tool_call":
            call = data.get("call")
            if isinstance(call, Mapping):
                yield ModelChunk(tool_calls=[tool_call_from_payload(call, data.get("index", seen_calls))])
                seen_calls += 1
        elif kind == "usage":
            usage = _usage(data) or usage
        elif kind == "error":
            raise ModelStreamError(_error_text(data))
        elif kind == "final":
            final = data

    stream_error = getattr(stream, "error", None)
    if stream_error is not None:
        raise ModelStreamError(_error_text(stream_error))
    if final is None:
        raise ModelStreamError("stream ended without a final event")
    if final.get("ok") is False:
        raise ModelStreamError("model call failed")
    if not seen_calls:
        calls = [
            tool_call_from_payload(call, index)
            for index, call in enumerate(final.get("tool_calls") or [])
            if isinstance(call, Mapping)
        ]
        if calls:
            yield ModelChunk(tool_calls=calls)
    yield ModelChunk(usage=_usage(final.get("usage")) or usage, model_name=model_name)


class RepublicChatModel:
    """Adapts ``LLM.stream_events_async`` to the streaming chat-model contract."""

    def __init__(
        self,
        llm: LLM,
        *,
        name: str,
        max_tokens: int | None = None,
        tools: Sequence[Tool] = (),
    ) -> None:
        self._llm = llm
        self.name = name
        self._max_tokens = max_tokens
        self._tools = list(tools)

    @classmethod
    def from_settings(cls, settings: Settings, *, action: bool = False) -> RepublicChatModel:
        model = settings.resolved_action_model() if action else settings.model
        llm = build_llm(settings, model=model)
        return cls(llm, name=model or "", max_tokens=settings.max_output_tokens)

    def bind_tools(self, tools: Sequence[ToolDefinition]) -> RepublicChatModel:
        return RepublicChatModel(
            self._llm,
            name=self.name,
            max_tokens=self._max_tokens,
            tools=[_to_republic_tool(definition) for definition in tools],
        )

    async def stream(self, messages: Sequence[Message], *, token: CancellationToken) -> AsyncIterator[ModelChunk]:
        async for chunk in self.stream_with_tools(messages, self._tools, token=token):
            yield chunk

    async def invoke(self, messages: Sequence[Message], *, token: CancellationToken) -> ModelChunk:
        merged = ModelChunk()
        async for chunk in self.stream(messages, token=token):
            merged = merged + chunk
        return merged

    def with_structured_output[T: BaseModel](self, schema: type[T]) -> StructuredDecoder[T]:
        return StructuredDecoder(self, schema)

    async def stream_with_tools(
        self,
        messages: Sequence[Message],
        tools: Sequence[Tool],
        *,
        token: CancellationToken,
    ) -> AsyncIterator[ModelChunk]:
        payload = [message.to_model_input() for message in messages]
        logger.debug("republic.chat.request model={} messages={} tools={}", self.name, len(payload), len(tools))
        kwargs: dict[str, Any] = {"messages": payload, "max_tokens": self._max_tokens}
        if tools:
            kwargs["tools"] = list(tools)
        stream = await token.guard(self._llm.stream_events_async(**kwargs))
        async for chunk in token.iterate(chunks_from_stream_events(stream, model_name=self.name)):
            yield chunk


class StructuredDecoder[T: BaseModel]:
    """Structured output by forcing a single decision tool call."""

    def __init__(self, model: RepublicChatModel, schema: type[T]) -> None:
        self._model = model
        self._schema = schema
        self._tool = tool_from_model(
            schema,
            lambda params: params,
            name=f"report_{schema.__name__.lower()}",
            description=DECISION_TOOL_DESCRIPTION,
        )

    async def invoke(self, messages: Sequence[Message], *, token: CancellationToken) -> T:
        merged = ModelChunk()
        async for chunk in self._model.stream_with_tools(messages, [self._tool], token=token):
            merged = merged + chunk
        call = next((item for item in merged.tool_calls if item.name == self._tool.name), None)
        if call is None:
            raise StructuredDecodingError(f"model did not call {self._tool.name}")
        try:
            if isinstance(call.args, str):
                return self._schema.model_validate_json(call.args or "{}")
            return self._schema.model_validate(call.args)
        except ValidationError as exc:
            raise StructuredDecodingError(str(exc)) from exc
