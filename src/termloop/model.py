"""Model collaborator contract."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel

from termloop.cancellation import CancellationToken
from termloop.messages import Message, ToolCall


@dataclass(frozen=True)
class ToolDefinition:
    """Name, description and JSON schema of a tool bound to the model."""

    name: str
    description: str
    parameters: dict[str, Any]

    def schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


@dataclass
class ModelChunk:
    """One increment of model output; chunks concatenate with ``+``."""

    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_chunks: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, int] | None = None
    model_name: str | None = None

    def __add__(self, other: ModelChunk) -> ModelChunk:
        return ModelChunk(
            content=self.content + other.content,
            reasoning=self.reasoning + other.reasoning,
            tool_calls=[*self.tool_calls, *other.tool_calls],
            tool_call_chunks=[*self.tool_call_chunks, *other.tool_call_chunks],
            usage=other.usage or self.usage,
            model_name=other.model_name or self.model_name,
        )


class StructuredModel[T: BaseModel](Protocol):
    async def invoke(self, messages: Sequence[Message], *, token: CancellationToken) -> T: ...


class ChatModel(Protocol):
    """Streaming chat model with tool binding and structured output."""

    name: str

    def bind_tools(self, tools: Sequence[ToolDefinition]) -> ChatModel: ...

    def stream(self, messages: Sequence[Message], *, token: CancellationToken) -> AsyncIterator[ModelChunk]: ...

    async def invoke(self, messages: Sequence[Message], *, token: CancellationToken) -> ModelChunk: ...

    def with_structured_output[T: BaseModel](self, schema: type[T]) -> StructuredModel[T]: ...
