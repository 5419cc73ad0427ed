"""Conversation message model shared by the working set and the full log."""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCall(BaseModel):
    """One tool call proposed by the model."""

    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    name: str
    args: dict[str, Any] | str = Field(default_factory=dict)

    def parsed_args(self) -> dict[str, Any]:
        """Arguments as a mapping; undecodable strings yield an empty mapping."""
        if isinstance(self.args, dict):
            return self.args
        if not self.args.strip():
            return {}
        try:
            decoded = json.loads(self.args)
        except json.JSONDecodeError:
            return {}
        return decoded if isinstance(decoded, dict) else {}


class Message(BaseModel):
    """A system, user, assistant or tool-result message.

    ``ephemeral`` messages (environment snapshots) live in memory only and are
    dropped by ``to_persisted``. ``aborted`` marks a partial assistant reply
    captured when a stream was interrupted.
    """

    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str = ""
    content_parts: list[dict[str, Any]] = Field(default_factory=list)
    name: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    invalid_tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    tool_call_chunks: list[dict[str, Any]] = Field(default_factory=list)
    tool_call_id: str | None = None
    reasoning_content: str | None = None
    usage: dict[str, int] | None = None
    ephemeral: bool = False
    aborted: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def system(cls, content: str, **kwargs: Any) -> Message:
        return cls(role=Role.SYSTEM, content=content, **kwargs)

    @classmethod
    def user(cls, content: str, **kwargs: Any) -> Message:
        return cls(role=Role.USER, content=content, **kwargs)

    @classmethod
    def assistant(cls, content: str = "", **kwargs: Any) -> Message:
        return cls(role=Role.ASSISTANT, content=content, **kwargs)

    @classmethod
    def tool_result(cls, call: ToolCall, content: str, **kwargs: Any) -> Message:
        return cls(role=Role.TOOL, content=content, name=call.name, tool_call_id=call.id, **kwargs)

    @property
    def total_tokens(self) -> int | None:
        if not self.usage:
            return None
        return self.usage.get("total_tokens")

    def to_model_input(self) -> dict[str, Any]:
        """Chat-completions style payload for a provider adapter."""
        payload: dict[str, Any] = {"role": self.role.value, "content": self.content_parts or self.content}
        if self.role is Role.ASSISTANT and self.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": call.args
                        if isinstance(call.args, str)
                        else json.dumps(call.args, ensure_ascii=False),
                    },
                }
                for call in self.tool_calls
            ]
        if self.role is Role.TOOL:
            payload["tool_call_id"] = self.tool_call_id
            if self.name:
                payload["name"] = self.name
        return payload


def to_persisted(messages: Iterable[Message], *, keep_debug: bool = False) -> list[Message]:
    """Filter a working set or full log down to what goes to durable storage."""

    persisted: list[Message] = []
    for message in messages:
        if message.ephemeral:
            continue
        if not keep_debug and "raw_response" in message.metadata:
            metadata = {key: value for key, value in message.metadata.items() if key != "raw_response"}
            message = message.model_copy(update={"metadata": metadata})
        persisted.append(message)
    return persisted
