"""Unified registry of built-in tools."""

from __future__ import annotations

import builtins
import json
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from loguru import logger
from pydantic import BaseModel

from termloop.collaborators import SkillInfo
from termloop.model import ToolDefinition
from termloop.prompts import TOOL_DESCRIPTIONS, read_file_description, skill_tool_description
from termloop.tools import schemas


class ToolRoute(StrEnum):
    """Which executor handles a tool."""

    GENERIC = "generic"
    COMMAND = "command"
    FILE_EDIT = "file_edit"
    READ_FILE = "read_file"


def _shorten_text(text: str, width: int = 30, placeholder: str = "...") -> str:
    """Shorten text to width characters, cutting mid-word if needed."""
    if len(text) <= width:
        return text

    available = width - len(placeholder)
    if available <= 0:
        return placeholder

    return text[:available] + placeholder


@dataclass(frozen=True)
class ToolDescriptor:
    """Tool metadata and the executor route."""

    name: str
    args_model: type[BaseModel]
    route: ToolRoute
    description: str = ""
    describe: Callable[[Sequence[SkillInfo]], str] | None = None

    def definition(self, skills: Sequence[SkillInfo] = ()) -> ToolDefinition:
        description = self.describe(skills) if self.describe is not None else self.description
        return ToolDefinition(
            name=self.name,
            description=description,
            parameters=self.args_model.model_json_schema(),
        )


class ToolRegistry:
    """Registry for built-in tools."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise ValueError(f"Duplicate tool name: {descriptor.name}")
        self._tools[descriptor.name] = descriptor

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def descriptors(self) -> builtins.list[ToolDescriptor]:
        return sorted(self._tools.values(), key=lambda item: item.name)

    def definitions(
        self,
        *,
        enabled: Mapping[str, bool] | None = None,
        skills: Sequence[SkillInfo] = (),
    ) -> builtins.list[ToolDefinition]:
        """Definitions of every tool not switched off in ``enabled``."""
        enabled = enabled or {}
        return [
            descriptor.definition(skills)
            for descriptor in self.descriptors()
            if enabled.get(descriptor.name, True)
        ]

    @contextmanager
    def track_call(self, name: str, kwargs: Mapping[str, Any], session_id: str) -> Iterator[None]:
        self._log_tool_call(name, kwargs, session_id)
        start = time.monotonic()
        try:
            yield
        except Exception:
            logger.exception("tool.call.error name={}", name)
            raise
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} duration={:.3f}ms", name, duration * 1000)

    def _log_tool_call(self, name: str, kwargs: Mapping[str, Any], session_id: str) -> None:
        params: list[str] = []
        for key, value in kwargs.items():
            try:
                rendered = json.dumps(value, ensure_ascii=False)
            except TypeError:
                rendered = repr(value)
            value = _shorten_text(rendered, width=30, placeholder="...")
            if value.startswith('"') and not value.endswith('"'):
                value = value + '"'
            if value.startswith("{") and not value.endswith("}"):
                value = value + "}"
            if value.startswith("[") and not value.endswith("]"):
                value = value + "]"
            params.append(f"{key}={value}")
        logger.info("tool.call.start name={} session={} {{ {} }}", name, session_id, ", ".join(params))


def build_builtin_registry(*, image_inputs: bool = False) -> ToolRegistry:
    registry = ToolRegistry()
    generic = ToolRoute.GENERIC
    for name, args_model, route in (
        ("exec_command", schemas.ExecCommandArgs, ToolRoute.COMMAND),
        ("read_terminal_tab", schemas.ReadTerminalTabArgs, generic),
        ("read_command_output", schemas.ReadCommandOutputArgs, generic),
        ("write_stdin", schemas.WriteStdinArgs, generic),
        ("wait", schemas.WaitArgs, generic),
        ("wait_terminal_idle", schemas.WaitTerminalArgs, generic),
        ("wait_command_end", schemas.WaitTerminalArgs, generic),
        ("create_or_edit", schemas.CreateOrEditArgs, ToolRoute.FILE_EDIT),
        ("create_or_rewrite_skill", schemas.CreateOrRewriteSkillArgs, generic),
    ):
        registry.register(
            ToolDescriptor(name=name, args_model=args_model, route=route, description=TOOL_DESCRIPTIONS[name])
        )
    registry.register(
        ToolDescriptor(
            name="read_file",
            args_model=schemas.ReadFileArgs,
            route=ToolRoute.READ_FILE,
            description=read_file_description(image_inputs),
        )
    )
    registry.register(
        ToolDescriptor(name="skill", args_model=schemas.SkillArgs, route=generic, describe=skill_tool_description)
    )
    return registry
