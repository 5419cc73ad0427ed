"""Argument models for the built-in tools and their validation boundary."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from termloop.errors import ToolArgumentsError

READ_TERMINAL_DEFAULT_LINES = 100
READ_LIMIT_DEFAULT = 2000


class ExecCommandArgs(BaseModel):
    tab_id_or_name: str = Field(..., min_length=1, description="Terminal tab id or name")
    command: str = Field(..., min_length=1, description="Shell command to run")


class ReadTerminalTabArgs(BaseModel):
    tab_id_or_name: str = Field(..., min_length=1, description="Terminal tab id or name")
    lines: int = Field(READ_TERMINAL_DEFAULT_LINES, ge=1, description="Number of recent lines to read")


class ReadCommandOutputArgs(BaseModel):
    tab_id_or_name: str = Field(..., min_length=1, description="Terminal tab id or name")
    history_command_match_id: str = Field(..., min_length=1, description="Id of the tracked command")
    offset: int = Field(0, ge=0, description="0-based line offset")
    limit: int = Field(READ_LIMIT_DEFAULT, ge=1, description="Maximum number of lines")


class WriteStdinArgs(BaseModel):
    tab_id_or_name: str = Field(..., min_length=1, description="Terminal tab id or name")
    sequence: list[str] = Field(..., min_length=1, description="Text items and C0 control names, sent in order")


class WaitArgs(BaseModel):
    seconds: int = Field(..., ge=5, le=60, description="Seconds to wait")


class WaitTerminalArgs(BaseModel):
    tab_id_or_name: str = Field(..., min_length=1, description="Terminal tab id or name")


class CreateOrEditArgs(BaseModel):
    """Write mode when ``content`` is given; edit mode otherwise."""

    tab_id_or_name: str = Field(..., min_length=1, description="Terminal tab whose host owns the file")
    file_path: str = Field(..., min_length=1, description="Path of the file")
    content: str | None = Field(None, description="Full new content (write mode)")
    old_string: str | None = Field(None, description="Text to replace (edit mode)")
    new_string: str | None = Field(None, description="Replacement text (edit mode)")
    replace_all: bool = Field(False, description="Replace every occurrence of old_string")

    @model_validator(mode="after")
    def _check_mode(self) -> CreateOrEditArgs:
        editing = self.old_string is not None or self.new_string is not None
        if self.content is not None and editing:
            raise ValueError("pass either content or old_string/new_string, not both")
        if self.content is None:
            if self.old_string is None or self.new_string is None:
                raise ValueError("edit mode needs both old_string and new_string")
            if self.old_string == self.new_string:
                raise ValueError("old_string and new_string must differ")
        return self


class ReadFileArgs(BaseModel):
    tab_id_or_name: str = Field(..., min_length=1, description="Terminal tab whose host owns the file")
    file_path: str = Field(..., min_length=1, description="Path of the file")
    offset: int = Field(0, ge=0, description="0-based line offset")
    limit: int = Field(READ_LIMIT_DEFAULT, ge=1, description="Maximum number of lines")


class SkillArgs(BaseModel):
    name: str = Field(..., min_length=1, description="Skill name")


class CreateOrRewriteSkillArgs(BaseModel):
    name: str = Field(..., min_length=1, max_length=64, description="Skill name")
    description: str = Field(..., min_length=1, max_length=1024, description="One-line summary")
    content: str = Field(..., min_length=1, description="Markdown body of the skill")

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


@dataclass(frozen=True)
class Ok[T]:
    value: T


@dataclass(frozen=True)
class Err:
    error: ToolArgumentsError


type ArgsResult[T] = Ok[T] | Err


def validate_tool_args[T: BaseModel](tool_name: str, model: type[T], raw: dict[str, Any]) -> ArgsResult[T]:
    """Validate raw model-supplied arguments without raising."""
    try:
        return Ok(model.model_validate(raw))
    except ValidationError as exc:
        detail = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'arguments'}: {error['msg']}" for error in exc.errors()
        )
        return Err(ToolArgumentsError(tool_name, detail))
