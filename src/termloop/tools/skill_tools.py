"""Skill loading and authoring tools."""

from __future__ import annotations

from termloop.collaborators import SkillProvider
from termloop.events import SubToolFinishedEvent, SubToolStartedEvent, ToolCallEvent
from termloop.prompts import USEFUL_SKILL_TAG
from termloop.tools.context import ToolContext
from termloop.tools.schemas import CreateOrRewriteSkillArgs, SkillArgs


async def load_skill(ctx: ToolContext, args: SkillArgs, skills: SkillProvider) -> str:
    found = await ctx.token.guard(skills.read_skill_content_by_name(args.name))
    if found is None:
        available = await skills.get_enabled_skills()
        names = ", ".join(skill.name for skill in available) or "(none)"
        text = f'Skill "{args.name}" not found. Available skills: {names}'
        ctx.emit(ToolCallEvent(tool_name="skill", input=args.name, output=text, level="warning"))
        return text

    info, body = found
    ctx.emit(SubToolStartedEvent(title=f"Load skill {info.name}", hint=info.description, tool_name="skill"))
    ctx.emit(SubToolFinishedEvent())
    text = f"{USEFUL_SKILL_TAG}# {info.name}\n{info.description}\n\n{body}"
    if info.nested and info.path is not None:
        text += f"\n\n(Additional skill files are in {info.path.parent})"
    return text


async def create_or_rewrite_skill(ctx: ToolContext, args: CreateOrRewriteSkillArgs, skills: SkillProvider) -> str:
    info, action = await ctx.token.guard(skills.create_or_rewrite(args.name, args.description, args.content))
    location = f" at {info.path}" if info.path is not None else ""
    text = f'Skill "{info.name}" {action}{location}.'
    ctx.emit(ToolCallEvent(tool_name="create_or_rewrite_skill", input=args.name, output=text))
    return text
