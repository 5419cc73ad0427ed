"""Skill discovery and authoring on the local filesystem."""

from __future__ import annotations

import re
from pathlib import Path

import yaml
from loguru import logger

from termloop.collaborators import SkillInfo

PROJECT_SKILLS_DIR = ".termloop/skills"
SKILL_FILE_NAME = "SKILL.md"
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _SLUG_RE.sub("-", name.casefold()).strip("-") or "skill"


def parse_frontmatter(content: str) -> tuple[dict[str, object], str]:
    """Split ``---`` YAML frontmatter from the markdown body."""
    lines = content.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, content

    for idx, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            payload = "\n".join(lines[1:idx])
            body = "\n".join(lines[idx + 1 :]).lstrip("\n")
            try:
                parsed = yaml.safe_load(payload)
            except yaml.YAMLError:
                return {}, body
            if isinstance(parsed, dict):
                return {str(key).lower(): value for key, value in parsed.items()}, body
            return {}, body
    return {}, content


def render_skill_file(name: str, description: str, content: str) -> str:
    header = yaml.safe_dump({"name": name, "description": description}, allow_unicode=True, sort_keys=False)
    return f"---\n{header}---\n\n{content.strip()}\n"


def _is_valid(metadata: dict[str, object]) -> bool:
    name = metadata.get("name")
    description = metadata.get("description")
    if not isinstance(name, str) or not name.strip() or len(name.strip()) > 64:
        return False
    return isinstance(description, str) and bool(description.strip()) and len(description.strip()) <= 1024


class FileSkillService:
    """Skills stored as ``<root>/<slug>/SKILL.md``.

    Project skills under the workspace shadow global skills of the same name.
    New skills are written to the global root.
    """

    def __init__(self, home: Path, workspace: Path | None = None) -> None:
        self.global_root = home / "skills"
        self.project_root = workspace / PROJECT_SKILLS_DIR if workspace is not None else None
        self._disabled: set[str] = set()

    def roots(self) -> list[Path]:
        roots = [self.global_root]
        if self.project_root is not None:
            roots.insert(0, self.project_root)
        return roots

    def discover(self) -> list[SkillInfo]:
        skills: dict[str, SkillInfo] = {}
        for root in self.roots():
            if not root.is_dir():
                continue
            for skill_dir in sorted(root.iterdir()):
                if not skill_dir.is_dir():
                    continue
                info = self._read_info(skill_dir)
                if info is not None:
                    skills.setdefault(info.name.casefold(), info)
        return sorted(skills.values(), key=lambda item: item.name.casefold())

    def _read_info(self, skill_dir: Path) -> SkillInfo | None:
        skill_file = skill_dir / SKILL_FILE_NAME
        if not skill_file.is_file():
            return None
        try:
            content = skill_file.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("skills.read.failed path={} error={}", skill_file, exc)
            return None
        metadata, _ = parse_frontmatter(content)
        if not _is_valid(metadata):
            return None
        nested = any(path.name != SKILL_FILE_NAME for path in skill_dir.iterdir())
        return SkillInfo(
            name=str(metadata["name"]).strip(),
            description=str(metadata["description"]).strip(),
            path=skill_file,
            nested=nested,
        )

    def set_enabled(self, name: str, enabled: bool) -> None:
        key = name.casefold()
        if enabled:
            self._disabled.discard(key)
        else:
            self._disabled.add(key)

    async def get_all(self) -> list[SkillInfo]:
        return self.discover()

    async def get_enabled_skills(self) -> list[SkillInfo]:
        return [skill for skill in self.discover() if skill.name.casefold() not in self._disabled]

    async def read_skill_content_by_name(self, name: str) -> tuple[SkillInfo, str] | None:
        lowered = name.strip().casefold()
        for skill in await self.get_enabled_skills():
            if skill.name.casefold() != lowered or skill.path is None:
                continue
            _, body = parse_frontmatter(skill.path.read_text(encoding="utf-8"))
            return skill, body
        return None

    async def create_or_rewrite(self, name: str, description: str, content: str) -> tuple[SkillInfo, str]:
        existing = next(
            (skill for skill in self.discover() if skill.name.casefold() == name.strip().casefold()),
            None,
        )
        if existing is not None and existing.path is not None:
            skill_file = existing.path
            action = "rewritten"
        else:
            skill_file = self.global_root / slugify(name) / SKILL_FILE_NAME
            action = "created"
        skill_file.parent.mkdir(parents=True, exist_ok=True)
        skill_file.write_text(render_skill_file(name.strip(), description.strip(), content), encoding="utf-8")
        logger.info("skills.write name={} action={} path={}", name, action, skill_file)
        return SkillInfo(name=name.strip(), description=description.strip(), path=skill_file), action
