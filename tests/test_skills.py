from pathlib import Path

import pytest

from termloop.skills import FileSkillService, parse_frontmatter, render_skill_file, slugify


def _write_skill(root: Path, folder: str, name: str, description: str, body: str = "Steps.") -> Path:
    skill_dir = root / folder
    skill_dir.mkdir(parents=True, exist_ok=True)
    path = skill_dir / "SKILL.md"
    path.write_text(render_skill_file(name, description, body), encoding="utf-8")
    return path


def test_parse_frontmatter() -> None:
    metadata, body = parse_frontmatter("---\nName: deploy\ndescription: Ship it\n---\n\n# Body\n")
    assert metadata == {"name": "deploy", "description": "Ship it"}
    assert body == "# Body"

    assert parse_frontmatter("no header") == ({}, "no header")
    assert parse_frontmatter("---\nname: [unclosed\n---\nbody")[0] == {}


def test_slugify() -> None:
    assert slugify("Docker Cleanup!") == "docker-cleanup"
    assert slugify("???") == "skill"


@pytest.mark.asyncio
async def test_project_skills_shadow_global_ones(tmp_path: Path) -> None:
    home = tmp_path / "home"
    workspace = tmp_path / "repo"
    _write_skill(home / "skills", "deploy", "deploy", "global deploy")
    _write_skill(workspace / ".termloop" / "skills", "deploy", "deploy", "project deploy")
    _write_skill(home / "skills", "backup", "backup", "nightly backup")
    (home / "skills" / "broken").mkdir()
    (home / "skills" / "broken" / "SKILL.md").write_text("no frontmatter", encoding="utf-8")

    service = FileSkillService(home, workspace)
    skills = await service.get_all()

    assert [(skill.name, skill.description) for skill in skills] == [
        ("backup", "nightly backup"),
        ("deploy", "project deploy"),
    ]


@pytest.mark.asyncio
async def test_disabled_skills_are_hidden(tmp_path: Path) -> None:
    _write_skill(tmp_path / "skills", "backup", "backup", "nightly backup", "Run restic.")
    service = FileSkillService(tmp_path)

    found = await service.read_skill_content_by_name("BACKUP")
    assert found is not None
    assert found[1] == "Run restic."

    service.set_enabled("backup", False)
    assert await service.get_enabled_skills() == []
    assert await service.read_skill_content_by_name("backup") is None
    assert len(await service.get_all()) == 1


@pytest.mark.asyncio
async def test_nested_skill_is_flagged(tmp_path: Path) -> None:
    path = _write_skill(tmp_path / "skills", "k8s", "k8s", "cluster ops")
    (path.parent / "reference.md").write_text("extra", encoding="utf-8")

    [skill] = await FileSkillService(tmp_path).get_all()

    assert skill.nested is True


@pytest.mark.asyncio
async def test_create_then_rewrite(tmp_path: Path) -> None:
    service = FileSkillService(tmp_path)

    info, action = await service.create_or_rewrite("Log Rotation", "rotate logs", "Use logrotate.")
    assert action == "created"
    assert info.path == tmp_path / "skills" / "log-rotation" / "SKILL.md"

    info, action = await service.create_or_rewrite("log rotation", "rotate logs weekly", "Use logrotate -f.")
    assert action == "rewritten"
    [skill] = await service.get_all()
    assert skill.description == "rotate logs weekly"
