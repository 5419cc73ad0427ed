from pathlib import Path

import pytest
from typer.testing import CliRunner

from termloop.cli import app
from termloop.messages import Message
from termloop.store import FileSessionStore, StoredSession

runner = CliRunner()


@pytest.fixture
def seeded(home: Path, store: FileSessionStore) -> list[Message]:
    messages = [Message.user("clean docker"), Message.assistant("Done", aborted=True), Message.user("thanks")]
    store.save_session(StoredSession(id="s1", title="Docker", messages=messages))
    return messages


def test_list_without_sessions(home: Path) -> None:
    result = runner.invoke(app, ["sessions", "list", "--home", str(home)])

    assert result.exit_code == 0
    assert "No sessions." in result.output


def test_list_and_show(home: Path, seeded: list[Message]) -> None:
    listed = runner.invoke(app, ["sessions", "list", "--home", str(home)])
    shown = runner.invoke(app, ["sessions", "show", "s1", "--home", str(home)])

    assert listed.exit_code == 0
    assert "Docker" in listed.output
    assert shown.exit_code == 0
    assert "clean docker" in shown.output
    assert "[aborted]" in shown.output


def test_export_prints_json(home: Path, seeded: list[Message]) -> None:
    result = runner.invoke(app, ["sessions", "export", "s1", "--home", str(home)])

    assert result.exit_code == 0
    assert '"title": "Docker"' in result.output
    assert '"content": "thanks"' in result.output


def test_rename_rollback_delete(home: Path, store: FileSessionStore, seeded: list[Message]) -> None:
    renamed = runner.invoke(app, ["sessions", "rename", "s1", "Containers", "--home", str(home)])
    rolled = runner.invoke(app, ["sessions", "rollback", "s1", seeded[1].id, "--home", str(home)])
    deleted = runner.invoke(app, ["sessions", "delete", "s1", "--archive", "--home", str(home)])

    assert renamed.exit_code == 0
    assert "Removed 2 message(s) from s1." in rolled.output
    assert "Archived s1." in deleted.output
    assert store.load_session("s1") is None


def test_missing_session_exits_with_error(home: Path) -> None:
    shown = runner.invoke(app, ["sessions", "show", "ghost", "--home", str(home)])
    rolled = runner.invoke(app, ["sessions", "rollback", "ghost", "msg_x", "--home", str(home)])

    assert shown.exit_code == 1
    assert "Session not found" in shown.output
    assert rolled.exit_code == 1
