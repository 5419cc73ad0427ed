from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from termloop.bootstrap import build_engine
from termloop.cancellation import CancellationToken
from termloop.config import Settings
from termloop.core.state import RunContext
from termloop.errors import ModelNotConfiguredError
from termloop.integrations.republic_client import RepublicChatModel
from termloop.skills import PROJECT_SKILLS_DIR, FileSkillService
from termloop.store import FileSessionStore


@dataclass(frozen=True)
class FakeStreamEvent:
    kind: str
    data: dict[str, Any]


@dataclass
class FakeAsyncStreamEvents:
    events: list[FakeStreamEvent]
    error: object | None = None

    def __aiter__(self):
        async def _iterator():
            for event in self.events:
                yield event

        return _iterator()


def _settings(home: Path, **overrides: Any) -> Settings:
    params: dict[str, Any] = {"home": home, "model": "openai:gpt-test", "api_key": "test-key"}
    params.update(overrides)
    return Settings(**params)


def test_build_engine_wires_file_backed_collaborators(tmp_path: Path, terminal, command_policy, sink) -> None:
    workspace = tmp_path / "project"
    settings = _settings(tmp_path / "home", workspace=workspace, action_model="openai:gpt-mini", max_output_tokens=512)

    engine = build_engine(settings, terminal=terminal, command_policy=command_policy, sink=sink)

    assert isinstance(engine._model, RepublicChatModel)
    assert engine._model.name == "openai:gpt-test"
    assert engine._model._max_tokens == 512
    assert isinstance(engine._skills, FileSkillService)
    assert engine._skills.roots() == [workspace / PROJECT_SKILLS_DIR, (tmp_path / "home").resolve() / "skills"]
    assert isinstance(engine.recovery._store, FileSessionStore)


def test_build_engine_requires_a_model(tmp_path: Path, terminal, command_policy, sink) -> None:
    with pytest.raises(ModelNotConfiguredError):
        build_engine(Settings(home=tmp_path, model=None), terminal=terminal, command_policy=command_policy, sink=sink)


@pytest.mark.asyncio
async def test_built_engine_completes_a_run_over_republic(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, terminal, command_policy, sink
) -> None:
    engine = build_engine(_settings(tmp_path), terminal=terminal, command_policy=command_policy, sink=sink)
    requests: list[dict[str, Any]] = []

    async def stream_events_async(**kwargs: Any) -> FakeAsyncStreamEvents:
        requests.append(kwargs)
        events = [
            FakeStreamEvent("text", {"delta": "All "}),
            FakeStreamEvent("text", {"delta": "clear."}),
            FakeStreamEvent("final", {"text": "All clear.", "tool_calls": [], "ok": True}),
        ]
        return FakeAsyncStreamEvents(events)

    monkeypatch.setattr(engine._model._llm, "stream_events_async", stream_events_async)

    result = await engine.run(RunContext(session_id="s1", bound_terminal_id="t1"), "status?", CancellationToken())

    assert result.status == "completed"
    assert result.final_text == "All clear."
    assert "exec_command" in [tool.name for tool in requests[0]["tools"]]
    assert "".join(event.content for event in sink.of_type("say", "s1")) == "All clear."
    assert len(requests) == 1
    stored = FileSessionStore(tmp_path).load_session("s1")
    assert stored is not None
    assert stored.messages[-1].content == "All clear."
