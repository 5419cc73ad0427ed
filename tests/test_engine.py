import asyncio
from pathlib import Path

import pytest

from termloop.cancellation import CancellationToken
from termloop.config import Settings
from termloop.core.engine import INTERRUPTED_TOOL_RESULT
from termloop.core.state import RunContext, StartMode
from termloop.messages import Message, Role, ToolCall
from termloop.model import ModelChunk
from termloop.prompts import USER_INPUT_TAG, USER_INSERTED_INPUT_TAG, base_system_prompt
from termloop.store import StoredSession
from termloop.tokens import PRUNED_MARKER

ZERO_DELAYS = (0.0, 0.0, 0.0, 0.0)


def _call(name: str, **args: object) -> ToolCall:
    return ToolCall(name=name, args=dict(args))


async def _run(engine, text: str = "list files", *, mode: StartMode = StartMode.NORMAL, session_id: str = "s1"):
    context = RunContext(session_id=session_id, bound_terminal_id="t1")
    return await engine.run(context, text, CancellationToken(), mode)


@pytest.mark.asyncio
async def test_fresh_session_runs_command_and_persists_without_snapshots(make_engine, model, terminal, store, sink) -> None:
    terminal.outputs["t1"] = "$ "
    model.turns = [
        [ModelChunk(tool_calls=[_call("exec_command", tab_id_or_name="main", command="ls")])],
        [ModelChunk(content="There are two files.")],
    ]

    result = await _run(make_engine())

    assert result.status == "completed"
    assert result.final_text == "There are two files."
    first = model.requests[0]
    assert [message.role for message in first] == [Role.SYSTEM, Role.USER, Role.USER, Role.USER]
    assert [message.ephemeral for message in first] == [False, True, True, False]
    assert first[-1].content.startswith(USER_INPUT_TAG)
    assert terminal.commands == [("t1", "ls")]

    session = store.load_session("s1")
    assert session is not None
    assert [message.role for message in session.messages] == [
        Role.SYSTEM,
        Role.USER,
        Role.ASSISTANT,
        Role.TOOL,
        Role.ASSISTANT,
    ]
    assert session.messages[3].content == "ran ls"
    assert session.messages[3].tool_call_id == session.messages[2].tool_calls[0].id
    assert session.bound_terminal_id == "t1"
    types = sink.types("s1")
    assert types[0] == "user_input"
    assert "command_started" in types
    assert "command_finished" in types
    assert types[-1] == "done"


@pytest.mark.asyncio
async def test_second_run_reuses_stored_system_prompt(make_engine, model, store) -> None:
    engine = make_engine()
    await _run(engine, "first")
    await _run(engine, "second")

    session = store.load_session("s1")
    assert session is not None
    assert sum(1 for message in session.messages if message.role is Role.SYSTEM) == 1
    assert [message.role for message in model.requests[1]].count(Role.SYSTEM) == 1
    assert len(session.messages) == 5


@pytest.mark.asyncio
async def test_cancel_mid_stream_persists_partial_reply(make_engine, model, store, sink, cancel_run) -> None:
    prior = [base_system_prompt(), Message.user(f"{USER_INPUT_TAG}hello"), Message.assistant("hi")]
    store.save_session(StoredSession(id="s1", messages=prior))
    model.turns = [[ModelChunk(content="Check"), cancel_run]]

    result = await _run(make_engine(), "check disk")

    assert result.status == "cancelled"
    session = store.load_session("s1")
    assert session is not None
    assert [message.id for message in session.messages[:3]] == [message.id for message in prior]
    assert session.messages[3].role is Role.USER
    assert session.messages[-1].content == "Check"
    assert session.messages[-1].aborted is True
    assert len(session.messages) == 5
    assert sink.types("s1")[-1] == "done"
    assert model.active == 0


@pytest.mark.asyncio
async def test_retry_exhaustion_fails_the_run(make_engine, model, store, sink) -> None:
    model.turns = [RuntimeError("503 from provider") for _ in range(4)]

    result = await _run(make_engine())

    assert result.status == "failed"
    assert result.error is not None
    assert "4 attempts" in result.error
    alerts = [event.content for event in sink.of_type("alert", "s1")]
    assert alerts == ["Retrying (1/4)...", "Retrying (2/4)...", "Retrying (3/4)..."]
    errors = sink.of_type("error", "s1")
    assert len(errors) == 1
    assert "503 from provider" in errors[0].details
    assert sink.types("s1")[-1] == "done"
    session = store.load_session("s1")
    assert session is not None
    assert [message.role for message in session.messages] == [Role.SYSTEM, Role.USER]


@pytest.mark.asyncio
async def test_transient_failure_is_retried(make_engine, model, sink) -> None:
    model.turns = [RuntimeError("reset"), [ModelChunk(content="ok")]]

    result = await _run(make_engine())

    assert result.status == "completed"
    assert result.final_text == "ok"
    assert [event.content for event in sink.of_type("alert", "s1")] == ["Retrying (1/4)..."]


@pytest.mark.asyncio
async def test_foreground_command_trims_sibling_calls(make_engine, model, terminal, store) -> None:
    model.turns = [
        [
            ModelChunk(
                tool_calls=[
                    _call("exec_command", tab_id_or_name="main", command="make"),
                    _call("read_terminal_tab", tab_id_or_name="main"),
                ]
            )
        ],
        [ModelChunk(content="built")],
    ]

    await _run(make_engine())

    session = store.load_session("s1")
    assert session is not None
    assistant = session.messages[2]
    assert [call.name for call in assistant.tool_calls] == ["exec_command"]
    assert [message.role for message in session.messages].count(Role.TOOL) == 1
    assert terminal.commands == [("t1", "make")]


@pytest.mark.asyncio
async def test_sequential_calls_each_get_a_result(make_engine, model, terminal, store) -> None:
    terminal.outputs["t1"] = "prompt$ "
    terminal.files["/tmp/a.txt"] = "alpha\n"
    model.turns = [
        [
            ModelChunk(
                tool_calls=[
                    _call("read_terminal_tab", tab_id_or_name="main", lines=5),
                    _call("read_file", tab_id_or_name="main", file_path="/tmp/a.txt"),
                ]
            )
        ],
        [ModelChunk(content="done")],
    ]

    await _run(make_engine())

    session = store.load_session("s1")
    assert session is not None
    results = [message for message in session.messages if message.role is Role.TOOL]
    assert [message.name for message in results] == ["read_terminal_tab", "read_file"]
    assert results[0].content == "prompt$ "
    assert "00001| alpha" in results[1].content


@pytest.mark.asyncio
async def test_invalid_arguments_become_a_tool_result(make_engine, model, store, sink) -> None:
    model.turns = [
        [ModelChunk(tool_calls=[ToolCall(name="exec_command", args='{"tab_id_or_name": "main"}')])],
        [ModelChunk(content="sorry")],
    ]

    result = await _run(make_engine())

    assert result.status == "completed"
    session = store.load_session("s1")
    assert session is not None
    tool = next(message for message in session.messages if message.role is Role.TOOL)
    assert tool.content.startswith("Parameter validation error for exec_command: command:")
    assert any(event.level == "error" for event in sink.of_type("tool_call", "s1"))


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_to_the_model(make_engine, model, store) -> None:
    model.turns = [[ModelChunk(tool_calls=[_call("teleport", where="mars")])], [ModelChunk(content="ok")]]

    await _run(make_engine())

    session = store.load_session("s1")
    assert session is not None
    tool = next(message for message in session.messages if message.role is Role.TOOL)
    assert tool.content == 'Tool "teleport" is not supported.'
    assert len(model.requests) == 2


@pytest.mark.asyncio
async def test_disabled_tool_ends_the_run(make_engine, model, home: Path, terminal, store) -> None:
    settings = Settings(home=home, model_retry_delays=ZERO_DELAYS, builtin_tools={"exec_command": False})
    model.turns = [[ModelChunk(tool_calls=[_call("exec_command", tab_id_or_name="main", command="rm -rf /")])]]

    result = await _run(make_engine(settings=settings))

    assert result.status == "completed"
    assert "exec_command" not in model.bound_tools[0]
    assert terminal.commands == []
    assert len(model.requests) == 1
    session = store.load_session("s1")
    assert session is not None
    assert session.messages[-1].role is Role.TOOL
    assert session.messages[-1].content == 'Tool "exec_command" is disabled.'


@pytest.mark.asyncio
async def test_recursion_limit_fails_the_run(make_engine, model, home: Path, sink) -> None:
    settings = Settings(home=home, model_retry_delays=ZERO_DELAYS, recursion_limit=5)
    model.turns = [[ModelChunk(tool_calls=[_call("wait", seconds=5)])]]

    result = await _run(make_engine(settings=settings))

    assert result.status == "failed"
    assert result.node_visits == 6
    assert "recursion limit" in (result.error or "")
    assert len(sink.of_type("error", "s1")) == 1


@pytest.mark.asyncio
async def test_usage_is_reported_as_tokens_count(make_engine, model, sink) -> None:
    model.turns = [[ModelChunk(content="hi", usage={"total_tokens": 1234}, model_name="gpt-test")]]

    await _run(make_engine())

    [event] = sink.of_type("tokens_count", "s1")
    assert event.total_tokens == 1234
    assert event.max_tokens == 200_000
    assert event.model_name == "gpt-test"


@pytest.mark.asyncio
async def test_inserted_input_skips_environment_snapshot(make_engine, model) -> None:
    await _run(make_engine(), "also check logs", mode=StartMode.INSERTED)

    [request] = model.requests
    assert [message.role for message in request] == [Role.SYSTEM, Role.USER]
    assert request[-1].content.startswith(USER_INSERTED_INPUT_TAG)
    assert request[-1].metadata["input_kind"] == "inserted"


@pytest.mark.asyncio
async def test_oversized_history_is_pruned_for_the_model_only(make_engine, model, home: Path, store) -> None:
    prior = [base_system_prompt(), Message.user(f"{USER_INPUT_TAG}dump logs")]
    for index in range(3):
        call = _call("read_terminal_tab", tab_id_or_name="main")
        prior.append(Message.assistant(tool_calls=[call]))
        prior.append(Message.tool_result(call, f"log line {index} " + "x" * 400))
    store.save_session(StoredSession(id="s1", messages=prior))
    settings = Settings(
        home=home,
        model_retry_delays=ZERO_DELAYS,
        max_context_tokens=200,
        action_max_context_tokens=200,
        output_reserve=0,
        prune_protect=0,
        prune_minimum=0,
        recent_tool_results_protected=1,
    )

    await _run(make_engine(settings=settings))

    sent = [message.content for message in model.requests[0] if message.role is Role.TOOL]
    assert sent[0].startswith(PRUNED_MARKER)
    assert sent[1].startswith(PRUNED_MARKER)
    assert sent[2].startswith("log line 2")
    session = store.load_session("s1")
    assert session is not None
    stored = [message.content for message in session.messages if message.role is Role.TOOL]
    assert all(content.startswith("log line") for content in stored)


@pytest.mark.asyncio
async def test_debug_mode_emits_history_before_done(make_engine, model, home: Path, sink) -> None:
    settings = Settings(home=home, model_retry_delays=ZERO_DELAYS, debug_mode=True)

    await _run(make_engine(settings=settings))

    types = sink.types("s1")
    assert types[-2:] == ["debug_history", "done"]
    [event] = sink.of_type("debug_history", "s1")
    assert event.history[0]["role"] == "system"


@pytest.mark.asyncio
async def test_external_tool_result_is_rendered(make_engine, model, store, external_tools) -> None:
    model.turns = [[ModelChunk(tool_calls=[_call("mcp_search", q="retry")])], [ModelChunk(content="found")]]
    engine = make_engine(external_tools=external_tools)

    await _run(engine)

    assert "mcp_search" in model.bound_tools[0]
    session = store.load_session("s1")
    assert session is not None
    tool = next(message for message in session.messages if message.role is Role.TOOL)
    assert tool.content == '{"hits": 2}'
    assert external_tools.invocations == [("mcp_search", {"q": "retry"})]


@pytest.mark.asyncio
async def test_ui_history_flush_failure_is_not_fatal(make_engine, model) -> None:
    flushed: list[str] = []

    async def flush(session_id: str) -> None:
        flushed.append(session_id)
        raise RuntimeError("ui gone")

    result = await _run(make_engine(flush_ui_history=flush))

    assert result.status == "completed"
    assert flushed == ["s1"]


@pytest.mark.asyncio
async def test_collaborator_crash_becomes_a_tool_result(make_engine, model, terminal, store, sink) -> None:
    terminal.files["/tmp/a.txt"] = "alpha\n"

    async def broken_read(terminal_id: str, path: str) -> bytes:
        raise OSError("sftp channel closed")

    terminal.read_file = broken_read
    model.turns = [
        [ModelChunk(tool_calls=[_call("read_file", tab_id_or_name="main", file_path="/tmp/a.txt")])],
        [ModelChunk(content="could not read it")],
    ]

    result = await _run(make_engine())

    assert result.status == "completed"
    assert result.final_text == "could not read it"
    session = store.load_session("s1")
    assert session is not None
    tool = next(message for message in session.messages if message.role is Role.TOOL)
    assert tool.content == "Error executing read_file: sftp channel closed"
    assert any(event.level == "error" for event in sink.of_type("tool_call", "s1"))


@pytest.mark.asyncio
async def test_cancel_during_tool_answers_every_stored_call(make_engine, model, terminal, store) -> None:
    token = CancellationToken()
    terminal.outputs["t1"] = "$ "
    terminal.files["/var/log/big.log"] = "line\n"

    async def stalled_read(terminal_id: str, path: str) -> bytes:
        token.cancel("user stop")
        await asyncio.Event().wait()
        return b""

    terminal.read_file = stalled_read
    model.turns = [
        [
            ModelChunk(
                tool_calls=[
                    _call("read_terminal_tab", tab_id_or_name="main", lines=5),
                    _call("read_file", tab_id_or_name="main", file_path="/var/log/big.log"),
                ]
            )
        ]
    ]

    context = RunContext(session_id="s1", bound_terminal_id="t1")
    result = await make_engine().run(context, "tail the log", token, StartMode.NORMAL)

    assert result.status == "cancelled"
    session = store.load_session("s1")
    assert session is not None
    assistant = next(message for message in session.messages if message.tool_calls)
    results = {message.tool_call_id: message.content for message in session.messages if message.role is Role.TOOL}
    assert set(results) == {call.id for call in assistant.tool_calls}
    assert list(results.values()) == ["$ ", INTERRUPTED_TOOL_RESULT]
    assert session.messages[-1].role is Role.TOOL


@pytest.mark.asyncio
async def test_image_read_attaches_messages_after_tool_results(make_engine, model, home: Path, terminal, store) -> None:
    settings = Settings(home=home, model_retry_delays=ZERO_DELAYS, image_inputs=True)
    terminal.files["/tmp/shot.png"] = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
    terminal.files["/tmp/a.txt"] = "alpha\n"
    model.turns = [
        [
            ModelChunk(
                tool_calls=[
                    _call("read_file", tab_id_or_name="main", file_path="/tmp/shot.png"),
                    _call("read_file", tab_id_or_name="main", file_path="/tmp/a.txt"),
                ]
            )
        ],
        [ModelChunk(content="a blank screenshot")],
    ]

    result = await _run(make_engine(settings=settings))

    assert result.status == "completed"
    session = store.load_session("s1")
    assert session is not None
    roles = [message.role for message in session.messages]
    assert roles[2:] == [Role.ASSISTANT, Role.TOOL, Role.TOOL, Role.ASSISTANT, Role.USER, Role.ASSISTANT]
    assert session.messages[3].content == "Image read successfully."
    image_part = session.messages[6].content_parts[1]
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")
    assert model.requests[1][-1].to_model_input()["content"][1]["type"] == "image_url"
