import asyncio
import random
import time

import pytest

from src.codeassist.cli.controller import PLEASE_WAIT, InteractionController, parse_command
from src.codeassist.config import AssistantConfig
from src.codeassist.core.state_machine import GenerationState
from src.codeassist.domain.chat_models import GenerationRequest
from src.codeassist.services.backend import BackendError
from src.codeassist.services.streaming import StreamingPipeline
from src.codeassist.services.telemetry_sink import list_recent_events

MULTILINE = "\n".join(f"line {i}" for i in range(20)) + "\n"


@pytest.fixture
def make_controller(store, renderer, make_backend, make_input):
    def factory(backend=None, lines=(), delay_range=(0.0, 0.0), **config):
        backend = backend or make_backend()
        pipeline = StreamingPipeline(backend, delay_range=delay_range, rng=random.Random(5))
        source = make_input(lines)
        controller = InteractionController(store, pipeline, renderer, source, backend, AssistantConfig(**config))
        return controller, source

    return factory


def test_parse_command():
    assert parse_command("/help") == ("help", [])
    assert parse_command("  /Export abc out.json ") == ("export", ["abc", "out.json"])
    assert parse_command("exit") == ("exit", [])
    assert parse_command("QUIT") == ("quit", [])
    assert parse_command("write an exit handler") is None
    assert parse_command("/") is None


@pytest.mark.asyncio
async def test_prompt_records_user_and_assistant_messages(make_controller, store, renderer):
    controller, _ = make_controller()
    store.create_session("S")

    await controller.handle_line("write function hi in javascript")

    session = store.get_current_session()
    assert session.title == "S"
    assert len(session.messages) == 2
    user, assistant = session.messages
    assert user.role == "user"
    assert user.content == "write function hi in javascript"
    assert assistant.role == "assistant"
    assert "function hi(){}" in assistant.content
    assert assistant.content.startswith("Generated javascript code:\n")
    assert assistant.metadata.language == "javascript"
    assert assistant.metadata.tokens_used == 7
    assert assistant.metadata.model == "scripted-model"
    assert renderer.chunks == ["function hi(){}"]
    assert renderer.names()[-1] == "complete"
    assert controller.state is GenerationState.IDLE


@pytest.mark.asyncio
async def test_request_carries_context_and_config(make_controller, make_backend, store):
    backend = make_backend()
    controller, _ = make_controller(backend=backend, max_tokens=500, temperature=0.2, default_language="go")
    store.create_session("S")

    await controller.handle_line("first request")
    await controller.handle_line("second request")

    first, second = backend.requests
    assert isinstance(second, GenerationRequest)
    assert first.context is None
    assert "User: first request" in second.context
    assert "second request" not in second.context
    assert second.language == "go"
    assert second.max_tokens == 500
    assert second.temperature == 0.2


@pytest.mark.asyncio
async def test_backend_error_adds_no_assistant_message(make_controller, make_backend, store, renderer):
    controller, _ = make_controller(backend=make_backend(error=BackendError("model offline")))

    await controller.handle_line("write something")

    session = store.get_current_session()
    assert [m.role for m in session.messages] == ["user"]
    assert renderer.messages("error_event") == ["model offline"]
    assert controller.state is GenerationState.IDLE


@pytest.mark.asyncio
async def test_line_during_generation_is_refused(make_controller, make_backend, store, renderer):
    backend = make_backend(code=MULTILINE)
    controller, _ = make_controller(backend=backend, delay_range=(0.001, 0.001))
    tasks = []

    def on_first_chunk(_text):
        if not tasks:
            assert controller.is_generating
            tasks.append(asyncio.get_running_loop().create_task(controller.handle_line("another prompt")))

    renderer.on_chunk_hook = on_first_chunk
    await controller.handle_line("print many lines")
    await asyncio.gather(*tasks)

    assert PLEASE_WAIT in renderer.messages("warning")
    assert len(backend.requests) == 1
    assert len(store.get_current_session().messages) == 2
    assert "".join(renderer.chunks) == MULTILINE


@pytest.mark.asyncio
async def test_stop_command_during_generation(make_controller, make_backend, store, renderer):
    controller, _ = make_controller(backend=make_backend(code=MULTILINE), delay_range=(0.001, 0.001))
    tasks = []

    def on_first_chunk(_text):
        if not tasks:
            tasks.append(asyncio.get_running_loop().create_task(controller.handle_line("/stop")))

    renderer.on_chunk_hook = on_first_chunk
    await controller.handle_line("print many lines")
    await asyncio.gather(*tasks)

    assert "Stopping generation..." in renderer.messages("info")
    assert "Generation stopped" in renderer.messages("warning")
    assert "complete" not in renderer.names()
    assert [m.role for m in store.get_current_session().messages] == ["user"]
    assert controller.state is GenerationState.IDLE


@pytest.mark.asyncio
async def test_busy_pipeline_is_reported(make_controller, make_backend, renderer):
    backend = make_backend()
    controller, _ = make_controller(backend=backend)
    outstanding = controller._pipeline.generate(GenerationRequest(prompt="elsewhere"))

    await controller.handle_line("write code")

    assert any("Already streaming" in w for w in renderer.messages("warning"))
    assert controller.state is GenerationState.IDLE
    await outstanding.aclose()


@pytest.mark.asyncio
async def test_cancel_maps_to_pipeline_stop(make_controller):
    controller, _ = make_controller()
    assert controller.cancel() is False


def test_unknown_command_reports_error(make_controller, renderer):
    controller, _ = make_controller()
    controller.dispatch_command("/frobnicate")
    assert renderer.messages("error") == ["Unknown command: frobnicate. Use /help to see available commands"]
    assert controller.state is GenerationState.IDLE


@pytest.mark.parametrize("line", ["/exit", "/quit", "exit", "quit"])
def test_exit_closes_input(make_controller, renderer, line):
    controller, source = make_controller()
    controller.dispatch_command(line)
    assert "goodbye" in renderer.names()
    assert source.closed is True
    assert controller.running is False


def test_help_lists_commands(make_controller, renderer):
    controller, _ = make_controller()
    controller.dispatch_command("/help")
    (commands,) = renderer.messages("help")
    names = [cmd for cmd, _ in commands]
    assert "/help" in names
    assert "/stop" in names
    assert list_recent_events(name="command")[-1].properties["command"] == "help"


def test_clear_history_sessions(make_controller, store, renderer):
    controller, _ = make_controller()
    session = store.create_session("S")
    store.add_message("hi", "user")

    controller.dispatch_command("/clear")
    controller.dispatch_command("/history")
    controller.dispatch_command("/sessions")

    assert renderer.names()[:2] == ["clear", "welcome"]
    (history,) = renderer.messages("history")
    assert history.id == session.id
    (listing,) = renderer.messages("sessions")
    sessions, current_id = listing
    assert current_id == session.id
    assert [s.id for s in sessions] == [session.id]


def test_models_languages_and_test(make_controller, make_backend, renderer):
    controller, _ = make_controller()
    controller.dispatch_command("/models")
    controller.dispatch_command("/languages")
    controller.dispatch_command("/test")

    assert renderer.messages("models") == [["scripted-model"]]
    (languages,) = renderer.messages("languages")
    assert "python" in [lang.name for lang in languages]
    assert renderer.messages("success") == ["Connected to scripted-model"]

    failing, _ = make_controller(backend=make_backend(error=BackendError("down")))
    failing.dispatch_command("/test")
    assert renderer.messages("error")[-1] == "Could not reach scripted-model"


def test_session_management_commands(make_controller, store, renderer, tmp_path):
    controller, _ = make_controller()
    controller.dispatch_command("/new Parser work")
    first = store.get_current_session()
    assert first.title == "Parser work"

    controller.dispatch_command("/new")
    second = store.get_current_session()
    assert second.id != first.id

    controller.dispatch_command(f"/switch {first.id}")
    assert store.get_current_session().id == first.id
    controller.dispatch_command("/switch session_missing")
    assert renderer.messages("error")[-1] == "Session not found: session_missing"

    target = tmp_path / "first.json"
    controller.dispatch_command(f"/export {target}")
    assert target.exists()

    controller.dispatch_command(f"/delete {first.id}")
    assert store.get_session(first.id) is None
    controller.dispatch_command(f"/import {target}")
    assert store.get_session(first.id).title == "Parser work"

    controller.dispatch_command(f"/stats {first.id}")
    ((session, stats),) = renderer.messages("stats")
    assert session.id == first.id
    assert stats.total_messages == 0


def test_commands_report_usage_errors(make_controller, renderer):
    controller, _ = make_controller()
    controller.dispatch_command("/switch")
    controller.dispatch_command("/delete")
    controller.dispatch_command("/import")
    controller.dispatch_command("/export")
    controller.dispatch_command("/stats")
    assert renderer.messages("error") == [
        "Usage: /switch <id>",
        "Usage: /delete <id>",
        "Usage: /import <path>",
        "Usage: /export [id] <path>",
        "No session to show statistics for",
    ]


def test_stop_when_idle_warns(make_controller, renderer):
    controller, _ = make_controller()
    controller.dispatch_command("/stop")
    assert renderer.messages("warning") == ["Nothing to stop"]


@pytest.mark.asyncio
async def test_run_processes_lines_until_exit(make_controller, store, renderer):
    controller, source = make_controller(lines=["/help", "", "create a python hello function", "/exit"])

    code = await controller.run()

    assert code == 0
    assert source.closed is True
    assert renderer.names()[0] == "welcome"
    assert "help" in renderer.names()
    assert "goodbye" in renderer.names()
    roles = [m.role for m in store.get_current_session().messages]
    assert roles == ["user", "assistant"]
    assert controller.state is GenerationState.IDLE


@pytest.mark.asyncio
async def test_run_treats_end_of_input_as_exit(make_controller, renderer):
    controller, source = make_controller(lines=[])

    assert await controller.run() == 0
    assert source.closed is True
    assert renderer.names() == ["welcome", "goodbye"]


@pytest.mark.asyncio
async def test_prompt_is_reprinted_after_background_generation(make_controller, make_backend, renderer):
    controller, source = make_controller(backend=make_backend(code=MULTILINE), delay_range=(0.001, 0.001))
    lines = iter(["print many lines", "/exit"])
    prompts = []

    def read_line(prompt):
        prompts.append(prompt)
        if len(prompts) == 2:
            # hold the second read open until the generation has finished
            deadline = time.monotonic() + 5
            while controller.is_generating and time.monotonic() < deadline:
                time.sleep(0.01)
        return next(lines, None)

    source.read_line = read_line

    assert await controller.run() == 0
    assert prompts == ["> ", "... "]
    names = renderer.names()
    assert names.index("complete") < names.index("prompt") < names.index("goodbye")
    assert renderer.messages("prompt") == ["> "]


@pytest.mark.asyncio
async def test_run_once_generates_without_reading_input(make_controller, make_backend, store, renderer):
    backend = make_backend()
    controller, source = make_controller(backend=backend)

    code = await controller.run_once("  build a parser  ", language="rust", context="uses nom")

    assert code == 0
    assert source.prompts == []
    request = backend.requests[0]
    assert request.prompt == "build a parser"
    assert request.language == "rust"
    assert request.context == "uses nom"
    assert [m.role for m in store.get_current_session().messages] == ["user", "assistant"]
    assert "complete" in renderer.names()


@pytest.mark.asyncio
async def test_run_once_reports_failure(make_controller, make_backend, renderer):
    controller, _ = make_controller(backend=make_backend(error=BackendError("model offline")))

    assert await controller.run_once("write something") == 1
    assert renderer.messages("error_event") == ["model offline"]
