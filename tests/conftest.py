import sys
import time
from datetime import UTC, datetime
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from src.codeassist.domain.chat_models import CodeResult, ResultMetadata  # noqa: E402
from src.codeassist.infrastructure.session_store import FileSessionStore  # noqa: E402
from src.codeassist.services.telemetry_sink import clear_recent_events  # noqa: E402


class ScriptedBackend:
    """Backend double returning fixed code, or raising, after an optional blocking delay."""

    def __init__(self, code="function hi(){}", *, error=None, delay=0.0, model="scripted-model", tokens=7):
        self.model = model
        self.code = code
        self.error = error
        self.delay = delay
        self.tokens = tokens
        self.requests = []

    def generate_code(self, request):
        self.requests.append(request)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return CodeResult(
            code=self.code,
            language=request.language or "python",
            metadata=ResultMetadata(tokens_used=self.tokens, model=self.model, timestamp=datetime.now(UTC)),
        )

    def test_connection(self):
        return self.error is None

    def available_models(self):
        return [self.model]


class RecordingRenderer:
    def __init__(self):
        self.calls = []
        self.chunks = []
        self.on_chunk_hook = None

    def names(self):
        return [name for name, _ in self.calls]

    def messages(self, kind):
        return [payload for name, payload in self.calls if name == kind]

    def prompt_text(self, generating):
        return "... " if generating else "> "

    def show_prompt(self, text):
        self.calls.append(("prompt", text))

    def on_start(self):
        self.calls.append(("start", None))

    def on_chunk(self, text):
        self.chunks.append(text)
        self.calls.append(("chunk", text))
        if self.on_chunk_hook is not None:
            self.on_chunk_hook(text)

    def on_complete(self, result):
        self.calls.append(("complete", result))

    def on_error(self, reason):
        self.calls.append(("error_event", reason))

    def show_welcome(self):
        self.calls.append(("welcome", None))

    def show_goodbye(self):
        self.calls.append(("goodbye", None))

    def clear(self):
        self.calls.append(("clear", None))

    def show_help(self, commands):
        self.calls.append(("help", list(commands)))

    def show_history(self, session):
        self.calls.append(("history", session))

    def show_sessions(self, sessions, current_id):
        self.calls.append(("sessions", (list(sessions), current_id)))

    def show_models(self, models):
        self.calls.append(("models", list(models)))

    def show_languages(self, languages):
        self.calls.append(("languages", list(languages)))

    def show_stats(self, session, stats):
        self.calls.append(("stats", (session, stats)))

    def info(self, message):
        self.calls.append(("info", message))

    def success(self, message):
        self.calls.append(("success", message))

    def warning(self, message):
        self.calls.append(("warning", message))

    def error(self, message):
        self.calls.append(("error", message))


class ScriptedInput:
    def __init__(self, lines=()):
        self.lines = list(lines)
        self.prompts = []
        self.closed = False

    def read_line(self, prompt):
        self.prompts.append(prompt)
        if self.closed or not self.lines:
            return None
        return self.lines.pop(0)

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_telemetry():
    clear_recent_events()
    yield
    clear_recent_events()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "conversations"


@pytest.fixture
def store(data_dir):
    return FileSessionStore(data_dir)


@pytest.fixture
def renderer():
    return RecordingRenderer()


@pytest.fixture
def make_backend():
    return ScriptedBackend


@pytest.fixture
def make_input():
    return ScriptedInput
