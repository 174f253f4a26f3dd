"""Interactive loop: reads lines, dispatches commands, drives generations.

The controller is either Idle or Generating. While Generating, input keeps
being read but every line except ``/stop`` is refused.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from ..config import AssistantConfig
from ..core.state_machine import GenerationState, StateMachine
from ..domain.chat_models import CodeResult, GenerationRequest, MessageMetadata
from ..domain.events import ChunkEvent, CompleteEvent, ErrorEvent
from ..infrastructure.session_store import SessionStore
from ..services.backend import CodeBackend
from ..services.languages import get_supported_languages, suggest_language
from ..services.streaming import PipelineBusyError, StreamingPipeline
from ..services.telemetry_sink import TelemetryEvent, record_event
from .renderer import Renderer

logger = logging.getLogger("codeassist.cli")

PLEASE_WAIT = "Please wait for the current generation to complete..."
EXIT_WORDS = ("exit", "quit")

COMMANDS: Tuple[Tuple[str, str], ...] = (
    ("/help", "Show this help message"),
    ("/exit, /quit", "Exit the application"),
    ("/clear", "Clear the screen"),
    ("/history", "Show conversation history"),
    ("/sessions", "Show all sessions"),
    ("/models", "Show available models"),
    ("/languages", "Show supported languages"),
    ("/test", "Test the backend connection"),
    ("/new [title]", "Start a new session"),
    ("/switch <id>", "Make another session current"),
    ("/delete <id>", "Delete a session"),
    ("/export [id] <path>", "Export a session to a JSON file"),
    ("/import <path>", "Import a session from a JSON file"),
    ("/stats [id]", "Show session statistics"),
    ("/stop", "Stop the running generation"),
)


class InputSource(Protocol):
    def read_line(self, prompt: str) -> Optional[str]: ...

    def close(self) -> None: ...


def parse_command(line: str) -> Optional[Tuple[str, List[str]]]:
    """Return ``(name, args)`` for a command line, ``None`` for a prompt."""
    text = line.strip()
    if text.lower() in EXIT_WORDS:
        return text.lower(), []
    if not text.startswith("/") or len(text) == 1:
        return None
    parts = text[1:].split()
    return parts[0].lower(), parts[1:]


class InteractionController:
    def __init__(
        self,
        store: SessionStore,
        pipeline: StreamingPipeline,
        renderer: Renderer,
        input_source: InputSource,
        backend: CodeBackend,
        config: Optional[AssistantConfig] = None,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._renderer = renderer
        self._input = input_source
        self._backend = backend
        self._config = config or AssistantConfig()
        self._machine = StateMachine()
        self._running = True
        # a read issued while Generating printed no prompt
        self._reading_while_generating = False
        self._handlers: Dict[str, Callable[[List[str]], None]] = {
            "help": self._cmd_help,
            "exit": self._cmd_exit,
            "quit": self._cmd_exit,
            "clear": self._cmd_clear,
            "history": self._cmd_history,
            "sessions": self._cmd_sessions,
            "models": self._cmd_models,
            "languages": self._cmd_languages,
            "test": self._cmd_test,
            "new": self._cmd_new,
            "switch": self._cmd_switch,
            "delete": self._cmd_delete,
            "export": self._cmd_export,
            "import": self._cmd_import,
            "stats": self._cmd_stats,
            "stop": self._cmd_stop,
        }

    @property
    def state(self) -> GenerationState:
        return self._machine.state

    @property
    def is_generating(self) -> bool:
        return self._machine.is_generating

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    async def run(self) -> int:
        """Read and handle lines until exit or end of input. Returns an exit code."""
        self._renderer.show_welcome()
        generation: Optional[asyncio.Task] = None
        try:
            while self._running:
                self._reading_while_generating = self.is_generating
                prompt = self._renderer.prompt_text(self.is_generating)
                line = await asyncio.to_thread(self._input.read_line, prompt)
                self._reading_while_generating = False
                if line is None:
                    # end of input behaves like /exit once the generation is done
                    if generation is not None and not generation.done():
                        await generation
                    self._cmd_exit([])
                    break
                if self.is_generating or parse_command(line) is not None or not line.strip():
                    await self.handle_line(line)
                    continue
                generation = asyncio.create_task(self._generate_in_background(line.strip()))
                # let the task take the Generating state before the next read
                await asyncio.sleep(0)
            if generation is not None and not generation.done():
                await generation
        finally:
            self._input.close()
        return 0

    async def handle_line(self, line: str) -> None:
        text = line.strip()
        if not text:
            return
        command = parse_command(text)
        if self.is_generating:
            if command is not None and command[0] == "stop":
                self.dispatch_command(text)
            else:
                self._renderer.warning(PLEASE_WAIT)
            return
        if command is not None:
            self.dispatch_command(text)
            return
        await self.submit_prompt(text)

    async def run_once(self, prompt: str, *, language: Optional[str] = None, context: Optional[str] = None) -> int:
        """Generate code for a single prompt without reading input.

        Returns 0 when the generation completed and 1 otherwise.
        """
        completed = await self.submit_prompt(prompt.strip(), language=language, extra_context=context)
        return 0 if completed else 1

    def cancel(self) -> bool:
        """Stop the active generation (Ctrl-C). Returns False when idle."""
        return self._pipeline.stop()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    async def _generate_in_background(self, text: str) -> None:
        await self.submit_prompt(text)
        if self._running and self._reading_while_generating:
            self._renderer.show_prompt(self._renderer.prompt_text(False))

    async def submit_prompt(
        self,
        text: str,
        *,
        language: Optional[str] = None,
        extra_context: Optional[str] = None,
    ) -> bool:
        """Run one generation for ``text``. Returns True when it completed."""
        if self.is_generating:
            self._renderer.warning(PLEASE_WAIT)
            return False
        self._machine.transition(GenerationState.GENERATING)
        completed = False
        try:
            history = self._store.get_conversation_context(self._config.context_messages)
            context = "\n\n".join(part for part in (extra_context, history) if part)
            self._store.add_message(text, "user")
            request = GenerationRequest(
                prompt=text,
                language=language or suggest_language(text, self._config.default_language),
                context=context or None,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
            )
            logger.debug("generation_requested language=%s context_chars=%s", request.language, len(context))
            try:
                stream = self._pipeline.generate(request)
            except PipelineBusyError as exc:
                self._renderer.warning(str(exc))
                return False
            self._renderer.on_start()
            async with stream:
                async for event in stream:
                    if isinstance(event, ChunkEvent):
                        self._renderer.on_chunk(event.text)
                    elif isinstance(event, CompleteEvent):
                        self._renderer.on_complete(event.result)
                        self._record_result(event.result)
                        completed = True
                    elif isinstance(event, ErrorEvent):
                        if event.cancelled:
                            self._renderer.warning(event.reason)
                        else:
                            self._renderer.on_error(event.reason)
        finally:
            self._machine.transition(GenerationState.IDLE)
        return completed

    def _record_result(self, result: CodeResult) -> None:
        meta = result.metadata
        self._store.add_message(
            f"Generated {result.language} code:\n{result.code}",
            "assistant",
            MessageMetadata(
                language=result.language,
                tokens_used=meta.tokens_used if meta else None,
                model=meta.model if meta else None,
            ),
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def dispatch_command(self, line: str) -> None:
        parsed = parse_command(line)
        if parsed is None:
            self._renderer.error(f"Not a command: {line.strip()}")
            return
        name, args = parsed
        handler = self._handlers.get(name)
        if handler is None:
            self._renderer.error(f"Unknown command: {name}. Use /help to see available commands")
            return
        current = self._store.get_current_session()
        record_event(
            TelemetryEvent(
                name="command",
                properties={"command": name, "args": len(args)},
                session_id=current.id if current else None,
            )
        )
        handler(args)

    def _current_id(self) -> Optional[str]:
        current = self._store.get_current_session()
        return current.id if current else None

    def _cmd_help(self, args: List[str]) -> None:
        self._renderer.show_help(COMMANDS)

    def _cmd_exit(self, args: List[str]) -> None:
        self._renderer.show_goodbye()
        self._running = False
        self._input.close()

    def _cmd_clear(self, args: List[str]) -> None:
        self._renderer.clear()
        self._renderer.show_welcome()

    def _cmd_history(self, args: List[str]) -> None:
        self._renderer.show_history(self._store.get_current_session())

    def _cmd_sessions(self, args: List[str]) -> None:
        self._renderer.show_sessions(self._store.get_all_sessions(), self._current_id())

    def _cmd_models(self, args: List[str]) -> None:
        self._renderer.show_models(self._backend.available_models())

    def _cmd_languages(self, args: List[str]) -> None:
        self._renderer.show_languages(get_supported_languages())

    def _cmd_test(self, args: List[str]) -> None:
        self._renderer.info("Testing backend connection...")
        if self._backend.test_connection():
            self._renderer.success(f"Connected to {self._backend.model}")
        else:
            self._renderer.error(f"Could not reach {self._backend.model}")

    def _cmd_new(self, args: List[str]) -> None:
        session = self._store.create_session(" ".join(args) or None)
        self._renderer.success(f"Started new session: {session.title} ({session.id})")

    def _cmd_switch(self, args: List[str]) -> None:
        if len(args) != 1:
            self._renderer.error("Usage: /switch <id>")
            return
        if self._store.set_current_session(args[0]):
            session = self._store.get_current_session()
            self._renderer.success(f"Switched to session: {session.title if session else args[0]}")
        else:
            self._renderer.error(f"Session not found: {args[0]}")

    def _cmd_delete(self, args: List[str]) -> None:
        if len(args) != 1:
            self._renderer.error("Usage: /delete <id>")
            return
        if self._store.delete_session(args[0]):
            self._renderer.success(f"Deleted session: {args[0]}")
        else:
            self._renderer.error(f"Session not found: {args[0]}")

    def _cmd_export(self, args: List[str]) -> None:
        if len(args) == 2:
            session_id, destination = args
        elif len(args) == 1:
            session_id, destination = self._current_id(), args[0]
        else:
            self._renderer.error("Usage: /export [id] <path>")
            return
        if session_id is None:
            self._renderer.error("No current session to export")
            return
        if self._store.export_session(session_id, destination):
            self._renderer.success(f"Exported {session_id} to {destination}")
        else:
            self._renderer.error(f"Could not export session {session_id}")

    def _cmd_import(self, args: List[str]) -> None:
        if len(args) != 1:
            self._renderer.error("Usage: /import <path>")
            return
        if self._store.import_session(args[0]):
            self._renderer.success(f"Imported session from {args[0]}")
        else:
            self._renderer.error(f"Could not import session from {args[0]}")

    def _cmd_stats(self, args: List[str]) -> None:
        session_id = args[0] if args else self._current_id()
        session = self._store.get_session(session_id) if session_id else None
        stats = self._store.get_session_stats(session_id) if session_id else None
        if session is None or stats is None:
            self._renderer.error("No session to show statistics for")
            return
        self._renderer.show_stats(session, stats)

    def _cmd_stop(self, args: List[str]) -> None:
        if self.cancel():
            self._renderer.info("Stopping generation...")
        else:
            self._renderer.warning("Nothing to stop")
