from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from ..domain.chat_models import CodeResult, ConversationSession, SessionStats
from ..services.languages import SupportedLanguage, find_language


class Renderer(Protocol):
    def prompt_text(self, generating: bool) -> str: ...

    def show_prompt(self, text: str) -> None: ...

    # generation callbacks
    def on_start(self) -> None: ...

    def on_chunk(self, text: str) -> None: ...

    def on_complete(self, result: CodeResult) -> None: ...

    def on_error(self, reason: str) -> None: ...

    # command output
    def show_welcome(self) -> None: ...

    def show_goodbye(self) -> None: ...

    def clear(self) -> None: ...

    def show_help(self, commands: Sequence[Tuple[str, str]]) -> None: ...

    def show_history(self, session: Optional[ConversationSession]) -> None: ...

    def show_sessions(self, sessions: Sequence[ConversationSession], current_id: Optional[str]) -> None: ...

    def show_models(self, models: Iterable[str]) -> None: ...

    def show_languages(self, languages: Iterable[SupportedLanguage]) -> None: ...

    def show_stats(self, session: ConversationSession, stats: SessionStats) -> None: ...

    def info(self, message: str) -> None: ...

    def success(self, message: str) -> None: ...

    def warning(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class RichRenderer:
    def __init__(self, console: Optional[Console] = None, theme: str = "dark") -> None:
        self.console = console or Console()
        self._syntax_theme = "monokai" if theme == "dark" else "default"
        self._streamed = False

    def prompt_text(self, generating: bool) -> str:
        # nothing is printed while chunks are streaming
        return "" if generating else "You: "

    def show_prompt(self, text: str) -> None:
        self.console.print(f"[bold green]{escape(text)}[/]", end="")

    # ------------------------------------------------------------------
    # Generation callbacks
    # ------------------------------------------------------------------
    def on_start(self) -> None:
        self._streamed = False
        self.console.print("[bold blue]Assistant:[/]")

    def on_chunk(self, text: str) -> None:
        self._streamed = True
        self.console.out(text, end="", highlight=False)
        self.console.file.flush()

    def on_complete(self, result: CodeResult) -> None:
        if self._streamed:
            self.console.print()
        lang = find_language(result.language)
        lexer = lang.lexer if lang else result.language
        self.console.print(Rule("Generated Code", style="magenta"))
        self.console.print(Syntax(result.code, lexer, theme=self._syntax_theme, line_numbers=False))
        self.console.print(Rule(style="grey50"))
        meta = result.metadata
        tokens = meta.tokens_used if meta else "N/A"
        model = meta.model if meta else "unknown"
        self.console.print(f"[grey50]Language: {result.language} | Tokens: {tokens} | Model: {escape(str(model))}[/]")

    def on_error(self, reason: str) -> None:
        if self._streamed:
            self.console.print()
        self.console.print(f"[red]Generation failed: {escape(reason)}[/]", highlight=False)

    # ------------------------------------------------------------------
    # Command output
    # ------------------------------------------------------------------
    def show_welcome(self) -> None:
        body = Text.assemble(
            ("Type a code request and press Enter.\n", "white"),
            ("/help", "bold cyan"),
            (" lists commands, ", "white"),
            ("/exit", "bold cyan"),
            (" quits.\n\n", "white"),
            ('Example: "Write a Python function to sort an array"', "grey50"),
        )
        self.console.print(Panel(body, title="Code Assistant", border_style="blue"))

    def show_goodbye(self) -> None:
        self.console.print("[green]Goodbye![/]")

    def clear(self) -> None:
        self.console.clear()

    def show_help(self, commands: Sequence[Tuple[str, str]]) -> None:
        table = Table(title="Commands", show_header=False, box=None)
        table.add_column(style="bold cyan")
        table.add_column()
        for cmd, desc in commands:
            table.add_row(escape(cmd), escape(desc))
        self.console.print(table)

    def show_history(self, session: Optional[ConversationSession]) -> None:
        if not session or not session.messages:
            self.console.print("[yellow]No conversation history yet[/]")
            return
        self.console.print(f"[bold blue]History: {escape(session.title)}[/]")
        for msg in session.messages:
            who = "You" if msg.role == "user" else "Assistant"
            color = "green" if msg.role == "user" else "blue"
            self.console.print(f"[{color}]{who} ({msg.timestamp.astimezone():%H:%M:%S}):[/]")
            self.console.print(msg.content, highlight=False, markup=False)
            self.console.print()

    def show_sessions(self, sessions: Sequence[ConversationSession], current_id: Optional[str]) -> None:
        if not sessions:
            self.console.print("[yellow]No saved sessions[/]")
            return
        table = Table(title="Sessions")
        table.add_column("")
        table.add_column("Id", style="grey50")
        table.add_column("Title")
        table.add_column("Messages", justify="right")
        table.add_column("Updated")
        for session in sessions:
            marker = "*" if session.id == current_id else ""
            table.add_row(
                marker,
                escape(session.id),
                escape(session.title),
                str(len(session.messages)),
                f"{session.updated_at.astimezone():%Y-%m-%d %H:%M}",
            )
        self.console.print(table)

    def show_models(self, models: Iterable[str]) -> None:
        names: List[str] = list(models)
        if not names:
            self.console.print("[yellow]No models available[/]")
            return
        self.console.print("[bold blue]Available models:[/]")
        for name in names:
            self.console.print(f"  - {escape(name)}")

    def show_languages(self, languages: Iterable[SupportedLanguage]) -> None:
        self.console.print("[bold blue]Supported languages:[/]")
        for lang in languages:
            self.console.print(f"  - {lang.name} ({', '.join(lang.extensions)})")

    def show_stats(self, session: ConversationSession, stats: SessionStats) -> None:
        table = Table(title=escape(session.title), show_header=False)
        table.add_column(style="cyan")
        table.add_column(justify="right")
        table.add_row("Messages", str(stats.total_messages))
        table.add_row("User", str(stats.user_messages))
        table.add_row("Assistant", str(stats.assistant_messages))
        table.add_row("Tokens", str(stats.total_tokens))
        table.add_row("Duration", f"{stats.duration_ms / 1000:.1f}s")
        self.console.print(table)

    def info(self, message: str) -> None:
        self.console.print(f"[blue]{escape(message)}[/]")

    def success(self, message: str) -> None:
        self.console.print(f"[green]{escape(message)}[/]")

    def warning(self, message: str) -> None:
        if self._streamed:
            self.console.print()
            self._streamed = False
        self.console.print(f"[yellow]{escape(message)}[/]")

    def error(self, message: str) -> None:
        self.console.print(f"[red]Error: {escape(message)}[/]")


class ConsoleInput:
    """Line input from the terminal; ``None`` signals end of input."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self._console = console or Console()
        self.closed = False

    def read_line(self, prompt: str) -> Optional[str]:
        if self.closed:
            return None
        try:
            return self._console.input(f"[bold green]{prompt}[/]")
        except EOFError:
            return None

    def close(self) -> None:
        self.closed = True
