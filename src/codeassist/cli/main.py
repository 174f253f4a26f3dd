"""Command-line entry point for the interactive code assistant.

Usage:
    codeassist                      # a session is created on the first prompt
    codeassist --new "Parser work"  # start a titled session
    codeassist --session <id>       # continue a saved session
    codeassist -p "sort a list" -l python   # generate once and exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from .. import __version__, set_log_level
from ..config import AssistantConfig, ConfigError, load_config
from ..infrastructure.session_store import FileSessionStore, SessionStore
from ..observability.metrics import start_metrics_server
from ..services.backend import get_backend
from ..services.streaming import StreamingPipeline
from .controller import InteractionController
from .renderer import ConsoleInput, RichRenderer

logger = logging.getLogger("codeassist.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="codeassist", description="Interactive terminal code assistant")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--session", metavar="ID", help="Resume a saved session")
    parser.add_argument("--new", nargs="?", const="", metavar="TITLE", help="Start a new session")
    parser.add_argument("-p", "--prompt", help="Generate code for this prompt and exit")
    parser.add_argument("--context", help="Additional context for the generation")
    parser.add_argument("-m", "--model", help="Model name passed to the backend")
    parser.add_argument("-l", "--language", help="Language for the prompt (default when the prompt names none)")
    parser.add_argument("-t", "--temperature", type=float, help="Sampling temperature (0-2)")
    parser.add_argument("--max-tokens", type=int, help="Maximum tokens to generate (1-8000)")
    parser.add_argument("--theme", choices=("light", "dark"), help="Syntax highlighting theme")
    parser.add_argument("--backend", choices=("template", "local"), help="Code generation backend")
    parser.add_argument("--config", metavar="FILE", help="Path to a JSON config file")
    parser.add_argument("--no-stream-delay", action="store_true", help="Print chunks without pacing")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        "model": args.model,
        "default_language": args.language,
        "backend": args.backend,
        "temperature": args.temperature,
        "max_tokens": args.max_tokens,
        "theme": args.theme,
    }
    if args.no_stream_delay:
        overrides["stream_delay_min"] = 0.0
        overrides["stream_delay_max"] = 0.0
    return overrides


def build_controller(
    config: AssistantConfig,
    store: SessionStore,
    renderer: RichRenderer,
    input_source: ConsoleInput,
) -> InteractionController:
    backend = get_backend(
        config.backend,
        model=config.model,
        base_url=config.base_url,
        timeout=config.backend_timeout,
        default_language=config.default_language,
    )
    pipeline = StreamingPipeline(
        backend,
        timeout=config.backend_timeout,
        delay_range=(config.stream_delay_min, config.stream_delay_max),
    )
    return InteractionController(store, pipeline, renderer, input_source, backend, config)


async def _run(controller: InteractionController, renderer: RichRenderer, args: argparse.Namespace) -> int:
    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        if not controller.cancel():
            renderer.info("Type /exit or press Ctrl-D to quit")

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not supported on this platform")
    if args.prompt is not None:
        return await controller.run_once(args.prompt, language=args.language, context=args.context)
    return await controller.run()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.prompt is not None and not args.prompt.strip():
        parser.error("--prompt must not be empty")
    if args.debug:
        set_log_level("DEBUG")
    try:
        config = load_config(args.config, overrides=config_overrides(args))
    except ConfigError as exc:
        print(f"codeassist: {exc}", file=sys.stderr)
        return 2

    if config.metrics_port:
        start_metrics_server(config.metrics_port)

    renderer = RichRenderer(theme=config.theme)
    store = FileSessionStore(config.data_dir)
    controller = build_controller(config, store, renderer, ConsoleInput(renderer.console))
    if args.session:
        if store.set_current_session(args.session):
            renderer.success(f"Resumed session {args.session}")
        else:
            renderer.warning(f"Session not found: {args.session}")
    elif args.new is not None:
        session = store.create_session(args.new or None)
        renderer.success(f"Started new session: {session.title}")

    try:
        return asyncio.run(_run(controller, renderer, args))
    except KeyboardInterrupt:
        renderer.show_goodbye()
        return 130


if __name__ == "__main__":
    sys.exit(main())
