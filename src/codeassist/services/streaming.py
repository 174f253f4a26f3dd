"""Incremental delivery of one backend response.

The backend answers in a single call; the pipeline replays the code as an
ordered stream of chunk events followed by exactly one terminal event, and
refuses to start a second stream while one is outstanding.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import AsyncIterator, Callable, List, Optional

from ..core.state_machine import GenerationState, StateMachine
from ..domain.chat_models import CodeResult, GenerationRequest
from ..domain.events import ChunkEvent, CompleteEvent, ErrorEvent, StreamEvent
from ..observability.metrics import observe_generation
from .backend import CodeBackend
from .telemetry_sink import TelemetryEvent, record_event, record_metric

logger = logging.getLogger("codeassist.streaming")

MIN_CHUNK_LINES = 2
MAX_CHUNK_LINES = 5


class PipelineBusyError(RuntimeError):
    """A generation was requested while another stream is still running."""

    def __init__(self) -> None:
        super().__init__("Already streaming. Please wait for the current generation to complete.")


class BackendTimeoutError(TimeoutError):
    pass


class GenerationStopped(Exception):
    """The stream was stopped before all chunks were delivered."""


def chunk_code(code: str, rng: Optional[random.Random] = None) -> List[str]:
    """Split ``code`` into groups of 2-5 lines.

    Every chunk is non-empty and ``"".join(chunks) == code``.
    """
    rng = rng or random.Random()
    lines = code.splitlines(keepends=True)
    chunks: List[str] = []
    i = 0
    while i < len(lines):
        size = rng.randint(MIN_CHUNK_LINES, MAX_CHUNK_LINES)
        chunks.append("".join(lines[i : i + size]))
        i += size
    return chunks


class EventStream:
    """Async iterator over the events of one generation.

    Closing the stream early releases the pipeline's single-flight guard.
    """

    def __init__(self, events: AsyncIterator[StreamEvent], release: Callable[[], None]) -> None:
        self._events = events
        self._release = release

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> StreamEvent:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        try:
            await self._events.aclose()  # type: ignore[attr-defined]
        finally:
            self._release()

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class StreamingPipeline:
    def __init__(
        self,
        backend: CodeBackend,
        *,
        timeout: Optional[float] = 60.0,
        delay_range: tuple[float, float] = (0.05, 0.15),
        rng: Optional[random.Random] = None,
    ) -> None:
        self._backend = backend
        self._timeout = timeout
        self._delay_range = delay_range
        self._rng = rng or random.Random()
        self._machine = StateMachine()
        self._stop_requested = False
        self._stream_seq = 0

    @property
    def is_streaming(self) -> bool:
        return self._machine.is_generating

    @property
    def state(self) -> GenerationState:
        return self._machine.state

    def generate(self, request: GenerationRequest) -> EventStream:
        """Start a generation and return its event stream.

        Raises ``PipelineBusyError`` immediately if a stream is outstanding.
        """
        if self._machine.is_generating:
            record_event(TelemetryEvent(name="stream_rejected_busy"))
            raise PipelineBusyError()
        self._machine.transition(GenerationState.GENERATING)
        self._stop_requested = False
        self._stream_seq += 1
        seq = self._stream_seq
        record_event(TelemetryEvent(name="stream_started", properties={"language": request.language}))
        return EventStream(self._run(request, seq), lambda: self._release(seq))

    def stop(self) -> bool:
        """Stop emitting chunks for the active stream. Returns False when idle."""
        if not self._machine.is_generating:
            return False
        self._stop_requested = True
        return True

    def _release(self, seq: int) -> None:
        # a late close of an old stream must not release a newer one
        if seq == self._stream_seq and self._machine.is_generating:
            self._machine.transition(GenerationState.IDLE)

    async def _call_backend(self, request: GenerationRequest) -> CodeResult:
        call = asyncio.to_thread(self._backend.generate_code, request)
        if self._timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            # the worker thread keeps running; its result is discarded
            raise BackendTimeoutError(f"Backend did not respond within {self._timeout:g}s") from exc

    async def _pace(self) -> None:
        low, high = self._delay_range
        if high <= 0:
            return
        await asyncio.sleep(self._rng.uniform(max(0.0, low), high))

    def _stopped_event(self, delivered: int) -> ErrorEvent:
        record_event(TelemetryEvent(name="stream_stopped", properties={"chunks_delivered": delivered}))
        observe_generation("stopped")
        return ErrorEvent(reason="Generation stopped", error=GenerationStopped(), cancelled=True)

    async def _run(self, request: GenerationRequest, seq: int) -> AsyncIterator[StreamEvent]:
        started = time.perf_counter()
        try:
            try:
                result = await self._call_backend(request)
            except Exception as exc:
                elapsed = time.perf_counter() - started
                logger.warning("generation_failed err=%s", exc)
                observe_generation("error", elapsed)
                yield ErrorEvent(reason=str(exc) or exc.__class__.__name__, error=exc)
                return
            elapsed = time.perf_counter() - started
            record_metric(name="generation_latency_seconds", value=elapsed, properties={"language": result.language})

            delivered: List[str] = []
            for chunk in chunk_code(result.code, self._rng):
                if self._stop_requested:
                    yield self._stopped_event(len(delivered))
                    return
                await self._pace()
                if self._stop_requested:
                    yield self._stopped_event(len(delivered))
                    return
                delivered.append(chunk)
                yield ChunkEvent(chunk)

            if self._stop_requested:
                yield self._stopped_event(len(delivered))
                return
            observe_generation("complete", elapsed)
            yield CompleteEvent(result.model_copy(update={"code": "".join(delivered)}))
        finally:
            self._release(seq)
