"""Events emitted by one generation stream.

A stream yields zero or more ``ChunkEvent`` values followed by exactly one
terminal event: ``CompleteEvent`` or ``ErrorEvent``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .chat_models import CodeResult


@dataclass(frozen=True)
class ChunkEvent:
    text: str


@dataclass(frozen=True)
class CompleteEvent:
    result: CodeResult


@dataclass(frozen=True)
class ErrorEvent:
    reason: str
    error: Optional[BaseException] = None
    cancelled: bool = False


StreamEvent = Union[ChunkEvent, CompleteEvent, ErrorEvent]


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (CompleteEvent, ErrorEvent))
