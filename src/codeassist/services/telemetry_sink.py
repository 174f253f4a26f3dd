"""In-process telemetry for the assistant.

Events go to the ``codeassist.telemetry`` logger and into a small ring buffer
that tests and the debug log can inspect. Nothing leaves the process.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

_logger = logging.getLogger("codeassist.telemetry")
_metric_logger = logging.getLogger("codeassist.metrics")

MAX_BUFFERED_EVENTS = 200
METRIC_TYPES = ("gauge", "counter", "gauge_delta")


@dataclass
class TelemetryEvent:
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(UTC))


_events: Deque[TelemetryEvent] = deque(maxlen=MAX_BUFFERED_EVENTS)
_events_lock = Lock()


def record_event(event: TelemetryEvent) -> None:
    with _events_lock:
        _events.append(event)
    _logger.debug(
        "telemetry_event name=%s session=%s properties=%s",
        event.name,
        event.session_id,
        event.properties,
    )


def list_recent_events(limit: int = 50, name: Optional[str] = None) -> List[TelemetryEvent]:
    """Newest ``limit`` buffered events, oldest first, optionally filtered by name."""
    if limit <= 0:
        return []
    with _events_lock:
        matching = [e for e in _events if name is None or e.name == name]
    return matching[-limit:]


def clear_recent_events() -> None:
    with _events_lock:
        _events.clear()


def record_metric(
    *,
    name: str,
    value: float,
    properties: Optional[Dict[str, Any]] = None,
    metric_type: str = "gauge",
) -> None:
    if metric_type not in METRIC_TYPES:
        _metric_logger.warning("metric_type_unknown name=%s type=%s", name, metric_type)
        return
    _metric_logger.debug(
        "metric_event name=%s type=%s value=%s properties=%s",
        name,
        metric_type,
        value,
        dict(properties or {}),
    )
