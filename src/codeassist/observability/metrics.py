"""Prometheus metrics for the code assistant.

Collectors are process-global; ``start_metrics_server`` exposes them over HTTP
when a metrics port is configured.
"""

from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import Counter, Histogram, start_http_server

logger = logging.getLogger("codeassist.observability")

GENERATIONS = Counter(
    "codeassist_generations_total",
    "Generation streams by terminal outcome",
    labelnames=("outcome",),
)

# Backend latency is usually seconds, sometimes a minute for local models
GENERATION_LATENCY = Histogram(
    "codeassist_generation_seconds",
    "Backend generation latency in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

PERSIST_FAILURES = Counter(
    "codeassist_session_persist_failures_total",
    "Session writes that failed and were skipped",
)

_server_port: Optional[int] = None


def observe_generation(outcome: str, elapsed: Optional[float] = None) -> None:
    try:
        GENERATIONS.labels(outcome=outcome).inc()
        if elapsed is not None:
            GENERATION_LATENCY.observe(elapsed)
    except Exception:
        # Never block a generation due to metrics
        pass


def observe_persist_failure() -> None:
    try:
        PERSIST_FAILURES.inc()
    except Exception:
        pass


def start_metrics_server(port: int) -> bool:
    """Start the Prometheus exporter once. Returns True when listening."""
    global _server_port
    if _server_port is not None:
        return _server_port == port
    try:
        start_http_server(port)
    except OSError as exc:
        logger.warning("metrics_server_failed port=%s err=%s", port, exc)
        return False
    _server_port = port
    logger.info("metrics_server_started port=%s", port)
    return True
