"""Observability helpers for the relay."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int | str = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.unbind_contextvars("correlation_id")
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def bind_session_id(session_id: str) -> None:
    structlog.contextvars.bind_contextvars(session_id=session_id)


def clear_session_id() -> None:
    structlog.contextvars.unbind_contextvars("session_id")


def get_logger(name: str = "ragrelay") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class RelayMetrics:
    """Prometheus metrics for sessions, forwarding and retrieval."""

    sessions_total = Counter(
        "ragrelay_sessions_total",
        "Relay sessions by terminal state.",
        ["state"],
    )
    active_sessions = Gauge(
        "ragrelay_active_sessions",
        "Relay sessions currently open.",
    )
    rejected_connections = Counter(
        "ragrelay_rejected_connections_total",
        "Inbound connections refused before a session was created.",
    )
    forwarded_messages = Counter(
        "ragrelay_forwarded_messages_total",
        "Messages forwarded through the relay.",
        ["direction", "type"],
    )
    client_errors = Counter(
        "ragrelay_client_errors_total",
        "Structured error events sent to clients.",
        ["code"],
    )
    context_injections = Counter(
        "ragrelay_context_injections_total",
        "Text turns that were augmented with retrieved context.",
    )
    ingestion_latency = Histogram(
        "ragrelay_ingestion_duration_seconds",
        "Time spent ingesting documents.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    ingestion_units = Histogram(
        "ragrelay_ingestion_unit_count",
        "Embedded units stored per ingested document.",
        buckets=(0, 1, 5, 10, 20, 40, 80),
    )
    retrieval_latency = Histogram(
        "ragrelay_retrieval_duration_seconds",
        "Time spent retrieving context.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 30.0),
    )
    retrieved_count = Histogram(
        "ragrelay_retrieved_count",
        "Number of context results returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    retrieval_score = Histogram(
        "ragrelay_retrieval_score",
        "Cosine similarity of returned context results.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    retrieval_failures = Counter(
        "ragrelay_retrieval_failures_total",
        "Retrieval lookups that degraded to empty context.",
        ["reason"],
    )

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, unit_count: int) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        cls.ingestion_units.observe(unit_count)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        result_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_count.observe(result_count)
        for score in scores:
            cls.retrieval_score.observe(_clamp_score(score))

    @classmethod
    def observe_forward(cls, direction: str, event_type: str) -> None:
        cls.forwarded_messages.labels(direction=direction, type=event_type).inc()


__all__ = [
    "RelayMetrics",
    "bind_correlation_id",
    "bind_session_id",
    "clear_correlation_id",
    "clear_session_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
