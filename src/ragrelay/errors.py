"""Error taxonomy shared by the relay and the retrieval layer."""

from __future__ import annotations

CONNECTION_FAILED = "connection_failed"
TIMEOUT = "timeout"
PROCESSING_ERROR = "processing_error"
UNKNOWN = "unknown"


class RelayError(Exception):
    """Base class for every error raised by ragrelay."""

    code: str = UNKNOWN


class ConfigurationError(RelayError):
    """Raised when required configuration is missing or inconsistent."""


class ChunkingConfigError(ConfigurationError, ValueError):
    """Raised for chunk size / overlap combinations that cannot make progress."""


class UpstreamError(RelayError):
    """Raised when the upstream realtime link fails."""


class UpstreamConnectError(UpstreamError):
    code = CONNECTION_FAILED


class RetrievalError(RelayError):
    """Raised by retrieval steps; recovered locally by the engine."""


class EmbeddingFailure(RetrievalError):
    """Raised when the embedding provider fails."""


class EmbeddingTimeout(EmbeddingFailure):
    code = TIMEOUT


class InvalidEmbeddingError(RetrievalError, ValueError):
    """Raised when an embedding is empty or has the wrong dimensionality."""


class IngestionError(RelayError):
    """Raised when a document cannot be ingested."""


class UnsupportedMediaType(IngestionError):
    """Raised when a document's mime type is not accepted."""


class IngestionFailed(IngestionError):
    """Raised when extraction or embedding fails during ingestion."""


class ParseError(RelayError):
    """Raised when a client frame is not a JSON object."""

    code = PROCESSING_ERROR


class ProtocolViolation(RelayError):
    """Raised when a client connects on a path the relay does not serve."""


def error_event(message: str, code: str = UNKNOWN) -> dict[str, object]:
    """Structured error object sent to clients."""

    return {"type": "error", "error": {"message": message, "code": code}}


__all__ = [
    "CONNECTION_FAILED",
    "PROCESSING_ERROR",
    "TIMEOUT",
    "UNKNOWN",
    "ChunkingConfigError",
    "ConfigurationError",
    "EmbeddingFailure",
    "EmbeddingTimeout",
    "IngestionError",
    "IngestionFailed",
    "InvalidEmbeddingError",
    "ParseError",
    "ProtocolViolation",
    "RelayError",
    "RetrievalError",
    "UnsupportedMediaType",
    "UpstreamConnectError",
    "UpstreamError",
    "error_event",
]
