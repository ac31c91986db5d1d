"""Runtime configuration for the relay server."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ragrelay.errors import ConfigurationError


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(
        env_prefix="ragrelay_",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    environment: Literal["dev", "test", "prod"] = "dev"

    # Credentials shared by the embedding provider and the realtime upstream
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ragrelay_openai_api_key", "openai_api_key"),
    )

    # Listener
    host: str = "0.0.0.0"
    port: int = Field(default=8081, validation_alias=AliasChoices("ragrelay_port", "port"))
    relay_path: str = "/"
    log_level: str = "INFO"

    # Upstream realtime API
    realtime_url: str = "wss://api.openai.com/v1/realtime"
    realtime_model: str = "gpt-4o-realtime-preview-2024-10-01"
    upstream_connect_timeout_seconds: float = 10.0
    response_timeout_seconds: float = 30.0
    context_settle_seconds: float = 0.0

    # Embeddings
    embedding_model: str = "text-embedding-ada-002"
    embedding_dim: int = 1536
    use_model_embeddings: bool = True
    embedding_timeout_seconds: float = 30.0

    # Retrieval
    similarity_threshold: float = 0.1
    top_k: int = 1
    chunked_ingestion: bool = False
    chunk_size: int = 1000
    chunk_overlap: int = 200

    # Uploads
    max_upload_size_mb: int = 10
    allow_pdf: bool = True

    # CORS
    cors_allow_origins: tuple[str, ...] = ("*",)
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "DELETE", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("Content-Type",)

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    def require_credentials(self) -> str:
        """Return the API key or fail; the process must not start without it."""

        key = (self.openai_api_key or "").strip()
        if not key:
            raise ConfigurationError(
                'Environment variable "OPENAI_API_KEY" is required. Please set it in your .env file.'
            )
        return key


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
