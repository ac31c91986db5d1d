"""Embedding backends for the retrieval layer."""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Protocol, Sequence, Tuple

from langchain_core.embeddings import Embeddings as LangChainEmbeddings
from langchain_openai import OpenAIEmbeddings

from ragrelay.config import Settings
from ragrelay.errors import EmbeddingFailure

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "text-embedding-ada-002"
    dim: int = 1536
    normalize: bool = True
    max_retries: int = 2


class EmbeddingBackend(Protocol):
    """Maps text to a fixed-length vector."""

    async def embed_query(self, text: str) -> Tuple[float, ...]:
        """Return the embedding vector for ``text``."""


def _normalize(vector: Sequence[float]) -> Tuple[float, ...]:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


class HashEmbeddingBackend:
    """Deterministic lightweight embedding fallback used for testing."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig(dim=64)

    @property
    def dim(self) -> int:
        return self._config.dim

    def _hash_to_vector(self, text: str) -> Tuple[float, ...]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = [byte / 255.0 for byte in raw]
        if self._config.normalize:
            return _normalize(vector)
        return tuple(vector)

    async def embed_query(self, text: str) -> Tuple[float, ...]:
        return self._hash_to_vector(text)


class OpenAIEmbeddingBackend:
    """Embedding backend calling the OpenAI embeddings API through LangChain."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        api_key: str | None = None,
        client: LangChainEmbeddings | None = None,
    ) -> None:
        self._config = config or EmbeddingConfig()
        if client is not None:
            self._client = client
        else:
            self._client = OpenAIEmbeddings(
                model=self._config.model,
                api_key=api_key,
                max_retries=self._config.max_retries,
            )
        LOGGER.info("Initializing OpenAI embeddings with model: %s", self._config.model)

    async def embed_query(self, text: str) -> Tuple[float, ...]:
        try:
            vector = await self._client.aembed_query(text)
        except Exception as exc:
            raise EmbeddingFailure(f"Embedding request failed: {exc}") from exc
        if not vector:
            raise EmbeddingFailure("Embedding provider returned an empty vector")
        if len(vector) != self._config.dim:
            LOGGER.warning(
                "Embedding dim mismatch: configured=%d, actual=%d",
                self._config.dim,
                len(vector),
            )
        if self._config.normalize:
            return _normalize(vector)
        return tuple(vector)


def build_embedding_backend(settings: Settings) -> EmbeddingBackend:
    """Pick the embedding backend described by ``settings``."""

    if not settings.use_model_embeddings:
        LOGGER.info("Embeddings running in hash-only mode.")
        return HashEmbeddingBackend(EmbeddingConfig(model="sha256", dim=settings.embedding_dim))
    config = EmbeddingConfig(model=settings.embedding_model, dim=settings.embedding_dim)
    return OpenAIEmbeddingBackend(config, api_key=settings.require_credentials())
