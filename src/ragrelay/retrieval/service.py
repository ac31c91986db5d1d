"""Retrieval orchestration on top of the document store."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from ragrelay.embeddings import DocumentStore, EmbeddingBackend
from ragrelay.errors import (
    EmbeddingFailure,
    EmbeddingTimeout,
    IngestionFailed,
    InvalidEmbeddingError,
    RetrievalError,
)
from ragrelay.ingestion import TextChunker, extract_text
from ragrelay.metrics.observability import RelayMetrics, get_logger
from ragrelay.models import Chunk, ContextResult


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval and ingestion."""

    top_k: int = 1
    min_score: float = 0.1
    embedding_timeout_seconds: float = 30.0
    chunked: bool = False
    chunk_size: int = 1000
    chunk_overlap: int = 200
    allow_pdf: bool = True


class RetrievalEngine:
    """Answers "what context is relevant to this text" and manages documents.

    One engine is shared by every relay session. Queries only read the
    store; ingestion and removal publish whole documents atomically.
    """

    def __init__(
        self,
        store: DocumentStore,
        backend: EmbeddingBackend,
        config: RetrievalConfig | None = None,
        *,
        chunker: TextChunker | None = None,
    ) -> None:
        self._store = store
        self._backend = backend
        self._config = config or RetrievalConfig()
        self._chunker = chunker or TextChunker(
            chunk_size=self._config.chunk_size,
            chunk_overlap=self._config.chunk_overlap,
        )
        self._logger = get_logger("retrieval")

    @property
    def config(self) -> RetrievalConfig:
        return self._config

    @property
    def store(self) -> DocumentStore:
        return self._store

    async def query_context(
        self,
        query_text: str,
        *,
        top_k: int | None = None,
        min_score: float | None = None,
    ) -> List[ContextResult]:
        """Return relevant context, or ``[]`` when nothing matches or lookup fails."""

        if not query_text or not query_text.strip():
            return []
        limit = self._config.top_k if top_k is None else top_k
        threshold = self._config.min_score if min_score is None else min_score
        start = time.perf_counter()
        try:
            query_embedding = await self._embed(query_text)
            matches = self._store.similarity_search(query_embedding, top_k=limit, min_score=threshold)
        except RetrievalError as exc:
            RelayMetrics.retrieval_failures.labels(reason=type(exc).__name__).inc()
            self._logger.warning("retrieval.failed", error=str(exc), error_type=type(exc).__name__)
            return []
        except Exception as exc:
            RelayMetrics.retrieval_failures.labels(reason="unexpected").inc()
            self._logger.error("retrieval.error", error=str(exc), error_type=type(exc).__name__)
            return []
        results = [ContextResult(source_name=match.name, text=match.text, score=match.score) for match in matches]
        duration = time.perf_counter() - start
        RelayMetrics.observe_retrieval(duration, len(results), (result.score for result in results))
        self._logger.info(
            "retrieval.complete",
            result_count=len(results),
            top_k=limit,
            min_score=threshold,
            duration_seconds=duration,
        )
        return results

    async def ingest(self, name: str, mime_type: str, data: bytes) -> int:
        """Extract, embed and store a document; returns the stored unit count."""

        start = time.perf_counter()
        # extraction runs off the event loop
        text = await asyncio.to_thread(extract_text, name, mime_type, data, allow_pdf=self._config.allow_pdf)
        if not text.strip():
            raise IngestionFailed(f"No text could be extracted from {name!r}")
        self._logger.info("ingestion.extracted", name=name, characters=len(text))

        if self._config.chunked:
            chunks = self._chunker.split(text, source=name)
        else:
            chunks = [Chunk(source=name, index=0, text=text, start=0, end=len(text))]

        # every embedding is computed before the store is touched
        embeddings: List[Tuple[float, ...]] = []
        for chunk in chunks:
            try:
                embeddings.append(await self._embed(chunk.text))
            except EmbeddingFailure as exc:
                self._logger.error(
                    "ingestion.embedding_failed",
                    name=name,
                    chunk_index=chunk.index,
                    chunk_count=len(chunks),
                    error=str(exc),
                )
                raise IngestionFailed(f"Embedding generation failed for {name!r}: {exc}") from exc

        try:
            stored = self._store.put_chunks(name, chunks, embeddings)
        except InvalidEmbeddingError as exc:
            raise IngestionFailed(f"Could not store {name!r}: {exc}") from exc

        duration = time.perf_counter() - start
        RelayMetrics.observe_ingestion(duration, stored)
        self._logger.info("ingestion.complete", name=name, unit_count=stored, duration_seconds=duration)
        return stored

    def remove(self, name: str) -> bool:
        removed = self._store.delete(name)
        self._logger.info("document.removed", name=name, existed=removed)
        return True

    def list_documents(self) -> Dict[str, int]:
        return self._store.unit_counts()

    async def _embed(self, text: str) -> Sequence[float]:
        timeout = self._config.embedding_timeout_seconds
        try:
            return await asyncio.wait_for(self._backend.embed_query(text), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingTimeout(f"Embedding generation timed out after {timeout:g}s") from exc
        except EmbeddingFailure:
            raise
        except Exception as exc:
            raise EmbeddingFailure(f"Embedding generation failed: {exc}") from exc
