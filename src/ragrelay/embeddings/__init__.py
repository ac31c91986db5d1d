"""Embedding services."""

from .service import (
    EmbeddingBackend,
    EmbeddingConfig,
    HashEmbeddingBackend,
    OpenAIEmbeddingBackend,
    build_embedding_backend,
)
from .store import DocumentStore, InMemoryDocumentStore, cosine_similarity

__all__ = [
    "DocumentStore",
    "EmbeddingBackend",
    "EmbeddingConfig",
    "HashEmbeddingBackend",
    "InMemoryDocumentStore",
    "OpenAIEmbeddingBackend",
    "build_embedding_backend",
    "cosine_similarity",
]
