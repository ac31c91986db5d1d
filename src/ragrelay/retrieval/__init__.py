"""Retrieval layer."""

from .service import RetrievalConfig, RetrievalEngine

__all__ = ["RetrievalConfig", "RetrievalEngine"]
