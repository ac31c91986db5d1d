"""Shared domain models used across the relay and retrieval layers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class Document:
    """A whole document stored as a single embedded unit."""

    name: str
    text: str
    embedding: Tuple[float, ...]


@dataclass(frozen=True)
class Chunk:
    """Contiguous slice of a document's text with its provenance."""

    source: str
    index: int
    text: str
    start: int
    end: int


@dataclass(frozen=True)
class StoredEntry:
    """One embedded unit held by the document store."""

    name: str
    chunk_index: int
    text: str
    embedding: Tuple[float, ...]
    sequence: int


@dataclass(frozen=True)
class SimilarityResult:
    """Store-level match for a query embedding."""

    name: str
    chunk_index: int
    text: str
    score: float


@dataclass(frozen=True)
class ContextResult:
    """Retrieved context handed to the relay."""

    source_name: str
    text: str
    score: float
