"""In-memory document store with exhaustive cosine search.

Every query scans all stored units, O(N * D) for N units of dimension D.
That is fine for the tens to low hundreds of documents a relay holds; a
larger deployment should put an approximate index behind the same
``similarity_search`` contract.
"""

from __future__ import annotations

import itertools
import math
import threading
from types import MappingProxyType
from typing import Dict, List, Mapping, Protocol, Sequence, Tuple

from ragrelay.errors import InvalidEmbeddingError
from ragrelay.models import Chunk, Document, SimilarityResult, StoredEntry

EntryKey = Tuple[str, int]


class DocumentStore(Protocol):
    """Protocol for embedding stores used by the retrieval engine."""

    def put(self, name: str, text: str, embedding: Sequence[float]) -> None:
        """Insert or replace ``name`` as a single embedded unit."""

    def put_chunks(self, name: str, chunks: Sequence[Chunk], embeddings: Sequence[Sequence[float]]) -> int:
        """Replace every unit of ``name`` with one unit per chunk."""

    def delete(self, name: str) -> bool:
        """Remove ``name``; missing names are not an error."""

    def similarity_search(
        self,
        query_embedding: Sequence[float],
        *,
        top_k: int,
        min_score: float,
    ) -> Sequence[SimilarityResult]:
        """Return at most ``top_k`` units scoring at least ``min_score``."""

    def names(self) -> Sequence[str]:
        """Return stored document names in insertion order."""

    def unit_counts(self) -> Mapping[str, int]:
        """Return the number of stored units per document name."""

    def count(self) -> int:
        """Return the number of stored units."""


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    numerator = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return numerator / (norm_a * norm_b)


def _order(entry: StoredEntry) -> Tuple[int, int]:
    return entry.sequence, entry.chunk_index


class InMemoryDocumentStore:
    """Copy-on-write store keyed by ``(document name, chunk index)``.

    Writers build a fresh mapping under a lock and publish it with a single
    reference swap. Readers take the current mapping once and scan it without
    locking, so a search never sees a document that is half replaced.
    """

    def __init__(self) -> None:
        self._entries: Mapping[EntryKey, StoredEntry] = MappingProxyType({})
        self._dimension: int | None = None
        self._write_lock = threading.Lock()
        self._sequence = itertools.count()

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def put(self, name: str, text: str, embedding: Sequence[float]) -> None:
        chunk = Chunk(source=name, index=0, text=text, start=0, end=len(text))
        self.put_chunks(name, [chunk], [embedding])

    def put_chunks(self, name: str, chunks: Sequence[Chunk], embeddings: Sequence[Sequence[float]]) -> int:
        if len(chunks) != len(embeddings):
            raise InvalidEmbeddingError(
                f"Got {len(embeddings)} embeddings for {len(chunks)} chunks of {name!r}"
            )
        if not chunks:
            raise InvalidEmbeddingError(f"No chunks to store for {name!r}")
        vectors = [self._coerce(vector) for vector in embeddings]
        dimension = len(vectors[0])
        if any(len(vector) != dimension for vector in vectors):
            raise InvalidEmbeddingError(f"Embeddings for {name!r} differ in dimension")
        with self._write_lock:
            updated: Dict[EntryKey, StoredEntry] = {}
            sequence: int | None = None
            for key, entry in self._entries.items():
                if key[0] == name:
                    sequence = entry.sequence
                else:
                    updated[key] = entry
            # only other documents pin the dimensionality
            if updated and self._dimension is not None and self._dimension != dimension:
                raise InvalidEmbeddingError(
                    f"Embedding has dimension {dimension}, store holds {self._dimension}"
                )
            # a replaced document keeps its place in the insertion order
            if sequence is None:
                sequence = next(self._sequence)
            for chunk, vector in zip(chunks, vectors):
                updated[(name, chunk.index)] = StoredEntry(
                    name=name,
                    chunk_index=chunk.index,
                    text=chunk.text,
                    embedding=vector,
                    sequence=sequence,
                )
            self._dimension = dimension
            self._entries = MappingProxyType(updated)
        return len(chunks)

    def delete(self, name: str) -> bool:
        with self._write_lock:
            remaining = {key: entry for key, entry in self._entries.items() if key[0] != name}
            removed = len(remaining) != len(self._entries)
            if removed:
                self._entries = MappingProxyType(remaining)
                if not remaining:
                    self._dimension = None
        return removed

    def similarity_search(
        self,
        query_embedding: Sequence[float],
        *,
        top_k: int,
        min_score: float,
    ) -> List[SimilarityResult]:
        if top_k <= 0:
            return []
        query = self._coerce(query_embedding)
        snapshot = self._entries
        if not snapshot:
            return []
        expected = len(next(iter(snapshot.values())).embedding)
        if len(query) != expected:
            raise InvalidEmbeddingError(
                f"Query embedding has dimension {len(query)}, store holds {expected}"
            )
        scored: list[tuple[float, StoredEntry]] = []
        for entry in snapshot.values():
            score = cosine_similarity(query, entry.embedding)
            if score >= min_score:
                scored.append((score, entry))
        scored.sort(key=lambda pair: _order(pair[1]))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [
            SimilarityResult(name=entry.name, chunk_index=entry.chunk_index, text=entry.text, score=score)
            for score, entry in scored[:top_k]
        ]

    def get(self, name: str) -> List[StoredEntry]:
        snapshot = self._entries
        entries = [entry for key, entry in snapshot.items() if key[0] == name]
        return sorted(entries, key=lambda entry: entry.chunk_index)

    def get_document(self, name: str) -> Document | None:
        """Return ``name`` when it is stored as one whole-document unit."""

        entries = self.get(name)
        if len(entries) != 1:
            return None
        entry = entries[0]
        return Document(name=entry.name, text=entry.text, embedding=entry.embedding)

    def names(self) -> List[str]:
        seen: dict[str, int] = {}
        for entry in sorted(self._entries.values(), key=_order):
            seen.setdefault(entry.name, entry.sequence)
        return list(seen)

    def unit_counts(self) -> Dict[str, int]:
        counts: dict[str, int] = {}
        for entry in sorted(self._entries.values(), key=_order):
            counts[entry.name] = counts.get(entry.name, 0) + 1
        return counts

    def count(self) -> int:
        return len(self._entries)

    @staticmethod
    def _coerce(vector: Sequence[float]) -> Tuple[float, ...]:
        if vector is None or len(vector) == 0:
            raise InvalidEmbeddingError("Embedding vectors must not be empty")
        return tuple(float(value) for value in vector)
