"""Positional text chunking with sentence/word aware boundaries."""

from __future__ import annotations

from typing import Any, List

from langchain_text_splitters import TextSplitter

from ragrelay.errors import ChunkingConfigError
from ragrelay.models import Chunk

# how far back from the window end a period may sit and still end the chunk
SENTENCE_LOOKBACK = 100


class TextChunker(TextSplitter):
    """Greedy left-to-right splitter producing overlapping windows.

    Each window ends right after the last period in its final
    ``SENTENCE_LOOKBACK`` characters, else right after its last space, else
    at the hard size limit. Chunks keep their raw text so the unique spans
    of consecutive chunks concatenate back to the input.
    """

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 200, **kwargs: Any) -> None:
        if chunk_size <= 0:
            raise ChunkingConfigError("chunk_size must be a positive integer")
        if chunk_overlap < 0:
            raise ChunkingConfigError("chunk_overlap must be a non-negative integer")
        if chunk_overlap >= chunk_size:
            raise ChunkingConfigError(
                f"chunk_overlap ({chunk_overlap}) must be smaller than chunk_size ({chunk_size})"
            )
        kwargs.setdefault("strip_whitespace", False)
        super().__init__(chunk_size=chunk_size, chunk_overlap=chunk_overlap, **kwargs)

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def chunk_overlap(self) -> int:
        return self._chunk_overlap

    def split_text(self, text: str) -> List[str]:
        return [chunk.text for chunk in self.split(text)]

    def split(self, text: str, source: str = "") -> List[Chunk]:
        chunks: List[Chunk] = []
        length = len(text)
        offset = 0
        while offset < length:
            end = self._chunk_end(text, offset)
            chunks.append(Chunk(source=source, index=len(chunks), text=text[offset:end], start=offset, end=end))
            if end >= length:
                break
            next_offset = end - self._chunk_overlap
            if next_offset <= offset:
                next_offset = end
            offset = next_offset
        return chunks

    def _chunk_end(self, text: str, offset: int) -> int:
        end = min(offset + self._chunk_size, len(text))
        if end == len(text):
            return end
        period = text.rfind(".", offset, end)
        if period > offset and period >= end - SENTENCE_LOOKBACK:
            return period + 1
        space = text.rfind(" ", offset + 1, end)
        if space > offset:
            return space + 1
        return end
