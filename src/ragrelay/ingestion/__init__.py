"""Document chunking and text extraction."""

from .chunking import TextChunker
from .extraction import APPLICATION_PDF, TEXT_PLAIN, extract_text, normalize_mime_type, supported_mime_types

__all__ = [
    "APPLICATION_PDF",
    "TEXT_PLAIN",
    "TextChunker",
    "extract_text",
    "normalize_mime_type",
    "supported_mime_types",
]
