"""Text extraction for uploaded documents."""

from __future__ import annotations

from langchain_community.document_loaders.parsers import PyPDFParser
from langchain_core.documents.base import Blob

from ragrelay.errors import IngestionFailed, UnsupportedMediaType

TEXT_PLAIN = "text/plain"
APPLICATION_PDF = "application/pdf"


def normalize_mime_type(mime_type: str | None) -> str:
    """Drop parameters such as ``; charset=utf-8`` and lowercase the type."""

    return (mime_type or "").split(";", 1)[0].strip().lower()


def supported_mime_types(*, allow_pdf: bool) -> frozenset[str]:
    if allow_pdf:
        return frozenset({TEXT_PLAIN, APPLICATION_PDF})
    return frozenset({TEXT_PLAIN})


def extract_text(name: str, mime_type: str, data: bytes, *, allow_pdf: bool = True) -> str:
    """Return the text content of an uploaded document.

    Plain text is decoded exactly as UTF-8. PDF extraction is best effort:
    only the text layer pypdf can read survives, layout and images are lost.
    """

    media_type = normalize_mime_type(mime_type)
    if media_type not in supported_mime_types(allow_pdf=allow_pdf):
        raise UnsupportedMediaType(f"Unsupported media type for {name!r}: {mime_type or '<none>'}")
    if media_type == TEXT_PLAIN:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise IngestionFailed(f"{name!r} is not valid UTF-8 text: {exc}") from exc
    try:
        blob = Blob.from_data(data, mime_type=APPLICATION_PDF, path=name)
        pages = PyPDFParser().lazy_parse(blob)
        return "\n".join(page.page_content for page in pages)
    except Exception as exc:  # pypdf raises a wide range of parse errors
        raise IngestionFailed(f"Failed to extract text from {name!r}: {exc}") from exc
