"""Tests for the retrieval engine."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Tuple

import pytest

from ragrelay.embeddings import EmbeddingConfig, HashEmbeddingBackend, InMemoryDocumentStore
from ragrelay.errors import EmbeddingFailure, IngestionFailed, UnsupportedMediaType
from ragrelay.retrieval import RetrievalConfig, RetrievalEngine


class SlowBackend:
    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.started = asyncio.Event()
        self.cancelled = False

    async def embed_query(self, text: str) -> Tuple[float, ...]:
        self.started.set()
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return (1.0, 0.0)


class FlakyBackend:
    """Succeeds ``successes`` times, then fails."""

    def __init__(self, successes: int) -> None:
        self.remaining = successes
        self._delegate = HashEmbeddingBackend(EmbeddingConfig(dim=16))

    async def embed_query(self, text: str) -> Tuple[float, ...]:
        if self.remaining <= 0:
            raise EmbeddingFailure("rate limited")
        self.remaining -= 1
        return await self._delegate.embed_query(text)


def make_engine(backend=None, **config) -> RetrievalEngine:
    return RetrievalEngine(
        InMemoryDocumentStore(),
        backend or HashEmbeddingBackend(EmbeddingConfig(dim=64)),
        RetrievalConfig(**config),
    )


def test_ingest_then_query_returns_document():
    async def scenario():
        engine = make_engine()
        assert await engine.ingest("doc1", "text/plain", b"Paris has the Eiffel Tower.") == 1
        return await engine.query_context("What is in Paris?", top_k=1, min_score=0.1)

    results = asyncio.run(scenario())
    assert len(results) == 1
    assert results[0].source_name == "doc1"
    assert results[0].text == "Paris has the Eiffel Tower."
    assert results[0].score > 0


def test_query_against_empty_store_returns_empty():
    assert asyncio.run(make_engine().query_context("What is in Paris?")) == []


def test_blank_query_skips_embedding():
    backend = FlakyBackend(successes=0)
    assert asyncio.run(make_engine(backend).query_context("   ")) == []


def test_embedding_timeout_degrades_to_no_context():
    async def scenario():
        engine = make_engine(SlowBackend(delay=5.0), embedding_timeout_seconds=0.05)
        engine.store.put("doc", "text", (1.0, 0.0))
        return await engine.query_context("anything")

    assert asyncio.run(scenario()) == []


def test_embedding_failure_degrades_to_no_context():
    async def scenario():
        engine = make_engine(FlakyBackend(successes=1))
        await engine.ingest("doc", "text/plain", b"some text")
        return await engine.query_context("some text")

    assert asyncio.run(scenario()) == []


def test_query_cancellation_reaches_embedding_call():
    backend = SlowBackend(delay=5.0)

    async def scenario():
        engine = make_engine(backend)
        task = asyncio.create_task(engine.query_context("anything"))
        await backend.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert backend.cancelled


def test_unsupported_media_type_is_rejected():
    engine = make_engine()
    with pytest.raises(UnsupportedMediaType):
        asyncio.run(engine.ingest("image.png", "image/png", b"\x89PNG"))
    with pytest.raises(UnsupportedMediaType):
        asyncio.run(make_engine(allow_pdf=False).ingest("doc.pdf", "application/pdf", b"%PDF-1.4"))


def test_mime_parameters_are_ignored():
    engine = make_engine()
    assert asyncio.run(engine.ingest("doc", "Text/Plain; charset=utf-8", b"hello")) == 1


def test_invalid_utf8_fails_ingestion():
    engine = make_engine()
    with pytest.raises(IngestionFailed):
        asyncio.run(engine.ingest("doc", "text/plain", b"\xff\xfe\xfa"))
    assert engine.store.count() == 0


def test_extraction_does_not_block_the_event_loop(monkeypatch):
    threads: list[int] = []

    def slow_extract(name, mime_type, data, *, allow_pdf):
        threads.append(threading.get_ident())
        time.sleep(0.2)
        return data.decode("utf-8")

    monkeypatch.setattr("ragrelay.retrieval.service.extract_text", slow_extract)

    async def scenario():
        ticks = 0
        engine = make_engine()
        ingest = asyncio.create_task(engine.ingest("big.pdf", "application/pdf", b"Paris has the Eiffel Tower."))
        while not ingest.done():
            ticks += 1
            await asyncio.sleep(0.01)
        return await ingest, ticks

    units, ticks = asyncio.run(scenario())
    assert units == 1
    assert threads and threads[0] != threading.get_ident()
    assert ticks > 5


def test_empty_text_fails_ingestion():
    with pytest.raises(IngestionFailed):
        asyncio.run(make_engine().ingest("doc", "text/plain", b"   \n"))


def test_unreadable_pdf_fails_ingestion():
    with pytest.raises(IngestionFailed):
        asyncio.run(make_engine().ingest("doc.pdf", "application/pdf", b"definitely not a pdf"))


def test_chunked_ingestion_stores_one_unit_per_chunk():
    text = ("Paris has the Eiffel Tower. Rome has the Colosseum. " * 20).encode("utf-8")

    async def scenario():
        engine = make_engine(chunked=True, chunk_size=200, chunk_overlap=50)
        units = await engine.ingest("cities", "text/plain", text)
        results = await engine.query_context("Paris", top_k=3, min_score=-1.0)
        return engine, units, results

    engine, units, results = asyncio.run(scenario())
    assert units > 1
    assert engine.list_documents() == {"cities": units}
    assert len(results) == 3
    assert {result.source_name for result in results} == {"cities"}


def test_failed_ingestion_rolls_back():
    text = ("word " * 200).encode("utf-8")

    async def scenario():
        engine = make_engine(FlakyBackend(successes=3), chunked=True, chunk_size=100, chunk_overlap=20)
        engine.store.put("keep", "previous", await HashEmbeddingBackend(EmbeddingConfig(dim=16)).embed_query("x"))
        with pytest.raises(IngestionFailed):
            await engine.ingest("new", "text/plain", text)
        return engine

    engine = asyncio.run(scenario())
    assert engine.list_documents() == {"keep": 1}


def test_failed_reingestion_keeps_previous_version():
    async def scenario():
        engine = make_engine(FlakyBackend(successes=1))
        await engine.ingest("doc", "text/plain", b"first version")
        with pytest.raises(IngestionFailed):
            await engine.ingest("doc", "text/plain", b"second version")
        return engine

    engine = asyncio.run(scenario())
    assert [entry.text for entry in engine.store.get("doc")] == ["first version"]


def test_remove_is_idempotent():
    async def scenario():
        engine = make_engine()
        await engine.ingest("doc1", "text/plain", b"Paris has the Eiffel Tower.")
        assert engine.remove("doc1") is True
        assert engine.remove("doc1") is True
        return await engine.query_context("Paris has the Eiffel Tower.", min_score=-1.0)

    assert asyncio.run(scenario()) == []
