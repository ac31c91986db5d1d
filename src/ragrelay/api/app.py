"""FastAPI application exposing the relay and its document endpoints."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator
from uuid import uuid4

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ragrelay.api.schemas import (
    DeleteResponse,
    DocumentListResponse,
    DocumentSummary,
    FileInfo,
    UploadResponse,
)
from ragrelay.config import Settings, get_settings
from ragrelay.embeddings import InMemoryDocumentStore, build_embedding_backend
from ragrelay.errors import IngestionFailed, UnsupportedMediaType
from ragrelay.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from ragrelay.relay import ConnectionManager, RealtimeUpstream, RelayConfig, UpstreamConfig
from ragrelay.retrieval import RetrievalConfig, RetrievalEngine

UPLOAD_READ_SIZE = 1024 * 1024


@dataclass(frozen=True)
class AppDependencies:
    engine: RetrievalEngine
    manager: ConnectionManager


def build_retrieval_engine(settings: Settings) -> RetrievalEngine:
    return RetrievalEngine(
        InMemoryDocumentStore(),
        build_embedding_backend(settings),
        RetrievalConfig(
            top_k=settings.top_k,
            min_score=settings.similarity_threshold,
            embedding_timeout_seconds=settings.embedding_timeout_seconds,
            chunked=settings.chunked_ingestion,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            allow_pdf=settings.allow_pdf,
        ),
    )


def _build_dependencies(settings: Settings) -> AppDependencies:
    engine = build_retrieval_engine(settings)
    upstream_config = UpstreamConfig(
        url=settings.realtime_url,
        model=settings.realtime_model,
        api_key=settings.openai_api_key,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
    )
    manager = ConnectionManager(
        engine,
        lambda: RealtimeUpstream(upstream_config),
        RelayConfig(
            response_timeout_seconds=settings.response_timeout_seconds,
            context_settle_seconds=settings.context_settle_seconds,
        ),
        path=settings.relay_path,
    )
    return AppDependencies(engine=engine, manager=manager)


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging(settings.log_level)
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("relay.listening", host=settings.host, port=settings.port, path=deps.manager.path)
        yield
        await deps.manager.shutdown()

    app = FastAPI(title="RAG Realtime Relay", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(UnsupportedMediaType)
    async def handle_unsupported_media(request: Request, exc: UnsupportedMediaType) -> JSONResponse:
        logger.warning("ingestion.unsupported_media", detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            content={"error": str(exc)},
        )

    @app.exception_handler(IngestionFailed)
    async def handle_ingestion_failed(request: Request, exc: IngestionFailed) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("ingestion.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": str(exc), "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_engine(dep: AppDependencies = Depends(get_dependencies)) -> RetrievalEngine:
        return dep.engine

    @app.post("/api/upload", response_model=UploadResponse)
    async def upload_file(
        file: UploadFile = File(...),
        engine: RetrievalEngine = Depends(get_engine),
    ) -> UploadResponse:
        filename = Path(file.filename or f"upload-{uuid4().hex}").name
        payload = bytearray()
        while True:
            chunk = await file.read(UPLOAD_READ_SIZE)
            if not chunk:
                break
            payload.extend(chunk)
            if len(payload) > settings.max_upload_bytes:
                await file.close()
                raise HTTPException(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=f"File too large (>{settings.max_upload_size_mb}MB): {filename}",
                )
        await file.close()
        if not payload:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"File is empty: {filename}")

        mime_type = file.content_type or ""
        units = await engine.ingest(filename, mime_type, bytes(payload))
        return UploadResponse(
            message="File uploaded and processed successfully",
            file=FileInfo(id=filename, name=filename, size=len(payload), type=mime_type),
            units=units,
        )

    @app.delete("/api/files/{filename}", response_model=DeleteResponse)
    async def delete_file(filename: str, engine: RetrievalEngine = Depends(get_engine)) -> DeleteResponse:
        engine.remove(filename)
        return DeleteResponse(message="File deleted successfully")

    @app.get("/api/files", response_model=DocumentListResponse)
    async def list_files(engine: RetrievalEngine = Depends(get_engine)) -> DocumentListResponse:
        documents = [DocumentSummary(name=name, units=units) for name, units in engine.list_documents().items()]
        return DocumentListResponse(documents=documents)

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, object]:
        from ragrelay import __version__

        return {
            "status": "ok",
            "version": __version__,
            "environment": settings.environment,
            "active_sessions": deps.manager.active_sessions,
        }

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.websocket("/{path:path}")
    async def relay(websocket: WebSocket) -> None:
        await deps.manager.handle(websocket)

    return app
