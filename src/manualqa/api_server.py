"""
FastAPI service layer for the manual Q&A system.

Exposes:
    POST /chat         answer a question, continuing or starting a conversation
    POST /ingest       ingest a manual (admin)
    POST /index/init   seed the index when empty (admin)
    POST /search       semantic or full-text manual search
    GET  /documents    list ingested documents
    GET  /volumes      volume labels for search filters
    GET  /metrics      request metrics
    GET  /health       liveness

Run with:
    uvicorn manualqa.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import asyncio
import functools
import time
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Literal

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from .auth import AuthenticatedUser
from .config import (
    API_WORKERS,
    MANUAL_DESCRIPTION,
    MANUAL_SOURCE,
    MANUAL_TITLE,
    MANUAL_VERSION,
    QUERY_TIMEOUT_S,
    SEARCH_PAGE_SIZE,
    SEED_INDEX_ON_STARTUP,
)
from .errors import (
    ConversationNotFoundError,
    EmbeddingError,
    ExtractionError,
    IngestionAbortedError,
    ManualQAError,
    RetrievalError,
    SourceNotFoundError,
    SynthesisError,
    TransportError,
)
from .ingestion import DocumentSource
from .observability import get_logger
from .rag_pipeline import Services, build_services

logger = get_logger(__name__)

_SYNTHESIS_STATUS = {"rate_limit": 429, "payment_required": 402, "unauthorized": 401, "server_error": 500}


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1, description="User question")
    session_id: str | None = Field(default=None, alias="sessionId", description="Existing conversation id")


class CitationOut(BaseModel):
    document_id: str | None = None
    document_title: str
    snippet: str
    page_number: int
    volume: str | None = None
    chapter: str | None = None
    section_label: str | None = None


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response: str
    session_id: str = Field(alias="sessionId")
    citations: list[CitationOut] = Field(default_factory=list)


class IngestRequest(BaseModel):
    source: str | None = Field(default=None, description="Path or URL of the manual PDF")
    mode: Literal["incremental", "full_rebuild"] = "incremental"
    title: str | None = None
    version: str | None = None
    description: str | None = None


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1)
    search_type: Literal["semantic", "fulltext"] = Field(default="fulltext", alias="searchType")
    volume_filter: str | None = Field(default=None, alias="volumeFilter")
    safety_filter: str | None = Field(default=None, alias="safetyFilter")
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=SEARCH_PAGE_SIZE, ge=1, le=100, alias="pageSize")


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

class ApiError(Exception):
    def __init__(self, status_code: int, error_type: str, message: str, extra: dict[str, Any] | None = None):
        self.status_code = status_code
        self.error_type = error_type
        self.message = message
        self.extra = extra or {}
        super().__init__(message)


def to_api_error(exc: Exception) -> ApiError:
    """Maps a service exception to a status code and a user-safe message."""
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, SynthesisError):
        return ApiError(_SYNTHESIS_STATUS[exc.kind], exc.kind, exc.user_message)
    if isinstance(exc, EmbeddingError):
        return ApiError(502, exc.kind, "The search service is temporarily unavailable. Please try again.")
    if isinstance(exc, RetrievalError):
        return ApiError(500, exc.kind, "Something went wrong while searching the manual. Please try again.")
    if isinstance(exc, ConversationNotFoundError):
        return ApiError(404, exc.kind, "Conversation not found.")
    if isinstance(exc, IngestionAbortedError):
        progress = exc.progress.to_dict() if hasattr(exc.progress, "to_dict") else {}
        return ApiError(500, exc.kind, "Ingestion stopped before completion.", extra=progress)
    if isinstance(exc, SourceNotFoundError):
        return ApiError(404, exc.kind, "Manual source not found.")
    if isinstance(exc, ExtractionError):
        return ApiError(422, exc.kind, "The manual could not be read as a PDF.")
    if isinstance(exc, TransportError):
        return ApiError(502, exc.kind, "The manual could not be downloaded.")
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ApiError(504, "timeout", "The request took too long. Please try again.")
    if isinstance(exc, ValueError):
        return ApiError(400, "invalid_request", str(exc))
    return ApiError(500, "server_error", "Something went wrong. Please try again.")


def _error_body(error: ApiError) -> dict[str, Any]:
    return {"error": error.message, "errorType": error.error_type, **error.extra}


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    services: Services = Depends(get_services),
) -> AuthenticatedUser:
    if credentials is None:
        raise ApiError(401, "unauthorized", "Please sign in again.")
    user = services.auth.authenticate(credentials.credentials)
    if user is None:
        raise ApiError(401, "unauthorized", "Please sign in again.")
    return user


def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    if not user.is_admin:
        raise ApiError(403, "forbidden", "Administrator access required.")
    return user


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    services: Services | None = None,
    *,
    query_timeout_s: float = QUERY_TIMEOUT_S,
    seed_index: bool = SEED_INDEX_ON_STARTUP,
) -> FastAPI:
    """Builds the app. Injected services are not closed on shutdown; built ones are."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services if services is not None else build_services()
        app.state.executor = ThreadPoolExecutor(max_workers=API_WORKERS)
        logger.info("api_started", owned_services=owned)
        if seed_index and MANUAL_SOURCE:
            try:
                outcome = await asyncio.get_running_loop().run_in_executor(
                    app.state.executor, app.state.services.ingestion.ensure_index
                )
                logger.info("index_seed_checked", **outcome)
            except ManualQAError as exc:
                logger.error("index_seed_failed", error_kind=exc.kind, error=str(exc))

        yield  # Application is running.

        app.state.executor.shutdown(wait=False)
        if owned:
            app.state.services.close()
        logger.info("api_stopped")

    app = FastAPI(
        title="Manual Q&A API",
        description="Retrieval-augmented question answering over diving manuals",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(ApiError)
    async def _api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    async def _in_executor(fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(app.state.executor, functools.partial(fn, *args, **kwargs))

    async def _observe(endpoint: str, services_: Services, awaitable):
        start = time.perf_counter()
        try:
            result = await awaitable
        except Exception as exc:
            latency_ms = (time.perf_counter() - start) * 1000.0
            error = to_api_error(exc)
            services_.metrics.record_request(endpoint, latency_ms, success=False, error_kind=error.error_type)
            log = logger.warning if error.status_code < 500 else logger.error
            log("request_failed", endpoint=endpoint, status=error.status_code, error_type=error.error_type, error=str(exc))
            raise error from exc
        latency_ms = (time.perf_counter() - start) * 1000.0
        services_.metrics.record_request(endpoint, latency_ms, success=True)
        return result

    @app.post("/chat", response_model=ChatResponse)
    async def chat_endpoint(
        request: ChatRequest,
        http_request: Request,
        user: AuthenticatedUser = Depends(get_current_user),
        services_: Services = Depends(get_services),
    ):
        """Answer a question from the manual."""
        work = asyncio.wait_for(
            services_.processor.aprocess(
                request.message,
                user_id=user.user_id,
                session_id=request.session_id,
                executor=http_request.app.state.executor,
            ),
            timeout=query_timeout_s,
        )
        result = await _observe("/chat", services_, work)
        return result.to_dict()

    @app.post("/ingest")
    async def ingest_endpoint(
        request: IngestRequest,
        user: AuthenticatedUser = Depends(require_admin),
        services_: Services = Depends(get_services),
    ):
        """Ingest a manual in incremental or full-rebuild mode."""
        source_ref = request.source or MANUAL_SOURCE
        if not source_ref:
            raise ApiError(400, "invalid_request", "A manual source is required.")
        source = DocumentSource(
            source_ref=source_ref,
            title=request.title or MANUAL_TITLE,
            version=request.version or MANUAL_VERSION,
            description=request.description or MANUAL_DESCRIPTION,
        )
        result = await _observe(
            "/ingest",
            services_,
            _in_executor(services_.ingestion.ingest, source, request.mode),
        )
        return result.to_dict()

    @app.post("/index/init")
    async def index_init_endpoint(
        user: AuthenticatedUser = Depends(require_admin),
        services_: Services = Depends(get_services),
    ):
        """Seed the index from the configured manual if it is empty."""
        return await _observe("/index/init", services_, _in_executor(services_.ingestion.ensure_index))

    @app.post("/search")
    async def search_endpoint(
        request: SearchRequest,
        user: AuthenticatedUser = Depends(get_current_user),
        services_: Services = Depends(get_services),
    ):
        """Search the manual."""
        page = await _observe(
            "/search",
            services_,
            _in_executor(
                services_.search.search,
                request.query,
                search_type=request.search_type,
                volume_filter=request.volume_filter,
                safety_filter=request.safety_filter,
                page=request.page,
                page_size=request.page_size,
                user_id=user.user_id,
            ),
        )
        return page.to_dict()

    @app.get("/documents")
    async def documents_endpoint(
        user: AuthenticatedUser = Depends(get_current_user),
        services_: Services = Depends(get_services),
    ):
        docs = await _in_executor(services_.store.list_documents)
        return {
            "documents": [
                {
                    "id": d.id,
                    "title": d.title,
                    "version": d.version,
                    "totalPages": d.total_pages,
                    "isPublished": d.is_published,
                    "publishedAt": d.published_at,
                }
                for d in docs
            ]
        }

    @app.get("/volumes")
    async def volumes_endpoint(
        user: AuthenticatedUser = Depends(get_current_user),
        services_: Services = Depends(get_services),
    ):
        """Volume labels usable as a search volumeFilter."""
        return {"volumes": await _in_executor(services_.store.list_volumes)}

    @app.get("/metrics")
    async def metrics_endpoint(services_: Services = Depends(get_services)):
        """Return aggregated service metrics."""
        return services_.metrics.get_summary()

    @app.get("/health")
    async def health_endpoint():
        return {"status": "ok"}

    return app


app = create_app()
