"""
FastAPI Application — Entry Point

Document Management Service API

Architecture:
  - All routes are versioned under /api/v1/
  - Upload → process-ocr → extract-data → generate-embed run as a chain of
    stages; each stage triggers the next through the PipelineOrchestrator
    created in the lifespan (app.state.orchestrator)
  - Structured JSON error responses on all 4xx/5xx: {error, error_code, …}

Middleware, outermost first:
  request_id_and_logging   X-Request-ID echoed, one log line per request
  CORSMiddleware           exposes X-Document-ID / Location to the browser UI
  GZipMiddleware           document lists and detail bodies > 1 KB

Exception mapping:
  HTTPException with an ErrorResponse dict  → body is that dict, unwrapped
  RequestValidationError                    → 422 VALIDATION_ERROR
  ValidationError                           → 400
  DocumentNotFoundError / NotFoundError     → 404
  ConflictError / InvalidTransitionError    → 409
  DuplicateContentError                     → 409 + existingId
  any other DmsError / Exception            → 500
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from dms.api.v1.catalog import router as catalog_router
from dms.api.v1.documents import router as documents_router
from dms.api.v1.pipeline import router as pipeline_router
from dms.api.v1.search import router as search_router
from dms.core.config import settings
from dms.core.errors import (
    ConflictError,
    DmsError,
    DocumentNotFoundError,
    DuplicateContentError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from dms.db.session import check_db_health
from dms.schemas.documents import ApiErrors, ErrorDetail, ErrorResponse
from dms.services.registry import DocumentRegistry
from dms.workers.orchestrator import PipelineOrchestrator, build_dispatcher

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

APP_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: validate DB connectivity, create the pipeline orchestrator.
    Shutdown: wait for outstanding stage triggers, clean up connection pools.
    """
    logger.info(
        "Starting DMS | env=%s dispatch=%s bucket=%s",
        settings.app_env, settings.pipeline_dispatch, settings.s3_bucket,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")
    logger.info("Database: connected")

    app.state.orchestrator = PipelineOrchestrator(build_dispatcher(), DocumentRegistry())

    yield

    logger.info("Shutting down DMS | pending_triggers=%d", app.state.orchestrator.pending)
    await app.state.orchestrator.drain()
    from dms.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Domain error → HTTP status
# ---------------------------------------------------------------------------

def _domain_error_response(exc: DmsError) -> tuple[int, ErrorResponse]:
    if isinstance(exc, DuplicateContentError):
        return status.HTTP_409_CONFLICT, ApiErrors.duplicate_document(exc.sha256, exc.existing_id)
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST, ApiErrors.validation(exc.message)
    if isinstance(exc, (DocumentNotFoundError, NotFoundError)):
        return status.HTTP_404_NOT_FOUND, ApiErrors.not_found(exc.message)
    if isinstance(exc, (ConflictError, InvalidTransitionError)):
        return status.HTTP_409_CONFLICT, ApiErrors.conflict(exc.message)
    return (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorResponse(error=exc.message, error_code=exc.code.upper()),
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Management Service",
        description=(
            "Document upload with content-addressed deduplication, OCR, AI "
            "classification and field extraction, chunk embeddings, hybrid "
            "search and grounded chat."
        ),
        version=APP_VERSION,
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    # GZip compression for responses > 1 KB
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "PATCH"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Routes raise HTTPException(detail=ErrorResponse.to_body()); send that body as-is."""
        if isinstance(exc.detail, dict):
            content = exc.detail
        else:
            content = {"error": str(exc.detail), "error_code": f"HTTP_{exc.status_code}"}
        return JSONResponse(
            status_code=exc.status_code,
            content=content,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error="Request validation failed.",
            error_code="VALIDATION_ERROR",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.to_body(),
        )

    @app.exception_handler(DmsError)
    async def domain_exception_handler(request: Request, exc: DmsError):
        status_code, body = _domain_error_response(exc)
        if status_code >= 500:
            logger.error("Domain error | path=%s error=%s", request.url.path, exc)
        return JSONResponse(status_code=status_code, content=body.to_body())

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions: never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ApiErrors.internal_error(request_id).to_body(),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(pipeline_router,  prefix="/api/v1")
    app.include_router(search_router,    prefix="/api/v1")
    app.include_router(catalog_router,   prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by the load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Health",
        description="Process is alive; reports database connectivity, version and environment.",
    )
    async def health() -> dict:
        return {
            "status": "ok",
            "service": "dms-api",
            "version": APP_VERSION,
            "environment": settings.app_env,
            "database": await check_db_health(),
        }

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dms.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
