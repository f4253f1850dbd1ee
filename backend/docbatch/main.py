"""
FastAPI Application — Entry Point

Batch document ingestion service.

  - Routes are versioned under /api/v1/
  - Authentication and destination resolution happen upstream; this
    service receives opaque destination and requester strings
  - Every 4xx/5xx body is an ErrorResponse envelope
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docbatch.api.v1.batches import router as batches_router
from docbatch.core.config import settings
from docbatch.db.session import check_db_health, get_engine
from docbatch.schemas.batches import BatchErrors, ErrorDetail, ErrorResponse

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "docbatch starting | env=%s bucket=%s ocr_service=%s embeddings=%s",
        settings.app_env, settings.s3_bucket,
        bool(settings.ocr_api_url), settings.embeddings_enabled,
    )

    database = await check_db_health()
    if database["status"] != "ok":
        logger.critical("Startup aborted, database unreachable | detail=%s", database)
        raise RuntimeError("Database unreachable at startup")

    yield

    await get_engine().dispose()
    logger.info("docbatch stopped")


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------

async def _on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    body = ErrorResponse(
        error_code="VALIDATION_ERROR",
        message="One or more request fields are missing or invalid.",
        details=[
            ErrorDetail(
                field=".".join(str(part) for part in err["loc"]),
                message=err["msg"],
                code=err.get("type", "VALIDATION_ERROR"),
            )
            for err in exc.errors()
        ],
        request_id=request.headers.get("X-Request-ID"),
    )
    return JSONResponse(status_code=422, content=body.model_dump(mode="json"))


async def _on_unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=BatchErrors.internal_error(request_id).model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    expose_docs = not settings.is_production

    app = FastAPI(
        title="docbatch",
        description="Batch ingestion of PDFs and scanned images into the document store.",
        version="1.0.0",
        docs_url="/api/docs" if expose_docs else None,
        openapi_url="/api/openapi.json" if expose_docs else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Batch-ID"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "HTTP %s %s | status=%d elapsed_ms=%.1f",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    app.add_exception_handler(RequestValidationError, _on_validation_error)
    app.add_exception_handler(Exception, _on_unhandled_error)

    app.include_router(batches_router, prefix="/api/v1")

    @app.get("/health", tags=["Operations"], summary="Readiness probe (database ping)")
    async def health() -> JSONResponse:
        database = await check_db_health()
        ready = database["status"] == "ok"
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"status": "ok" if ready else "not_ready", "database": database},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docbatch.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
