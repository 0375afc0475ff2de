"""
Document Pipeline API: application factory

Architecture:
  - Execution routes live under /api/v1/executions
  - One Orchestrator per process, built in the lifespan and kept on app.state
  - The record store backend (memory | sql) and scheduler (asyncio | celery)
    come from config; with the asyncio scheduler executions run inside this
    process, with celery they run on the worker fleet
  - Every 4xx/5xx body is an ErrorResponse envelope

Middleware (outermost first):
  1. Request ID + access log: X-Request-ID echoed, latency logged
  2. CORS: open in development, closed elsewhere
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

from docpipe.api.v1.executions import router as executions_router
from docpipe.core.config import Settings, get_settings
from docpipe.core.errors import ExecutionClaimedError, StoreUnavailableError
from docpipe.core.logging import configure_logging
from docpipe.pipeline.factory import build_orchestrator
from docpipe.pipeline.orchestrator import Orchestrator
from docpipe.pipeline.scheduler import AsyncioScheduler
from docpipe.schemas.executions import ErrorDetail, ErrorResponse, ExecutionErrors

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

def _build_lifespan(orchestrator: Orchestrator | None, result_reader):

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: build the orchestrator (unless injected), prepare the SQL schema,
        resume executions left behind by a previous process.
        Shutdown: stop in-process tasks, dispose the connection pool.
        """
        settings = get_settings()
        logger.info(
            "Starting document pipeline | env=%s store=%s scheduler=%s",
            settings.app_env, settings.record_store_backend, settings.scheduler_backend,
        )

        if settings.record_store_backend == "sql":
            from docpipe.db.session import check_db_health, create_tables

            db_health = await check_db_health()
            if db_health["status"] != "ok":
                logger.critical("Record store database unreachable at startup: %s", db_health)
                raise RuntimeError(f"Record store database unreachable: {db_health}")
            await create_tables()
            logger.info("Record store database ready")

        app.state.orchestrator = orchestrator or build_orchestrator(settings)
        if result_reader is not None:
            app.state.result_reader = result_reader
        else:
            from docpipe.storage.s3 import S3ResultWriter
            app.state.result_reader = S3ResultWriter(
                region=settings.aws_region, credentials=settings.aws_credentials(),
            )

        scheduler = app.state.orchestrator.scheduler
        if isinstance(scheduler, AsyncioScheduler):
            resumed = await app.state.orchestrator.resume_stale(settings.stale_after_seconds)
            if resumed:
                logger.info("Resumed %d stale executions at startup", len(resumed))

        yield

        logger.info("Shutting down document pipeline")
        if isinstance(scheduler, AsyncioScheduler):
            await scheduler.shutdown()
        await app.state.orchestrator.store.close()
        if settings.record_store_backend == "sql":
            from docpipe.db.session import dispose_engine
            await dispose_engine()

    return lifespan


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Settings | None = None,
    *,
    orchestrator: Orchestrator | None = None,
    result_reader=None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Document Processing Pipeline",
        description=(
            "Drives uploaded documents through metadata extraction, OCR, "
            "sentiment analysis and result persistence with durable checkpoints."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=_build_lifespan(orchestrator, result_reader),
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Execution-ID", "Location"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Request body or path failed validation: one ErrorDetail per pydantic error."""
        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Invalid request.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.error("Record store unavailable | path=%s error=%s", request.url.path, exc)
        body = ExecutionErrors.store_unavailable()
        body.request_id = request.headers.get("X-Request-ID")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(mode="json"),
            headers={"Retry-After": "5"},
        )

    @app.exception_handler(ExecutionClaimedError)
    async def claimed_handler(request: Request, exc: ExecutionClaimedError):
        body = ExecutionErrors.conflict(exc.execution_id)
        body.request_id = request.headers.get("X-Request-ID")
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Last-resort handler: log the traceback, return an opaque 500."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ExecutionErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(executions_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health endpoints (used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Always 200 while the process is serving requests.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "docpipe-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="200 when the execution record store answers, 503 otherwise.",
    )
    async def readiness() -> JSONResponse:
        if get_settings().record_store_backend != "sql":
            return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", "store": "memory"})

        from docpipe.db.session import check_db_health

        store_status = await check_db_health()
        if store_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "store": "sql", "detail": store_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "store": "sql", "detail": store_status},
        )

    return app


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "docpipe.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=_settings.app_env == "development",
        log_level="debug" if _settings.debug else "info",
        access_log=True,
    )
