"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from auditengine.api.errors import register_error_handlers
from auditengine.api.middleware.request import RequestIDMiddleware, RequestSizeLimitMiddleware
from auditengine.api.routes import audits, health
from auditengine.core.config import ENGINE_VERSION, Settings, get_settings
from auditengine.core.database import init_models
from auditengine.core.logging import setup_logging
from auditengine.pipeline.orchestrator import AuditOrchestrator
from auditengine.pipeline.store import SQLAlchemyJobStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup: logging, tables, orchestrator and crash recovery. Shutdown: stop the consumer."""
    settings: Settings = app.state.settings
    setup_logging(env=settings.app_env, log_level="DEBUG" if settings.debug else settings.log_level)

    if app.state.orchestrator is None:
        await init_models()
        app.state.orchestrator = AuditOrchestrator(SQLAlchemyJobStore(), settings=settings)

    orchestrator: AuditOrchestrator = app.state.orchestrator
    requeued = await orchestrator.recover()
    queued = await orchestrator.store.find_oldest_queued()
    if requeued or queued is not None:
        logger.info("Resuming queued audits (%d interrupted)", len(requeued))
        task = asyncio.create_task(orchestrator.drain())
        app.state.background_tasks.add(task)
        task.add_done_callback(app.state.background_tasks.discard)

    logger.info("Starting %s %s in %s mode", settings.app_name, ENGINE_VERSION, settings.app_env)
    yield

    tasks = list(app.state.background_tasks)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Shutting down %s", settings.app_name)


def create_app(
    settings: Settings | None = None,
    orchestrator: AuditOrchestrator | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Passing an orchestrator (e.g. one backed by an in-memory store) skips
    database setup at startup.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="AuditEngine API",
        description=(
            "Smart contract audit pipeline for Rust, Move and Cairo.\n\n"
            "Submit a project with `POST /api/v1/audits`, poll "
            "`GET /api/v1/audits/{job_id}` and fetch the report once finished."
        ),
        version=ENGINE_VERSION,
        lifespan=lifespan,
        docs_url=None if settings.app_env == "production" else "/api/docs",
        redoc_url=None if settings.app_env == "production" else "/api/redoc",
        openapi_url=None if settings.app_env == "production" else "/api/openapi.json",
        openapi_tags=[
            {"name": "health", "description": "Liveness and readiness probes"},
            {"name": "audits", "description": "Audit submission, progress and reports"},
        ],
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.background_tasks = set()

    # ── CORS ─────────────────────────────────────────────────────────
    allowed_origins = [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "Accept"],
        expose_headers=["X-Request-ID"],
    )

    # ── Middleware (outermost last) ──────────────────────────────────
    app.add_middleware(RequestSizeLimitMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # ── Access logging ───────────────────────────────────────────────
    @app.middleware("http")
    async def access_log(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s → %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed,
            extra={"method": request.method, "path": request.url.path,
                   "status_code": response.status_code, "duration_ms": round(elapsed, 1),
                   "request_id": getattr(request.state, "request_id", None)},
        )
        return response

    # ── Routes ───────────────────────────────────────────────────────
    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(audits.router, prefix="/api/v1/audits", tags=["audits"])

    register_error_handlers(app)

    return app


app = create_app()
