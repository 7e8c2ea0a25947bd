"""Health check endpoints."""

from __future__ import annotations

import logging
import shutil
import time

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from auditengine.core.config import ENGINE_VERSION, get_settings
from auditengine.core.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Quick liveness probe."""
    return {"status": "healthy", "service": "auditengine", "version": ENGINE_VERSION}


@router.get("/health/ready")
async def readiness_check(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Readiness: database reachable; reports optional analyzers' availability."""
    settings = getattr(request.app.state, "settings", None) or get_settings()
    checks: dict[str, dict] = {}
    overall = True
    start = time.perf_counter()

    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        checks["database"] = {"status": "up"}
    except Exception as e:
        logger.warning("Readiness: database check failed: %s", e)
        checks["database"] = {"status": "down", "error": str(e)}
        overall = False

    # External tools and the LLM are optional; their absence only skips work
    for name, binary in (
        ("cargo", settings.cargo_bin),
        ("move", settings.move_bin),
        ("semgrep", settings.semgrep_bin),
    ):
        path = shutil.which(binary)
        checks[name] = {"status": "up", "path": path} if path else {"status": "unavailable"}
    checks["llm"] = {"status": "configured" if settings.llm_configured else "unconfigured"}

    orchestrator = getattr(request.app.state, "orchestrator", None)
    checks["orchestrator"] = {"status": "busy" if orchestrator and orchestrator.busy else "idle"}

    return {
        "status": "ready" if overall else "degraded",
        "checks": checks,
        "duration_ms": round((time.perf_counter() - start) * 1000, 1),
    }
