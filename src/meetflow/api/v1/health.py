"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. The
readiness check verifies database connectivity and reports whether an
LLM provider key is configured for the analysis capability.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.meetflow.config import get_settings
from src.meetflow.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database, LiteLLM keys and engine wiring. Returns check results dict."""
    checks: dict = {"database": "ok", "litellm": "ok", "engine": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    settings = get_settings()
    if not (settings.ANTHROPIC_API_KEY or settings.OPENAI_API_KEY):
        checks["litellm"] = "no_keys"

    if getattr(request.app.state, "lifecycle_controller", None) is None:
        checks["engine"] = "not_initialized"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if the database and engine are up, 503 otherwise."""
    checks = await _check_dependencies(request)
    all_healthy = checks["database"] == "ok" and checks["engine"] == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
