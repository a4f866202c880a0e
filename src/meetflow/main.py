"""FastAPI application factory.

Creates the app with logging middleware, CORS, lifespan events for
database initialization and analysis-engine wiring, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.meetflow.config import get_settings
from src.meetflow.core.database import close_db, get_session, init_db
from src.meetflow.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.meetflow.api.v1.router import router as v1_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and the analysis engine, close on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # ── Persistence ─────────────────────────────────────────────────────
    from src.meetflow.analysis.repository import AnalysisRepository

    repository = AnalysisRepository(session_factory=get_session)
    app.state.analysis_repository = repository

    # ── LLM service ─────────────────────────────────────────────────────
    # Without provider keys the router is None; the capability then fails
    # every call and stages resolve as failed rather than blocking startup.
    try:
        from src.meetflow.services.llm import LLMService

        app.state.llm_service = LLMService(settings)
        log.info("llm_service_initialized", available=app.state.llm_service.available)
    except Exception:
        log.warning("llm_service_init_failed", exc_info=True)
        app.state.llm_service = None

    # ── Analysis engine ─────────────────────────────────────────────────
    try:
        from src.meetflow.analysis.capability import LLMCapability
        from src.meetflow.analysis.gateway import AnalysisGateway, GatewayPolicy
        from src.meetflow.analysis.lifecycle import MeetingLifecycleController
        from src.meetflow.analysis.orchestrator import StageOrchestrator
        from src.meetflow.analysis.tasks import TaskApprovalMachine

        capability = LLMCapability(llm_service=app.state.llm_service)
        gateway = AnalysisGateway(capability, GatewayPolicy.from_settings(settings))
        orchestrator = StageOrchestrator(
            gateway, max_in_flight_per_meeting=settings.MAX_IN_FLIGHT_PER_MEETING
        )
        task_machine = TaskApprovalMachine(store=repository)

        app.state.task_machine = task_machine
        app.state.lifecycle_controller = MeetingLifecycleController(
            store=repository, orchestrator=orchestrator, task_machine=task_machine
        )
        log.info(
            "analysis_engine_initialized",
            max_in_flight_per_meeting=settings.MAX_IN_FLIGHT_PER_MEETING,
            max_in_flight_global=settings.MAX_IN_FLIGHT_GLOBAL,
        )
    except Exception:
        log.warning("analysis_engine_init_failed", exc_info=True)
        app.state.task_machine = None
        app.state.lifecycle_controller = None

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Meetflow API",
        version="0.1.0",
        description="Meeting analysis orchestration engine",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins() or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router, prefix="/v1")

    return app


# Module-level app for uvicorn
app = create_app()
