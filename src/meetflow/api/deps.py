"""FastAPI dependency injection for engine services.

Services are created in the application lifespan and stored on app.state.
Each getter returns 503 when its service was not initialized, so a
partially configured deployment fails loudly per endpoint rather than at
import time.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.meetflow.analysis.errors import AnalysisError, ErrorKind

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.INTEGRITY: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.VALIDATION: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.CAPABILITY: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.CANCELLED: status.HTTP_409_CONFLICT,
}


def _from_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_lifecycle_controller(request: Request) -> Any:
    """Retrieve MeetingLifecycleController from app.state, 503 if not available."""
    return _from_state(request, "lifecycle_controller", "Lifecycle controller")


def get_task_machine(request: Request) -> Any:
    """Retrieve TaskApprovalMachine from app.state, 503 if not available."""
    return _from_state(request, "task_machine", "Task approval machine")


def get_analysis_repository(request: Request) -> Any:
    """Retrieve AnalysisRepository from app.state, 503 if not available."""
    return _from_state(request, "analysis_repository", "Analysis repository")


def to_http_error(exc: AnalysisError) -> HTTPException:
    """Map an engine error to an HTTPException with the sanitized ErrorInfo."""
    info = exc.to_info()
    return HTTPException(
        status_code=_STATUS_BY_KIND.get(info.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=info.model_dump(mode="json"),
    )
