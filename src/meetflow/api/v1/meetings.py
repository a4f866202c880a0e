"""REST endpoints for the meeting lifecycle.

Registers recorded meetings with their collaborator inputs, records
conclusion flags while recording, triggers analysis on "stop recording",
and exposes cancel / archive / result retrieval. Engine errors are mapped
to sanitized ErrorInfo payloads via to_http_error.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from src.meetflow.analysis.errors import AnalysisError, NotFoundError
from src.meetflow.analysis.schemas import (
    AnalysisRun,
    ConclusionInterval,
    Meeting,
    MeetingAnalysisResult,
    MeetingCreate,
    Task,
    TaskCreate,
)
from src.meetflow.api.deps import (
    get_analysis_repository,
    get_lifecycle_controller,
    get_task_machine,
    to_http_error,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/meetings", tags=["meetings"])


@router.post("", response_model=Meeting, status_code=status.HTTP_201_CREATED)
async def create_meeting(
    body: MeetingCreate,
    repository: Any = Depends(get_analysis_repository),
) -> Meeting:
    """Register a recorded meeting in ACTIVE with its segments and flags."""
    meeting = await repository.create_meeting(body)
    logger.info("api_meeting_registered", meeting_id=meeting.id)
    return meeting


@router.get("/{meeting_id}", response_model=Meeting)
async def get_meeting(
    meeting_id: str,
    repository: Any = Depends(get_analysis_repository),
) -> Meeting:
    meeting = await repository.get_meeting(meeting_id)
    if meeting is None:
        raise to_http_error(NotFoundError(f"Meeting not found: {meeting_id}"))
    return meeting


@router.post("/{meeting_id}/intervals", status_code=status.HTTP_204_NO_CONTENT)
async def flag_conclusion(
    meeting_id: str,
    body: ConclusionInterval,
    controller: Any = Depends(get_lifecycle_controller),
) -> None:
    """Record a conclusion interval while the meeting is recording."""
    try:
        await controller.flag_conclusion(meeting_id, body)
    except AnalysisError as exc:
        raise to_http_error(exc) from exc


@router.post("/{meeting_id}/stop", response_model=AnalysisRun)
async def stop_recording(
    meeting_id: str,
    controller: Any = Depends(get_lifecycle_controller),
) -> AnalysisRun:
    """Stop recording and run analysis. Safe to retry."""
    try:
        return await controller.analyze(meeting_id)
    except AnalysisError as exc:
        raise to_http_error(exc) from exc


@router.post("/{meeting_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
async def cancel_analysis(
    meeting_id: str,
    controller: Any = Depends(get_lifecycle_controller),
) -> dict:
    try:
        await controller.cancel(meeting_id)
    except AnalysisError as exc:
        raise to_http_error(exc) from exc
    return {"meeting_id": meeting_id, "cancel_requested": True}


@router.post("/{meeting_id}/archive", response_model=Meeting)
async def archive_meeting(
    meeting_id: str,
    controller: Any = Depends(get_lifecycle_controller),
) -> Meeting:
    try:
        return await controller.archive(meeting_id)
    except AnalysisError as exc:
        raise to_http_error(exc) from exc


@router.get("/{meeting_id}/result", response_model=MeetingAnalysisResult)
async def get_result(
    meeting_id: str,
    controller: Any = Depends(get_lifecycle_controller),
) -> MeetingAnalysisResult:
    try:
        result = await controller.get_result(meeting_id)
    except AnalysisError as exc:
        raise to_http_error(exc) from exc
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No analysis result for this meeting",
        )
    return result


@router.get("/{meeting_id}/tasks", response_model=list[Task])
async def list_tasks(
    meeting_id: str,
    machine: Any = Depends(get_task_machine),
) -> list[Task]:
    return await machine.list_for_meeting(meeting_id)


@router.post(
    "/{meeting_id}/tasks", response_model=Task, status_code=status.HTTP_201_CREATED
)
async def create_task(
    meeting_id: str,
    body: TaskCreate,
    machine: Any = Depends(get_task_machine),
    repository: Any = Depends(get_analysis_repository),
) -> Task:
    """Create a human task; it starts approved."""
    if await repository.get_meeting(meeting_id) is None:
        raise to_http_error(NotFoundError(f"Meeting not found: {meeting_id}"))
    try:
        return await machine.create_human_task(meeting_id, body)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
