"""REST endpoints for the task approval state machine."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from src.meetflow.analysis.errors import AnalysisError
from src.meetflow.analysis.schemas import (
    AssignRequest,
    CompleteRequest,
    SupervisorAction,
    Task,
    TaskAssignment,
    TaskEdit,
)
from src.meetflow.api.deps import get_task_machine, to_http_error

router = APIRouter(prefix="/tasks", tags=["tasks"])


async def _apply(call) -> Task:
    try:
        return await call
    except AnalysisError as exc:
        raise to_http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc


@router.get("/{task_id}", response_model=Task)
async def get_task(task_id: str, machine: Any = Depends(get_task_machine)) -> Task:
    return await _apply(machine.get(task_id))


@router.get("/{task_id}/assignments", response_model=list[TaskAssignment])
async def list_assignments(
    task_id: str, machine: Any = Depends(get_task_machine)
) -> list[TaskAssignment]:
    return await _apply(machine.assignments(task_id))


@router.post("/{task_id}/approve", response_model=Task)
async def approve_task(
    task_id: str, body: SupervisorAction, machine: Any = Depends(get_task_machine)
) -> Task:
    return await _apply(machine.approve(task_id, body.supervisor_id))


@router.post("/{task_id}/reject", response_model=Task)
async def reject_task(
    task_id: str, body: SupervisorAction, machine: Any = Depends(get_task_machine)
) -> Task:
    return await _apply(machine.reject(task_id, body.supervisor_id))


@router.post("/{task_id}/assign", response_model=Task)
async def assign_task(
    task_id: str, body: AssignRequest, machine: Any = Depends(get_task_machine)
) -> Task:
    return await _apply(machine.assign(task_id, body.user_ids))


@router.post("/{task_id}/complete", response_model=Task)
async def complete_task(
    task_id: str, body: CompleteRequest, machine: Any = Depends(get_task_machine)
) -> Task:
    return await _apply(machine.complete(task_id, body.user_id))


@router.patch("/{task_id}", response_model=Task)
async def edit_task(
    task_id: str, body: TaskEdit, machine: Any = Depends(get_task_machine)
) -> Task:
    return await _apply(machine.edit(task_id, summary=body.summary, details=body.details))
